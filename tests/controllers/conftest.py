from __future__ import annotations

import pytest

from tests.fakes import Env, make_env


@pytest.fixture
async def env() -> Env:
    return await make_env()
