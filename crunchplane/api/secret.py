from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar

from .meta import Resource


@dataclass(slots=True)
class Secret(Resource):
    KIND: ClassVar[str] = "Secret"

    data: dict[str, bytes] = field(default_factory=dict)

    def get_text(self, key: str) -> str | None:
        value = self.data.get(key)
        return value.decode() if value is not None else None
