"""DataCrunch connection settings.

Credentials are always passed in explicitly; nothing here reads the
process environment.
"""

from __future__ import annotations

from dataclasses import dataclass

DATACRUNCH_API_BASE = "https://api.datacrunch.io/v1"
DEFAULT_REQUEST_TIMEOUT = 30.0


@dataclass(frozen=True, slots=True)
class Credentials:
    """OAuth2 client credentials plus the API base URL they are valid for.

    Args:
        client_id: DataCrunch client ID.
        client_secret: DataCrunch client secret.
        api_url: API base URL. Default: the public DataCrunch API.
    """

    client_id: str
    client_secret: str
    api_url: str = DATACRUNCH_API_BASE

    def __repr__(self) -> str:
        return f"Credentials(client_id={self.client_id!r}, client_secret='***', api_url={self.api_url!r})"
