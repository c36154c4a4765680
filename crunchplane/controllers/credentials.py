"""Resolve DataCrunch credentials from a Secret.

The secret carries ``clientID`` and ``clientSecret`` and optionally
``apiURL``. Nothing is read from the process environment.
"""

from __future__ import annotations

from crunchplane.api.meta import ObjectKey
from crunchplane.api.secret import Secret
from crunchplane.cloud.config import DATACRUNCH_API_BASE, Credentials
from crunchplane.core.exceptions import CredentialsError, NotFoundError
from crunchplane.store import ObjectStore

CLIENT_ID_KEY = "clientID"
CLIENT_SECRET_KEY = "clientSecret"
API_URL_KEY = "apiURL"


async def resolve_credentials(store: ObjectStore, namespace: str, secret_name: str) -> Credentials:
    """Read ``namespace/secret_name`` and build ``Credentials`` from it.

    Raises:
        CredentialsError: The secret is missing, or lacks the client id or secret.
    """
    try:
        secret = await store.get(Secret, ObjectKey(namespace, secret_name))
    except NotFoundError as e:
        raise CredentialsError(f"credentials secret {namespace}/{secret_name} not found") from e

    try:
        client_id = (secret.get_text(CLIENT_ID_KEY) or "").strip()
        client_secret = (secret.get_text(CLIENT_SECRET_KEY) or "").strip()
        api_url = secret.get_text(API_URL_KEY)
    except UnicodeDecodeError as e:
        raise CredentialsError(f"credentials secret {namespace}/{secret_name} is not valid UTF-8") from e

    missing = [key for key, value in ((CLIENT_ID_KEY, client_id), (CLIENT_SECRET_KEY, client_secret)) if not value]
    if missing:
        raise CredentialsError(
            f"credentials secret {namespace}/{secret_name} is missing {', '.join(missing)}"
        )

    return Credentials(
        client_id=client_id,
        client_secret=client_secret,
        api_url=(api_url or DATACRUNCH_API_BASE).strip(),
    )


__all__ = ["API_URL_KEY", "CLIENT_ID_KEY", "CLIENT_SECRET_KEY", "Credentials", "resolve_credentials"]
