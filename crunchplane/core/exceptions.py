"""Custom exception hierarchy for crunchplane.

All crunchplane-specific exceptions inherit from CrunchplaneError, enabling
callers to catch every crunchplane exception with a single except clause.

Cloud failures carry an ``ErrorKind`` so reconcilers can branch on
"absent" versus "failed" without inspecting message text.
"""

from __future__ import annotations

from enum import StrEnum


class CrunchplaneError(Exception):
    """Base exception for all crunchplane errors."""


class ConfigurationError(CrunchplaneError):
    """Raised for invalid configuration or missing required settings."""


# =============================================================================
# Cloud
# =============================================================================


class ErrorKind(StrEnum):
    """Classification of a failed cloud operation."""

    NOT_FOUND = "not-found"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class CloudError(CrunchplaneError):
    """Raised when a DataCrunch API operation fails.

    Attributes:
        operation: Name of the client operation (e.g. ``get_instance``).
        kind: Whether the failure means "absent", "try again" or "give up".
        status: HTTP status code, 0 when no response was received.
        detail: Response body or underlying error text.
    """

    def __init__(
        self,
        operation: str,
        kind: ErrorKind,
        *,
        status: int = 0,
        detail: str = "",
    ) -> None:
        self.operation = operation
        self.kind = kind
        self.status = status
        self.detail = detail
        message = f"{operation} failed ({kind}"
        if status:
            message += f", HTTP {status}"
        message += ")"
        if detail:
            message += f": {detail}"
        super().__init__(message)

    @property
    def not_found(self) -> bool:
        return self.kind is ErrorKind.NOT_FOUND

    @property
    def transient(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT


def kind_for_status(status: int) -> ErrorKind:
    """Map an HTTP status code (0 = no response) onto an ErrorKind."""
    match status:
        case 404:
            return ErrorKind.NOT_FOUND
        case 0 | 408 | 425 | 429:
            return ErrorKind.TRANSIENT
        case s if s >= 500 and s != 501:
            return ErrorKind.TRANSIENT
        case _:
            return ErrorKind.PERMANENT


class CredentialsError(CrunchplaneError):
    """Raised when provider credentials cannot be resolved."""


class ProviderIDError(CrunchplaneError):
    """Raised when a providerID does not match ``<scheme>://<instance-id>``."""

    def __init__(self, provider_id: str, reason: str = "malformed") -> None:
        self.provider_id = provider_id
        self.reason = reason
        super().__init__(f"Invalid providerID {provider_id!r}: {reason}")


# =============================================================================
# Store
# =============================================================================


class StoreError(CrunchplaneError):
    """Base exception for object store failures."""


class NotFoundError(StoreError):
    """Raised when an object does not exist in the store."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} {namespace}/{name} not found")


class AlreadyExistsError(StoreError):
    """Raised when creating an object whose key is already taken."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} {namespace}/{name} already exists")


class ConflictError(StoreError):
    """Raised when a conditional update carries a stale resource version."""

    def __init__(self, kind: str, namespace: str, name: str, expected: int, actual: int) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{kind} {namespace}/{name} was modified: "
            f"resource version {expected} is stale (current {actual})"
        )


# =============================================================================
# Reconciliation
# =============================================================================


class ReconcileError(CrunchplaneError):
    """Raised by a reconciler when the key must be retried.

    ``requeue_after`` pins the retry delay; when None the dispatcher
    applies its own exponential backoff.
    """

    def __init__(self, message: str, *, requeue_after: float | None = None) -> None:
        self.requeue_after = requeue_after
        super().__init__(message)


__all__ = [
    "AlreadyExistsError",
    "CloudError",
    "ConfigurationError",
    "ConflictError",
    "CredentialsError",
    "CrunchplaneError",
    "ErrorKind",
    "NotFoundError",
    "ProviderIDError",
    "ReconcileError",
    "StoreError",
    "kind_for_status",
]
