"""Error taxonomy shared by the store, registry, gateway and sync engine.

Each family carries a ``kind`` so the CLI (and the aggregate sync summary) can
report *what* failed without string matching.
"""

from __future__ import annotations

from enum import Enum


class TaskflowError(Exception):
    """Base class for all TaskFlow domain errors."""

    kind: Enum | None = None


class SyncErrorKind(str, Enum):
    DISABLED = "disabled"
    AUTH_FAILURE = "auth_failure"
    UNREACHABLE = "unreachable"
    RATE_LIMITED = "rate_limited"


class SyncError(TaskflowError):
    """A repository sync could not be completed."""

    def __init__(self, kind: SyncErrorKind, message: str, *, repository: str = "") -> None:
        super().__init__(message)
        self.kind = kind
        self.repository = repository


class StoreErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    PERSISTENCE_FAILURE = "persistence_failure"


class StoreError(TaskflowError):
    def __init__(self, kind: StoreErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class RegistryErrorKind(str, Enum):
    DUPLICATE_REMOVED = "duplicate_removed"
    NOT_FOUND = "not_found"


class RegistryError(TaskflowError):
    def __init__(self, kind: RegistryErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class GatewayError(TaskflowError):
    """Raised by a remote issue gateway."""


class AuthFailure(GatewayError):
    """The remote rejected the credential."""


class RateLimited(GatewayError):
    """The remote asked us to back off for ``retry_after`` seconds."""

    def __init__(self, retry_after: float, message: str = "") -> None:
        super().__init__(message or f"Rate limited; retry after {retry_after:.0f}s")
        self.retry_after = retry_after


class Unreachable(GatewayError):
    """The remote could not be contacted (network error, timeout, 5xx)."""


class RemoteNotFound(GatewayError):
    """The repository or issue does not exist (or is not visible to the credential)."""


class RemoteRequestError(GatewayError):
    """The remote returned a response we don't know how to handle."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def error_kind(exc: BaseException) -> str:
    """Return a short, stable name for an error, for summaries and exit reporting."""

    kind = getattr(exc, "kind", None)
    if isinstance(kind, Enum):
        return str(kind.value)
    if isinstance(exc, GatewayError):
        # AuthFailure -> auth_failure
        name = type(exc).__name__
        return "".join("_" + c.lower() if c.isupper() else c for c in name).lstrip("_")
    return type(exc).__name__
