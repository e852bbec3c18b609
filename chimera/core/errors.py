from __future__ import annotations

from enum import Enum
from typing import Any, Sequence


class ChimeraError(RuntimeError):
    """Base class for engine failures."""


class ConfigurationError(ChimeraError):
    """Raised when the engine is wired with inconsistent components."""


class RequestValidationError(ChimeraError, ValueError):
    """Raised when a request or plan is malformed; no execution state is created."""

    def __init__(self, message: str, *, errors: Sequence[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class BackendErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    CLIENT = "client"
    CIRCUIT_OPEN = "circuit_open"
    EMPTY_RESPONSE = "empty_response"
    UNAVAILABLE = "unavailable"


RETRY_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504}


def kind_for_status(status_code: int) -> BackendErrorKind:
    if status_code in {401, 403}:
        return BackendErrorKind.AUTH
    if status_code == 429:
        return BackendErrorKind.RATE_LIMITED
    if status_code in RETRY_STATUS_CODES or status_code >= 500:
        return BackendErrorKind.TRANSIENT
    return BackendErrorKind.CLIENT


class BackendError(ChimeraError):
    """A single backend call failed."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        kind: BackendErrorKind = BackendErrorKind.TRANSIENT,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.kind = kind
        self.status_code = status_code

    @classmethod
    def from_status(cls, status_code: int, message: str, *, provider: str | None = None) -> "BackendError":
        kind = kind_for_status(status_code)
        error_cls = {
            BackendErrorKind.AUTH: BackendAuthError,
            BackendErrorKind.RATE_LIMITED: RateLimitError,
        }.get(kind, BackendError)
        return error_cls(message, provider=provider, kind=kind, status_code=status_code)


class BackendAuthError(BackendError):
    """Credentials were rejected (401/403); never retried."""


class RateLimitError(BackendError):
    """Provider throttled the request (429)."""


class BackendTimeoutError(BackendError):
    """The call exceeded its per-backend timeout."""


class CircuitOpenError(BackendError):
    """Synthetic failure raised while a provider's circuit is open. No call is issued."""


class PhaseExecutionError(ChimeraError):
    """A mode executor could not produce a result for its phase."""

    def __init__(
        self,
        message: str,
        *,
        phase_id: str | None = None,
        mode: str | None = None,
        error_kind: BackendErrorKind | None = None,
    ) -> None:
        super().__init__(message)
        self.phase_id = phase_id
        self.mode = mode
        self.error_kind = error_kind


class ExecutionNotFoundError(ChimeraError):
    """No execution state exists for the requested id."""


class ExecutionAlreadyRunningError(ChimeraError):
    """Another driver currently owns the execution."""


class ExecutionCancelledError(ChimeraError):
    """The execution was cancelled and cannot be resumed."""


class InvalidTransitionError(ChimeraError):
    """A status change would move a plan or phase backwards."""
