"""Error taxonomy for admission control.

Every rejection the admission flow can produce maps to exactly one
``ErrorKind`` so callers can render a differentiated message. Only
``TransientStoreError`` collapses into a generic "try again".
"""

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Machine-readable rejection reasons."""

    QUOTA_EXCEEDED = "quota_exceeded"
    QUOTA_SCOPE_UNAVAILABLE = "quota_scope_unavailable"
    COST_LIMIT_EXCEEDED = "cost_limit_exceeded"
    FEATURE_DISABLED = "feature_disabled"
    INVALID_REQUEST = "invalid_request"
    JOB_ALREADY_RUNNING = "job_already_running"
    JOB_NOT_FOUND = "job_not_found"
    INVALID_JOB_TRANSITION = "invalid_job_transition"
    JOB_RETRIES_EXHAUSTED = "job_retries_exhausted"
    RESERVATION_NOT_FOUND = "reservation_not_found"
    TRY_AGAIN = "try_again"
    CONFIG_FETCH_ERROR = "config_fetch_error"
    OPERATION_FAILED = "operation_failed"


class GenguardError(Exception):
    """Base class for all errors raised by this package."""

    kind: ErrorKind = ErrorKind.OPERATION_FAILED

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_detail(self) -> dict[str, Any]:
        """Serializable description for the caller."""
        return {"kind": self.kind.value, "message": self.message, **self.detail}


class QuotaExceeded(GenguardError):
    """A quota scope is already at its limit for the current window."""

    kind = ErrorKind.QUOTA_EXCEEDED

    def __init__(self, scope: str, limit: int, window_id: str) -> None:
        super().__init__(
            f"Quota exceeded for scope '{scope}'",
            scope=scope,
            limit=limit,
            window_id=window_id,
        )
        self.scope = scope


class QuotaScopeUnavailable(GenguardError):
    """An identifying scope was missing and policy does not allow skipping it."""

    kind = ErrorKind.QUOTA_SCOPE_UNAVAILABLE

    def __init__(self, scope: str) -> None:
        super().__init__(f"Quota scope '{scope}' is unavailable", scope=scope)
        self.scope = scope


class CostLimitExceeded(GenguardError):
    """A spend bucket is already at its ceiling."""

    kind = ErrorKind.COST_LIMIT_EXCEEDED

    def __init__(self, window: str, window_id: str, limit_usd: str) -> None:
        super().__init__(
            f"Spend limit reached for the current {window}",
            window=window,
            window_id=window_id,
            limit_usd=limit_usd,
        )
        self.window = window


class FeatureDisabled(GenguardError):
    """The kill switch for the requested capability is off."""

    kind = ErrorKind.FEATURE_DISABLED

    def __init__(self, key: str, source: str) -> None:
        super().__init__(f"Feature '{key}' is disabled", key=key, source=source)
        self.key = key
        self.source = source


class InvalidRequest(GenguardError):
    """Request-specific validation failed (ownership, payload shape, ...)."""

    kind = ErrorKind.INVALID_REQUEST

    def __init__(self, reason: str, **detail: Any) -> None:
        super().__init__(reason, **detail)
        self.reason = reason


class JobAlreadyRunning(GenguardError):
    kind = ErrorKind.JOB_ALREADY_RUNNING

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job '{job_id}' is already running", job_id=job_id)
        self.job_id = job_id


class JobNotFound(GenguardError):
    kind = ErrorKind.JOB_NOT_FOUND

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job '{job_id}' not found", job_id=job_id)
        self.job_id = job_id


class InvalidJobTransition(GenguardError):
    """The job is not in a state that allows the requested transition."""

    kind = ErrorKind.INVALID_JOB_TRANSITION

    def __init__(self, job_id: str, status: str, target: str) -> None:
        super().__init__(
            f"Job '{job_id}' cannot move from '{status}' to '{target}'",
            job_id=job_id,
            status=status,
            target=target,
        )
        self.job_id = job_id
        self.status = status
        self.target = target


class JobRetriesExhausted(GenguardError):
    kind = ErrorKind.JOB_RETRIES_EXHAUSTED

    def __init__(self, job_id: str, attempts: int) -> None:
        super().__init__(
            f"Job '{job_id}' has no retries left",
            job_id=job_id,
            attempts=attempts,
        )
        self.job_id = job_id
        self.attempts = attempts


class ReservationNotFound(GenguardError):
    kind = ErrorKind.RESERVATION_NOT_FOUND

    def __init__(self, reservation_id: str) -> None:
        super().__init__(
            f"Reservation '{reservation_id}' not found",
            reservation_id=reservation_id,
        )
        self.reservation_id = reservation_id


class TransientStoreError(GenguardError):
    """The store timed out or failed transiently; safe to try again later."""

    kind = ErrorKind.TRY_AGAIN

    def __init__(self, message: str = "Temporary storage failure, try again") -> None:
        super().__init__(message)


class ConfigFetchError(GenguardError):
    """A flag source could not be read. Never surfaced to callers."""

    kind = ErrorKind.CONFIG_FETCH_ERROR

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"Could not read flag from {source}: {reason}", source=source)
        self.source = source


class CostedOperationError(GenguardError):
    """Raised by a costed operation that failed after incurring some cost."""

    kind = ErrorKind.OPERATION_FAILED

    def __init__(self, message: str, actual_cost_usd: Any = None) -> None:
        super().__init__(message)
        self.actual_cost_usd = actual_cost_usd
