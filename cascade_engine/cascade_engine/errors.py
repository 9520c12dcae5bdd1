"""Error taxonomy for the cascade deletion engine.

Every failure raised by the engine derives from :class:`CascadeError` and
carries a stable ``code`` that callers (HTTP layer, CLI) map to user-facing
messages.  ``retryable`` marks the only class of failure that call sites may
retry with backoff; the state machine itself never retries.
"""

from __future__ import annotations

from typing import Any


class CascadeError(Exception):
    """Base class for all engine failures."""

    code: str = "CASCADE_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(CascadeError):
    """Bad input.  Never retried."""

    code = "VALIDATION_ERROR"


class EntityNotFoundError(ValidationError):
    """The referenced entity, snapshot, or issue does not exist."""

    code = "NOT_FOUND"


class AdmissionError(CascadeError):
    """Base for admission refusals raised from a typed refusal."""

    code = "ADMISSION_REFUSED"


class PermissionDenied(AdmissionError):
    code = "PERMISSION_DENIED"


class RateLimited(AdmissionError):
    code = "RATE_LIMITED"


class SuspiciousActivity(AdmissionError):
    code = "SUSPICIOUS_ACTIVITY"


class ConflictError(CascadeError):
    """An operation is already active for the target.  Callers may poll."""

    code = "DELETE_IN_PROGRESS"

    def __init__(
        self,
        message: str,
        *,
        operation_id: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.operation_id = operation_id


class RollbackNotAvailable(ConflictError):
    """The snapshot was already consumed, expired, or its target is busy."""

    code = "ROLLBACK_NOT_AVAILABLE"


class IntegrityViolation(CascadeError):
    """Data inconsistency detected mid-operation."""

    code = "INTEGRITY_VIOLATION"


class SnapshotError(CascadeError):
    """Writing a snapshot failed; no records were touched."""

    code = "BACKUP_FAILED"


class OperationTimeoutError(CascadeError):
    """The operation exceeded its wall-clock budget."""

    code = "OPERATION_TIMEOUT"


class OperationCancelled(CascadeError):
    """Cooperative cancellation was observed between batches."""

    code = "OPERATION_CANCELLED"


class NetworkOrServerError(CascadeError):
    """Transient infrastructure failure, eligible for bounded retry at the call site."""

    code = "SERVER_ERROR"
    retryable = True
