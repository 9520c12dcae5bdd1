"""Deletion operation lifecycle models.

A ``DeletionOperation`` is the live state of one cascade run.  It moves
through ``PENDING -> VALIDATING -> SNAPSHOTTING -> DELETING ->
CLEANING_ORPHANS -> FINALIZING -> COMPLETED``; ``FAILED`` and ``CANCELLED``
are reachable from any non-terminal state.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from cascade_engine.models.refs import EntityRef


class OperationStatus(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    SNAPSHOTTING = "snapshotting"
    DELETING = "deleting"
    CLEANING_ORPHANS = "cleaning_orphans"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.CANCELLED})


class DeletionOptions(BaseModel):
    """Caller-supplied options for ``execute_delete``."""

    create_snapshot: bool = Field(default=True, description="Capture a pre-deletion snapshot for rollback.")
    skip_validation: bool = Field(
        default=False,
        description="Skip the existence and cool-down re-check.  The registry slot is always acquired.",
    )
    batch_size: int | None = Field(default=None, ge=1, description="Records per batch; engine default when unset.")
    force_delete: bool = Field(default=False, description="Proceed during a post-rollback cool-down.")
    reason: str | None = Field(default=None, max_length=500)


class DeletionOperation(BaseModel):
    """Mutable state of a single cascade run, owned by the executor."""

    operation_id: str
    target: EntityRef
    status: OperationStatus = OperationStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    current_step: str = "pending"
    last_completed_step: str | None = None
    start_time: datetime
    end_time: datetime | None = None
    snapshot_id: str | None = None
    error: str | None = None
    error_code: str | None = None
    impact_summary: dict[str, int] = Field(default_factory=dict)
    records_deleted: int = 0
    records_nullified: int = 0
    rollback_available: bool = False
    actor_id: str | None = None

    def advance(self, status: OperationStatus, step: str, progress: int | None = None) -> None:
        """Move to *status*; progress never decreases."""
        self.status = status
        self.current_step = step
        if progress is not None:
            self.progress = max(self.progress, min(progress, 100))


class OperationSummary(BaseModel):
    """Lightweight view returned by ``get_active_operations``."""

    operation_id: str
    target: EntityRef
    status: OperationStatus
    progress: int
    current_step: str
    start_time: datetime
    actor_id: str | None = None

    @classmethod
    def from_operation(cls, op: DeletionOperation) -> OperationSummary:
        return cls(
            operation_id=op.operation_id,
            target=op.target,
            status=op.status,
            progress=op.progress,
            current_step=op.current_step,
            start_time=op.start_time,
            actor_id=op.actor_id,
        )


class OperationResult(BaseModel):
    """Result of an ``execute_delete`` call.

    ``duplicate`` is set when the target already had an active operation and
    the existing operation's id is returned instead of starting a new run.
    """

    operation_id: str
    target: EntityRef
    status: OperationStatus
    progress: int = 0
    snapshot_id: str | None = None
    rollback_available: bool = False
    records_deleted: int = 0
    records_nullified: int = 0
    last_completed_step: str | None = None
    error: str | None = None
    error_code: str | None = None
    duration_ms: int | None = None
    duplicate: bool = False

    @classmethod
    def from_operation(cls, op: DeletionOperation, *, duplicate: bool = False) -> OperationResult:
        duration_ms = None
        if op.end_time is not None:
            duration_ms = int((op.end_time - op.start_time).total_seconds() * 1000)
        return cls(
            operation_id=op.operation_id,
            target=op.target,
            status=op.status,
            progress=op.progress,
            snapshot_id=op.snapshot_id,
            rollback_available=op.rollback_available,
            records_deleted=op.records_deleted,
            records_nullified=op.records_nullified,
            last_completed_step=op.last_completed_step,
            error=op.error,
            error_code=op.error_code,
            duration_ms=duration_ms,
            duplicate=duplicate,
        )
