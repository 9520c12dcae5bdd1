"""Snapshot and rollback models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from cascade_engine.models.refs import EntityRef


class SnapshotKind(str, Enum):
    """Why a snapshot was taken."""

    PRE_DELETION = "pre_deletion"
    POST_ROLLBACK = "post_rollback"
    PRE_REPAIR = "pre_repair"
    PRE_CLEANUP = "pre_cleanup"


class SnapshotInfo(BaseModel):
    """Metadata about a stored snapshot (payload excluded)."""

    snapshot_id: str
    kind: SnapshotKind
    operation_id: str | None = None
    target: EntityRef | None = None
    record_count: int = 0
    tables: dict[str, int] = Field(default_factory=dict)
    parent_snapshot_id: str | None = None
    created_at: datetime
    expires_at: datetime
    consumed_at: datetime | None = None

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None


class RollbackResult(BaseModel):
    """Outcome of restoring a snapshot.

    ``new_snapshot_id`` names the snapshot of the restored state, so a
    rollback can itself be replayed.
    """

    snapshot_id: str
    target: EntityRef | None = None
    restored: dict[str, int] = Field(default_factory=dict)
    records_restored: int = 0
    verified: bool = False
    new_snapshot_id: str | None = None
    duration_ms: int = 0
