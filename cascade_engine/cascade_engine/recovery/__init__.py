"""Snapshot storage and rollback."""

from cascade_engine.recovery.rollback import RollbackService
from cascade_engine.recovery.snapshots import SnapshotStore

__all__ = ["RollbackService", "SnapshotStore"]
