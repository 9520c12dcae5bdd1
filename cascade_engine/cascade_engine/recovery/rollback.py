"""Rollback of a deletion from its snapshot.

A rollback consumes the snapshot exactly once, restores every captured
row, verifies that each restored row is present again, and then snapshots
the restored state under a new id whose ``parent_snapshot_id`` points at
the consumed one.  Rollback is therefore replayable along an append-only
chain rather than idempotent in place.

Consumption, restoration and verification share one transaction: if
verification fails the snapshot is left unconsumed.  The target's registry
slot is held for the whole restore, so no deletion of the same entity can
start until the rollback has finished.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cascade_engine.config import EngineSettings
from cascade_engine.errors import (
    EntityNotFoundError,
    IntegrityViolation,
    RollbackNotAvailable,
)
from cascade_engine.executor.registry import ActiveOperationRegistry
from cascade_engine.graph.relations import SCHEMAS, collection_order
from cascade_engine.models.operation import DeletionOperation
from cascade_engine.models.refs import EntityRef
from cascade_engine.models.snapshot import RollbackResult, SnapshotKind
from cascade_engine.recovery.snapshots import SnapshotStore, snapshot_info
from cascade_engine.state.repository import RecordRepository, SnapshotRepository, serialize_row

logger = logging.getLogger(__name__)


def _restore_order(payload: dict[str, list[dict[str, Any]]], target: EntityRef | None) -> list[str]:
    """Tables in owner-first order: target table, then its relations parents-first."""
    ordered: list[str] = []
    if target is not None:
        schema = SCHEMAS[target.entity_type]
        ordered.append(schema.table)
        for name in collection_order(target.entity_type):
            table = schema.relation(name).table
            if table not in ordered:
                ordered.append(table)
    ordered.extend(sorted(t for t in payload if t not in ordered))
    return [t for t in ordered if t in payload]


class RollbackService:
    """Restores snapshots written by the executor, cleanup or repair."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: EngineSettings,
        registry: ActiveOperationRegistry,
        snapshots: SnapshotStore,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._registry = registry
        self._snapshots = snapshots

    async def rollback(self, snapshot_id: str) -> RollbackResult:
        """Restore *snapshot_id*.

        Raises
        ------
        EntityNotFoundError
            If the snapshot does not exist.
        RollbackNotAvailable
            If it was already consumed, has expired, or its target has an
            active operation.
        IntegrityViolation
            If restored rows cannot be read back.
        """
        started = time.monotonic()

        async with self._session_factory() as session:
            row = await SnapshotRepository(session).get(snapshot_id)
            if row is None:
                raise EntityNotFoundError(f"Snapshot {snapshot_id} not found")
            info = snapshot_info(row)
            payload: dict[str, list[dict[str, Any]]] = row.payload_json or {}

        if info.consumed:
            raise RollbackNotAvailable(
                f"Snapshot {snapshot_id} was already consumed",
                details={"consumed_at": info.consumed_at.isoformat() if info.consumed_at else None},
            )
        slot: DeletionOperation | None = None
        if info.target is not None:
            slot = DeletionOperation(
                operation_id=f"rollback-{uuid.uuid4().hex}",
                target=info.target,
                start_time=datetime.now(UTC),
                current_step="rolling_back",
            )
            active = await self._registry.acquire(slot, self._settings.operation_timeout_seconds)
            if active is not None:
                raise RollbackNotAvailable(
                    f"{info.target.key} has an active operation",
                    operation_id=active.operation_id,
                )

        try:
            restored, restored_state = await self._restore(snapshot_id, info.target, payload)
            new_info = await self._snapshots.capture(
                kind=SnapshotKind.POST_ROLLBACK,
                payload=restored_state,
                operation_id=info.operation_id,
                target=info.target,
                parent_snapshot_id=snapshot_id,
            )
        finally:
            if slot is not None:
                await self._registry.release(slot.target, slot.operation_id)

        if info.target is not None and info.kind is SnapshotKind.PRE_DELETION:
            self._registry.start_cooldown(info.target, self._settings.rollback_cooldown_seconds)

        total = sum(restored.values())
        logger.info(
            "Rolled back snapshot %s: %d records across %d tables (new snapshot %s)",
            snapshot_id,
            total,
            len(restored),
            new_info.snapshot_id,
        )
        return RollbackResult(
            snapshot_id=snapshot_id,
            target=info.target,
            restored=restored,
            records_restored=total,
            verified=True,
            new_snapshot_id=new_info.snapshot_id,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def _restore(
        self,
        snapshot_id: str,
        target: EntityRef | None,
        payload: dict[str, list[dict[str, Any]]],
    ) -> tuple[dict[str, int], dict[str, list[dict[str, Any]]]]:
        """Consume, restore and verify in one transaction."""
        restored: dict[str, int] = {}
        async with self._session_factory() as session, session.begin():
            snapshots = SnapshotRepository(session)
            if not await snapshots.mark_consumed(snapshot_id):
                raise RollbackNotAvailable(f"Snapshot {snapshot_id} is expired or already consumed")

            records = RecordRepository(session)
            for table in _restore_order(payload, target):
                restored[table] = await records.restore(table, payload[table])

            missing: dict[str, int] = {}
            restored_state: dict[str, list[dict[str, Any]]] = {}
            for table, rows in payload.items():
                ids = [r["id"] for r in rows]
                present = await records.existing_ids(table, ids)
                if len(present) != len(ids):
                    missing[table] = len(ids) - len(present)
                restored_state[table] = [
                    serialize_row(r) for r in await records.fetch_where_in(table, "id", present)
                ]
            if missing:
                raise IntegrityViolation(
                    f"Rollback of {snapshot_id} could not verify restored rows",
                    details={"missing": missing},
                )
        return restored, restored_state
