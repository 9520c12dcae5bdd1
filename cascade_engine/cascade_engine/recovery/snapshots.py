"""Snapshot store: shielded, single-transaction snapshot writes."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cascade_engine.config import EngineSettings
from cascade_engine.errors import EntityNotFoundError, SnapshotError
from cascade_engine.models.refs import EntityRef, EntityType
from cascade_engine.models.snapshot import SnapshotInfo, SnapshotKind
from cascade_engine.state.repository import SnapshotRepository
from cascade_engine.state.tables import DeletionSnapshotTable

logger = logging.getLogger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def snapshot_info(row: DeletionSnapshotTable) -> SnapshotInfo:
    target = None
    if row.target_type and row.target_id:
        target = EntityRef(entity_type=EntityType(row.target_type), entity_id=row.target_id)
    return SnapshotInfo(
        snapshot_id=row.id,
        kind=SnapshotKind(row.kind),
        operation_id=row.operation_id,
        target=target,
        record_count=row.record_count,
        tables={table: len(rows) for table, rows in (row.payload_json or {}).items()},
        parent_snapshot_id=row.parent_snapshot_id,
        created_at=_aware(row.created_at),
        expires_at=_aware(row.expires_at),
        consumed_at=_aware(row.consumed_at),
    )


class SnapshotStore:
    """Writes snapshots in their own transaction, independent of the caller.

    The write runs under :func:`asyncio.shield`, so cancelling the invoking
    task does not interrupt it: the snapshot either commits in full or
    not at all.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: EngineSettings) -> None:
        self._session_factory = session_factory
        self._retention = timedelta(days=settings.snapshot_retention_days)

    async def capture(
        self,
        *,
        kind: SnapshotKind,
        payload: dict[str, list[dict[str, Any]]],
        operation_id: str | None = None,
        target: EntityRef | None = None,
        parent_snapshot_id: str | None = None,
    ) -> SnapshotInfo:
        async def _write() -> SnapshotInfo:
            async with self._session_factory() as session, session.begin():
                row = await SnapshotRepository(session).create(
                    kind=kind.value,
                    payload=payload,
                    retention=self._retention,
                    operation_id=operation_id,
                    target_type=target.entity_type.value if target else None,
                    target_id=target.entity_id if target else None,
                    parent_snapshot_id=parent_snapshot_id,
                )
                return snapshot_info(row)

        try:
            return await asyncio.shield(_write())
        except SQLAlchemyError as exc:
            logger.error("Snapshot write failed (%s): %s", kind.value, exc)
            raise SnapshotError(f"Failed to write {kind.value} snapshot", details={"reason": str(exc)}) from exc

    async def get(self, snapshot_id: str) -> SnapshotInfo:
        async with self._session_factory() as session:
            row = await SnapshotRepository(session).get(snapshot_id)
        if row is None:
            raise EntityNotFoundError(f"Snapshot {snapshot_id} not found")
        return snapshot_info(row)

    async def list_for_target(self, target: EntityRef) -> list[SnapshotInfo]:
        async with self._session_factory() as session:
            rows = await SnapshotRepository(session).list_for_target(target.entity_type.value, target.entity_id)
        return [snapshot_info(row) for row in rows]

    async def purge_expired(self) -> int:
        async with self._session_factory() as session, session.begin():
            return await SnapshotRepository(session).purge_expired()
