"""Repository classes providing access to the cadenza state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  Writes call ``session.flush()``
where generated values are needed; the caller is responsible for committing
(typically via ``session.begin()``).
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import DateTime, Numeric, Table, and_, delete, exists, func, insert, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from cascade_engine.models.audit import AuditEntry, AuditQuery
from cascade_engine.state.tables import AuditLogTable, Base, DeletionSnapshotTable

logger = logging.getLogger(__name__)

# SQLite caps bound parameters per statement; keep IN-lists well below it.
_IN_CHUNK = 500

# Stable across processes; the builtin hash() is salted per interpreter.
_AUDIT_CHAIN_LOCK_ID = int.from_bytes(hashlib.sha256(b"cadenza_audit_chain").digest()[:4], "big") & 0x7FFFFFFF


def _as_utc(value: datetime) -> datetime:
    """Coerce naive datetimes (as returned by SQLite) to UTC-aware."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _chunks(values: Sequence[str], size: int = _IN_CHUNK) -> Iterable[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _table(name: str) -> Table:
    try:
        return Base.metadata.tables[name]
    except KeyError:
        raise ValueError(f"Unknown table: {name!r}") from None


# ---------------------------------------------------------------------------
# Row serialization
# ---------------------------------------------------------------------------


def serialize_row(row: dict[str, Any]) -> dict[str, Any]:
    """Convert a row mapping into JSON-safe primitives for snapshot payloads."""
    out: dict[str, Any] = {}
    for key, value in row.items():
        if isinstance(value, datetime):
            out[key] = _as_utc(value).isoformat()
        elif isinstance(value, Decimal):
            out[key] = str(value)
        else:
            out[key] = value
    return out


def deserialize_row(table_name: str, row: dict[str, Any]) -> dict[str, Any]:
    """Inverse of :func:`serialize_row`, driven by the table's column types."""
    table = _table(table_name)
    out: dict[str, Any] = {}
    for key, value in row.items():
        if key not in table.c:
            continue
        col_type = table.c[key].type
        if value is not None and isinstance(col_type, DateTime) and isinstance(value, str):
            out[key] = datetime.fromisoformat(value)
        elif value is not None and isinstance(col_type, Numeric) and isinstance(value, str):
            out[key] = Decimal(value)
        else:
            out[key] = value
    return out


# ---------------------------------------------------------------------------
# RecordRepository
# ---------------------------------------------------------------------------


class RecordRepository:
    """Table-generic access to the conservatory domain tables.

    All methods address tables by name and identify records by their
    ``id`` primary key, so the cascade schema can stay declarative.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def exists(self, table_name: str, record_id: str) -> bool:
        t = _table(table_name)
        result = await self._session.execute(select(t.c.id).where(t.c.id == record_id))
        return result.scalar_one_or_none() is not None

    async def get(self, table_name: str, record_id: str) -> dict[str, Any] | None:
        t = _table(table_name)
        result = await self._session.execute(select(t).where(t.c.id == record_id))
        row = result.mappings().one_or_none()
        return dict(row) if row is not None else None

    async def fetch_where_in(
        self,
        table_name: str,
        column: str,
        values: Sequence[str],
    ) -> list[dict[str, Any]]:
        """Return full rows whose *column* is one of *values*, ordered by id."""
        if not values:
            return []
        t = _table(table_name)
        rows: dict[str, dict[str, Any]] = {}
        for chunk in _chunks(list(values)):
            result = await self._session.execute(select(t).where(t.c[column].in_(chunk)))
            for row in result.mappings():
                rows[row["id"]] = dict(row)
        return [rows[key] for key in sorted(rows)]

    async def existing_ids(self, table_name: str, ids: Sequence[str]) -> list[str]:
        """Return the subset of *ids* that still exist, in input order."""
        if not ids:
            return []
        t = _table(table_name)
        found: set[str] = set()
        for chunk in _chunks(list(ids)):
            result = await self._session.execute(select(t.c.id).where(t.c.id.in_(chunk)))
            found.update(result.scalars().all())
        return [i for i in ids if i in found]

    async def count(self, table_name: str) -> int:
        t = _table(table_name)
        result = await self._session.execute(select(func.count()).select_from(t))
        return int(result.scalar_one())

    async def delete_ids(self, table_name: str, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        t = _table(table_name)
        total = 0
        for chunk in _chunks(list(ids)):
            result = await self._session.execute(delete(t).where(t.c.id.in_(chunk)))
            total += result.rowcount or 0
        return total

    async def nullify(
        self,
        table_name: str,
        column: str,
        ids: Sequence[str],
        referenced: Sequence[str],
    ) -> int:
        """Clear *column* on rows *ids*, only where it still points into *referenced*."""
        if not ids or not referenced:
            return 0
        t = _table(table_name)
        total = 0
        for chunk in _chunks(list(ids)):
            stmt = (
                update(t)
                .where(and_(t.c.id.in_(chunk), t.c[column].in_(list(referenced))))
                .values({column: None})
            )
            result = await self._session.execute(stmt)
            total += result.rowcount or 0
        return total

    async def update_values(self, table_name: str, record_id: str, values: dict[str, Any]) -> int:
        t = _table(table_name)
        result = await self._session.execute(update(t).where(t.c.id == record_id).values(values))
        return result.rowcount or 0

    async def restore(self, table_name: str, rows: Sequence[dict[str, Any]]) -> int:
        """Write *rows* back: insert missing ids, overwrite existing ones.

        Nullified rows still exist after a cascade, so restoration has to
        update as well as insert.
        """
        if not rows:
            return 0
        t = _table(table_name)
        decoded = [deserialize_row(table_name, r) for r in rows]
        present = set(await self.existing_ids(table_name, [r["id"] for r in decoded]))
        missing = [r for r in decoded if r["id"] not in present]
        if missing:
            await self._session.execute(insert(t), missing)
        for row in decoded:
            if row["id"] in present:
                values = {k: v for k, v in row.items() if k != "id"}
                await self._session.execute(update(t).where(t.c.id == row["id"]).values(values))
        return len(decoded)

    # -- dangling reference queries ------------------------------------------

    def _dangling_clause(self, table_name: str, column: str, owner_table: str) -> Any:
        t = _table(table_name)
        owner = _table(owner_table)
        return and_(
            t.c[column].is_not(None),
            ~exists(select(owner.c.id).where(owner.c.id == t.c[column])),
        )

    async def count_dangling(self, table_name: str, column: str, owner_table: str) -> int:
        t = _table(table_name)
        stmt = select(func.count()).select_from(t).where(self._dangling_clause(table_name, column, owner_table))
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def dangling_ids(
        self,
        table_name: str,
        column: str,
        owner_table: str,
        *,
        limit: int | None = None,
    ) -> list[str]:
        t = _table(table_name)
        stmt = select(t.c.id).where(self._dangling_clause(table_name, column, owner_table)).order_by(t.c.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def delete_dangling(self, table_name: str, column: str, owner_table: str, ids: Sequence[str]) -> int:
        """Delete *ids* whose reference is still dangling at statement time."""
        if not ids:
            return 0
        t = _table(table_name)
        stmt = delete(t).where(and_(t.c.id.in_(list(ids)), self._dangling_clause(table_name, column, owner_table)))
        result = await self._session.execute(stmt)
        return result.rowcount or 0

    async def nullify_dangling(self, table_name: str, column: str, owner_table: str, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        t = _table(table_name)
        stmt = (
            update(t)
            .where(and_(t.c.id.in_(list(ids)), self._dangling_clause(table_name, column, owner_table)))
            .values({column: None})
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0


# ---------------------------------------------------------------------------
# SnapshotRepository
# ---------------------------------------------------------------------------


class SnapshotRepository:
    """CRUD operations for the ``deletion_snapshots`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        kind: str,
        payload: dict[str, list[dict[str, Any]]],
        retention: timedelta,
        operation_id: str | None = None,
        target_type: str | None = None,
        target_id: str | None = None,
        parent_snapshot_id: str | None = None,
        now: datetime | None = None,
    ) -> DeletionSnapshotTable:
        created = now or datetime.now(UTC)
        row = DeletionSnapshotTable(
            id=uuid.uuid4().hex,
            operation_id=operation_id,
            kind=kind,
            target_type=target_type,
            target_id=target_id,
            payload_json=payload,
            record_count=sum(len(rows) for rows in payload.values()),
            parent_snapshot_id=parent_snapshot_id,
            created_at=created,
            expires_at=created + retention,
        )
        self._session.add(row)
        await self._session.flush()
        logger.info(
            "Snapshot %s (%s) written: %d records across %d tables",
            row.id,
            kind,
            row.record_count,
            len(payload),
        )
        return row

    async def get(self, snapshot_id: str) -> DeletionSnapshotTable | None:
        stmt = select(DeletionSnapshotTable).where(DeletionSnapshotTable.id == snapshot_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_target(self, target_type: str, target_id: str) -> list[DeletionSnapshotTable]:
        stmt = (
            select(DeletionSnapshotTable)
            .where(
                DeletionSnapshotTable.target_type == target_type,
                DeletionSnapshotTable.target_id == target_id,
            )
            .order_by(DeletionSnapshotTable.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def mark_consumed(self, snapshot_id: str, *, now: datetime | None = None) -> bool:
        """Atomically consume an unexpired, unconsumed snapshot.

        Returns ``False`` when another caller consumed it first or it expired.
        """
        moment = now or datetime.now(UTC)
        stmt = (
            update(DeletionSnapshotTable)
            .where(
                DeletionSnapshotTable.id == snapshot_id,
                DeletionSnapshotTable.consumed_at.is_(None),
                DeletionSnapshotTable.expires_at > moment,
            )
            .values(consumed_at=moment)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) == 1

    async def purge_expired(self, *, now: datetime | None = None) -> int:
        moment = now or datetime.now(UTC)
        stmt = delete(DeletionSnapshotTable).where(DeletionSnapshotTable.expires_at <= moment)
        result = await self._session.execute(stmt)
        purged = result.rowcount or 0
        if purged:
            logger.info("Purged %d expired snapshots", purged)
        return purged


# ---------------------------------------------------------------------------
# AuditRepository
# ---------------------------------------------------------------------------


class AuditRepository:
    """Append-only audit log repository with hash-chaining for tamper evidence.

    Each entry is linked to its predecessor via ``previous_hash``.
    ``entry_hash`` is a SHA-256 digest of the entry's content fields
    concatenated with the previous hash, so modifying an existing row
    breaks the chain for every later entry.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @staticmethod
    def _compute_hash(
        operation: str,
        actor_id: str,
        actor_role: str,
        success: bool,
        entity_type: str | None,
        entity_id: str | None,
        metadata: dict | None,
        previous_hash: str | None,
        created_at: datetime,
    ) -> str:
        """Compute SHA-256 over the ``|``-joined content fields.

        ``None`` values are represented as the empty string.
        """
        parts = [
            operation,
            actor_id,
            actor_role,
            "1" if success else "0",
            entity_type or "",
            entity_id or "",
            json.dumps(metadata, sort_keys=True, default=str) if metadata else "",
            previous_hash or "",
            _as_utc(created_at).isoformat(),
        ]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()

    async def _latest(self) -> tuple[int, str | None]:
        stmt = select(AuditLogTable.seq, AuditLogTable.entry_hash).order_by(AuditLogTable.seq.desc()).limit(1)
        result = await self._session.execute(stmt)
        row = result.one_or_none()
        if row is None:
            return 0, None
        return int(row[0]), row[1]

    async def log(self, entry: AuditEntry) -> str:
        """Append *entry* and return its id."""
        entry_id = uuid.uuid4().hex
        now = _as_utc(entry.timestamp) if entry.timestamp else datetime.now(UTC)

        bind = self._session.get_bind()
        dialect_name = getattr(getattr(bind, "dialect", None), "name", "")
        if "postgresql" in str(dialect_name):
            await self._session.execute(
                text("SELECT pg_advisory_xact_lock(:lock_id)"),
                {"lock_id": _AUDIT_CHAIN_LOCK_ID},
            )

        last_seq, previous_hash = await self._latest()
        metadata = entry.metadata or None
        entry_hash = self._compute_hash(
            operation=entry.operation,
            actor_id=entry.actor_id,
            actor_role=entry.actor_role,
            success=entry.success,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            metadata=metadata,
            previous_hash=previous_hash,
            created_at=now,
        )

        row = AuditLogTable(
            id=entry_id,
            operation=entry.operation,
            actor_id=entry.actor_id,
            actor_role=entry.actor_role,
            success=entry.success,
            duration_ms=entry.duration_ms,
            error=entry.error,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            metadata_json=metadata,
            previous_hash=previous_hash,
            entry_hash=entry_hash,
            created_at=now,
            seq=last_seq + 1,
        )
        self._session.add(row)
        await self._session.flush()

        logger.info(
            "Audit: actor=%s op=%s success=%s entity=%s/%s",
            entry.actor_id,
            entry.operation,
            entry.success,
            entry.entity_type or "-",
            entry.entity_id or "-",
        )
        return entry_id

    def _filtered(self, query: AuditQuery) -> Any:
        stmt = select(AuditLogTable)
        if query.actor_id is not None:
            stmt = stmt.where(AuditLogTable.actor_id == query.actor_id)
        if query.operation is not None:
            stmt = stmt.where(AuditLogTable.operation == query.operation)
        if query.entity_type is not None:
            stmt = stmt.where(AuditLogTable.entity_type == query.entity_type)
        if query.entity_id is not None:
            stmt = stmt.where(AuditLogTable.entity_id == query.entity_id)
        if query.since is not None:
            stmt = stmt.where(AuditLogTable.created_at >= query.since)
        if query.until is not None:
            stmt = stmt.where(AuditLogTable.created_at <= query.until)
        if query.success is not None:
            stmt = stmt.where(AuditLogTable.success == query.success)
        return stmt

    async def query(self, query: AuditQuery) -> tuple[list[AuditEntry], int]:
        """Return one page of entries (most recent first) and the total match count."""
        base = self._filtered(query)
        count_stmt = select(func.count()).select_from(base.subquery())
        total = int((await self._session.execute(count_stmt)).scalar_one())

        stmt = base.order_by(AuditLogTable.seq.desc()).limit(query.limit).offset(query.offset)
        result = await self._session.execute(stmt)
        entries = [self._to_entry(row) for row in result.scalars().all()]
        return entries, total

    @staticmethod
    def _to_entry(row: AuditLogTable) -> AuditEntry:
        return AuditEntry(
            id=row.id,
            timestamp=_as_utc(row.created_at),
            operation=row.operation,
            actor_id=row.actor_id,
            actor_role=row.actor_role,
            success=row.success,
            duration_ms=row.duration_ms,
            error=row.error,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            metadata=row.metadata_json or {},
            entry_hash=row.entry_hash,
        )

    async def verify_chain(self, *, limit: int = 1000) -> tuple[bool, int]:
        """Verify the hash chain over the oldest *limit* entries.

        Returns ``(is_valid, entries_checked)``.
        """
        stmt = select(AuditLogTable).order_by(AuditLogTable.seq.asc()).limit(limit)
        result = await self._session.execute(stmt)
        entries = list(result.scalars().all())

        checked = 0
        previous_hash: str | None = None
        for entry in entries:
            if entry.previous_hash != previous_hash:
                logger.warning(
                    "Audit chain break at entry %s: expected previous_hash=%s, got=%s",
                    entry.id,
                    previous_hash,
                    entry.previous_hash,
                )
                return (False, checked)

            expected_hash = self._compute_hash(
                operation=entry.operation,
                actor_id=entry.actor_id,
                actor_role=entry.actor_role,
                success=entry.success,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                metadata=entry.metadata_json,
                previous_hash=entry.previous_hash,
                created_at=entry.created_at,
            )
            if entry.entry_hash != expected_hash:
                logger.warning(
                    "Audit hash mismatch at entry %s: stored=%s, computed=%s",
                    entry.id,
                    entry.entry_hash,
                    expected_hash,
                )
                return (False, checked)

            previous_hash = entry.entry_hash
            checked += 1

        return (True, checked)
