"""Centralized audit logging service.

Wraps :class:`AuditRepository` with predefined operation constants and the
:class:`~cascade_engine.ports.AuditSink` interface the engine calls.  Every
operation admitted (or refused) by the service facade is funnelled through
here so that the audit trail is consistent and complete.

INVARIANT: recording never raises.  A write failure is logged and sent to
the alert port; the business operation that produced the entry is
unaffected.
"""

from __future__ import annotations

import asyncio
import csv
import io
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from cascade_engine.models.audit import AuditEntry, AuditQuery, PagedAuditEntries
from cascade_engine.ports import AlertSink
from cascade_engine.state.repository import AuditRepository
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Operation constants
# ---------------------------------------------------------------------------


class AuditAction:
    """Well-known audit operation identifiers.

    These match the facade operation names so that refusals, failures and
    successes for one operation share a single filter value.
    """

    PREVIEW_DELETION = "preview_deletion"
    EXECUTE_DELETE = "execute_delete"
    CANCEL_OPERATION = "cancel_operation"
    GET_ACTIVE_OPERATIONS = "get_active_operations"
    SCAN_ORPHANS = "scan_orphans"
    CLEANUP_ORPHANED = "cleanup_orphaned"
    VALIDATE_INTEGRITY = "validate_integrity"
    REPAIR_INTEGRITY = "repair_integrity"
    ROLLBACK_DELETION = "rollback_deletion"
    LIST_SNAPSHOTS = "list_snapshots"
    GET_AUDIT_LOG = "get_audit_log"
    SECURITY_SUMMARY = "security_summary"
    UNBLOCK_ORIGIN = "unblock_origin"
    EXPORT_AUDIT_LOG = "export_audit_log"


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

_EXPORT_MAX_RECORDS = 100_000
_EXPORT_PAGE_SIZE = 500
_CSV_FIELDS = (
    "id",
    "timestamp",
    "operation",
    "actor_id",
    "actor_role",
    "success",
    "duration_ms",
    "error",
    "entity_type",
    "entity_id",
    "entry_hash",
    "metadata",
)
_CSV_DANGEROUS_CHARS = frozenset({"=", "+", "-", "@", "\t", "\r"})


class AuditExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"


@dataclass(frozen=True)
class AuditExport:
    data: bytes
    content_type: str
    filename: str
    record_count: int
    truncated: bool = False


def _sanitize_csv_value(value: Any) -> Any:
    """Prefix spreadsheet formula triggers with a single quote."""
    if isinstance(value, str) and value and value[0] in _CSV_DANGEROUS_CHARS:
        return "'" + value
    return value


def _csv_row(entry: AuditEntry) -> list[Any]:
    row = entry.model_dump(mode="json")
    row["metadata"] = json.dumps(row["metadata"], sort_keys=True)
    return [_sanitize_csv_value(row.get(field, "")) for field in _CSV_FIELDS]


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuditRecorder:
    """Durable, hash-chained audit trail.

    Each entry is written in its own transaction, shielded from the
    caller's cancellation so an interrupted request still leaves its
    record.  Appends are serialized in-process because the chain position
    is read and written in the same transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        alerts: AlertSink | None = None,
        *,
        export_max_records: int = _EXPORT_MAX_RECORDS,
    ) -> None:
        self._session_factory = session_factory
        self._alerts = alerts
        self._export_max_records = export_max_records
        self._lock = asyncio.Lock()

    async def record(self, entry: AuditEntry) -> None:
        try:
            await asyncio.shield(self._append(entry))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(
                "Failed to write audit entry: operation=%s actor=%s",
                entry.operation,
                entry.actor_id,
            )
            await self._alert_failure(entry, exc)

    async def _append(self, entry: AuditEntry) -> str:
        async with self._lock:
            async with self._session_factory() as session, session.begin():
                entry_id = await AuditRepository(session).log(entry)
        logger.debug(
            "Audit: operation=%s actor=%s success=%s id=%s",
            entry.operation,
            entry.actor_id,
            entry.success,
            entry_id,
        )
        return entry_id

    async def _alert_failure(self, entry: AuditEntry, exc: Exception) -> None:
        if self._alerts is None:
            return
        payload: dict[str, Any] = {
            "operation": entry.operation,
            "actor_id": entry.actor_id,
            "success": entry.success,
            "error": str(exc),
        }
        try:
            await self._alerts.alert("Audit write failed", payload)
        except Exception:
            logger.exception("Failed to deliver audit failure alert")

    async def query(self, query: AuditQuery) -> PagedAuditEntries:
        async with self._session_factory() as session:
            entries, total = await AuditRepository(session).query(query)
        return PagedAuditEntries(
            entries=entries,
            page=query.page,
            limit=query.limit,
            total_count=total,
            has_more=query.offset + len(entries) < total,
        )

    async def export(self, query: AuditQuery, fmt: AuditExportFormat = AuditExportFormat.JSON) -> AuditExport:
        """Export every entry matching *query*'s filters as JSON or CSV.

        Pagination fields on *query* are ignored.  Entries appended after the
        export starts are excluded, and at most ``export_max_records``
        entries are written (most recent first).
        """
        fmt = AuditExportFormat(fmt)
        exported_at = datetime.now(UTC)
        filters = query.model_dump(mode="json", exclude_none=True, exclude={"page", "limit"})
        bounded = query.model_copy(update={"until": query.until or exported_at, "limit": _EXPORT_PAGE_SIZE})

        entries: list[AuditEntry] = []
        total = 0
        page = 1
        async with self._session_factory() as session:
            repo = AuditRepository(session)
            while len(entries) < self._export_max_records:
                batch, total = await repo.query(bounded.model_copy(update={"page": page}))
                entries.extend(batch)
                if len(batch) < _EXPORT_PAGE_SIZE:
                    break
                page += 1
        entries = entries[: self._export_max_records]
        truncated = total > len(entries)
        if truncated:
            logger.warning("Audit export truncated at %d of %d entries", len(entries), total)

        base_name = f"cadenza_audit_{exported_at.strftime('%Y%m%d_%H%M%S')}"
        if fmt is AuditExportFormat.JSON:
            document = {
                "exported_at": exported_at.isoformat(),
                "filters": filters,
                "record_count": len(entries),
                "truncated": truncated,
                "entries": [entry.model_dump(mode="json") for entry in entries],
            }
            data = json.dumps(document, indent=2).encode("utf-8")
            return AuditExport(data, "application/json", f"{base_name}.json", len(entries), truncated)

        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(_CSV_FIELDS)
        for entry in entries:
            writer.writerow(_csv_row(entry))
        data = output.getvalue().encode("utf-8")
        return AuditExport(data, "text/csv", f"{base_name}.csv", len(entries), truncated)

    async def verify_chain(self, *, limit: int = 1000) -> dict[str, Any]:
        async with self._session_factory() as session:
            valid, checked = await AuditRepository(session).verify_chain(limit=limit)
        if not valid:
            logger.error("Audit chain verification failed after %d entries", checked)
        return {"valid": valid, "entries_checked": checked}
