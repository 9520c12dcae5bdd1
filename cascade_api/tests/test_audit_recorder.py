"""Tests for the durable audit recorder wrapped around AuditRepository."""

from __future__ import annotations

import asyncio
import csv
import io
import json

import pytest
from cascade_api.services.audit_service import AuditExportFormat, AuditRecorder
from cascade_engine.models.audit import AuditEntry, AuditQuery
from cascade_engine.state.database import session_factory
from cascade_engine.state.repository import AuditRepository


def _entry(operation: str = "validate_integrity", **overrides) -> AuditEntry:
    values = {"operation": operation, "actor_id": "alice", "actor_role": "admin", "success": True}
    values.update(overrides)
    return AuditEntry(**values)


class _BrokenFactory:
    def __call__(self):
        raise ConnectionError("database unavailable")


class TestAuditRecorder:
    @pytest.mark.asyncio
    async def test_record_and_query(self, services):
        recorder = services.audit
        for op in ("a", "b", "c"):
            await recorder.record(_entry(op))

        page = await recorder.query(AuditQuery(limit=2))
        assert [e.operation for e in page.entries] == ["c", "b"]
        assert page.total_count == 3
        assert page.has_more is True

    @pytest.mark.asyncio
    async def test_concurrent_appends_keep_chain_intact(self, services):
        recorder = services.audit
        await asyncio.gather(*(recorder.record(_entry(f"op{i}")) for i in range(8)))
        assert await recorder.verify_chain() == {"valid": True, "entries_checked": 8}

    @pytest.mark.asyncio
    async def test_write_failure_never_raises(self, alerts):
        recorder = AuditRecorder(_BrokenFactory(), alerts)
        await recorder.record(_entry("execute_delete", actor_id="bob"))

        ((title, payload),) = alerts.alerts
        assert title == "Audit write failed"
        assert payload["operation"] == "execute_delete"
        assert payload["actor_id"] == "bob"
        assert "database unavailable" in payload["error"]

    @pytest.mark.asyncio
    async def test_alert_failure_is_swallowed(self):
        class _Failing:
            async def alert(self, title, payload):
                raise RuntimeError("alerting down too")

        await AuditRecorder(_BrokenFactory(), _Failing()).record(_entry())

    @pytest.mark.asyncio
    async def test_uses_own_transaction(self, services):
        await services.audit.record(_entry())
        async with session_factory(services.engine)() as session:
            _, total = await AuditRepository(session).query(AuditQuery())
        assert total == 1


class TestAuditExport:
    @pytest.mark.asyncio
    async def test_json_export_applies_filters(self, services):
        recorder = services.audit
        await recorder.record(_entry("execute_delete", entity_type="student", entity_id="s1"))
        await recorder.record(_entry("execute_delete", actor_id="bob", success=False, error="NOT_FOUND"))
        await recorder.record(_entry("validate_integrity"))

        export = await recorder.export(AuditQuery(operation="execute_delete", page=3, limit=1))

        assert export.content_type == "application/json"
        assert export.filename.startswith("cadenza_audit_") and export.filename.endswith(".json")
        assert export.record_count == 2
        document = json.loads(export.data)
        assert document["filters"] == {"operation": "execute_delete"}
        assert document["truncated"] is False
        assert [e["actor_id"] for e in document["entries"]] == ["bob", "alice"]
        assert document["entries"][1]["entity_id"] == "s1"

    @pytest.mark.asyncio
    async def test_csv_export(self, services):
        recorder = services.audit
        await recorder.record(_entry("execute_delete", metadata={"records_deleted": 4}))
        await recorder.record(_entry("execute_delete", actor_id="=cmd|calc", success=False))

        export = await recorder.export(AuditQuery(), AuditExportFormat.CSV)

        assert export.content_type == "text/csv"
        assert export.filename.endswith(".csv")
        rows = list(csv.DictReader(io.StringIO(export.data.decode("utf-8"))))
        assert len(rows) == 2
        assert rows[0]["actor_id"] == "'=cmd|calc"
        assert rows[0]["success"] == "False"
        assert json.loads(rows[1]["metadata"]) == {"records_deleted": 4}
        assert rows[1]["entry_hash"]

    @pytest.mark.asyncio
    async def test_csv_export_of_empty_log_has_header(self, services):
        export = await services.audit.export(AuditQuery(), AuditExportFormat.CSV)
        assert export.record_count == 0
        assert export.data.decode("utf-8").strip().split(",")[:3] == ["id", "timestamp", "operation"]

    @pytest.mark.asyncio
    async def test_export_is_capped(self, services):
        recorder = AuditRecorder(session_factory(services.engine), export_max_records=2)
        for op in ("a", "b", "c"):
            await recorder.record(_entry(op))

        export = await recorder.export(AuditQuery())

        assert export.record_count == 2
        assert export.truncated is True
        assert [e["operation"] for e in json.loads(export.data)["entries"]] == ["c", "b"]
