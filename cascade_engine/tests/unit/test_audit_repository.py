"""Unit tests for AuditRepository hash-chaining and query logic.

Covers:
- Writing and reading audit entries
- Hash chain integrity verification (valid chain)
- Hash chain verification detecting tamper
- Query filters (by operation, actor, entity, success, since)
- Pagination (page / limit)
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from cascade_engine.models.audit import AuditEntry, AuditQuery
from cascade_engine.state.repository import AuditRepository
from cascade_engine.state.tables import AuditLogTable
from sqlalchemy import update


def _entry(operation: str = "execute_delete", **overrides) -> AuditEntry:
    values = {
        "operation": operation,
        "actor_id": "alice",
        "actor_role": "admin",
        "success": True,
        "entity_type": "student",
        "entity_id": "s1",
        "metadata": {"origin": "10.0.0.1"},
    }
    values.update(overrides)
    return AuditEntry(**values)


@pytest_asyncio.fixture
async def session(factory):
    async with factory() as session:
        yield session


class TestWriteAndRead:
    @pytest.mark.asyncio
    async def test_log_returns_id_and_reads_back(self, session):
        repo = AuditRepository(session)
        entry_id = await repo.log(_entry(duration_ms=12))
        await session.commit()

        assert isinstance(entry_id, str)
        assert len(entry_id) == 32  # uuid4 hex

        entries, total = await repo.query(AuditQuery())
        assert total == 1
        assert entries[0].id == entry_id
        assert entries[0].actor_id == "alice"
        assert entries[0].duration_ms == 12
        assert entries[0].metadata == {"origin": "10.0.0.1"}
        assert entries[0].entry_hash is not None
        assert entries[0].timestamp.tzinfo is not None

    @pytest.mark.asyncio
    async def test_most_recent_first(self, session):
        repo = AuditRepository(session)
        for op in ("a", "b", "c"):
            await repo.log(_entry(op))
        entries, _ = await repo.query(AuditQuery())
        assert [e.operation for e in entries] == ["c", "b", "a"]

    @pytest.mark.asyncio
    async def test_second_entry_chains_to_first(self, session):
        repo = AuditRepository(session)
        await repo.log(_entry("a"))
        await repo.log(_entry("b"))

        rows = (await session.execute(AuditLogTable.__table__.select().order_by(AuditLogTable.seq))).all()
        assert rows[0].previous_hash is None
        assert rows[1].previous_hash == rows[0].entry_hash
        assert [r.seq for r in rows] == [1, 2]


class TestChainVerification:
    @pytest.mark.asyncio
    async def test_valid_chain(self, session):
        repo = AuditRepository(session)
        for i in range(5):
            await repo.log(_entry(f"op{i}", metadata={"i": i, "nested": {"b": 1, "a": 2}}))
        await session.commit()

        assert await repo.verify_chain() == (True, 5)

    @pytest.mark.asyncio
    async def test_empty_chain_is_valid(self, session):
        assert await AuditRepository(session).verify_chain() == (True, 0)

    @pytest.mark.asyncio
    async def test_tampered_metadata_detected(self, session):
        repo = AuditRepository(session)
        for i in range(3):
            await repo.log(_entry(f"op{i}"))
        await session.commit()

        await session.execute(
            update(AuditLogTable).where(AuditLogTable.seq == 2).values(metadata_json={"origin": "forged"})
        )
        await session.commit()
        session.expire_all()

        valid, checked = await repo.verify_chain()
        assert valid is False
        assert checked == 1

    @pytest.mark.asyncio
    async def test_tampered_success_flag_detected(self, session):
        repo = AuditRepository(session)
        await repo.log(_entry("op0", success=False, error="PERMISSION_DENIED"))
        await session.commit()

        await session.execute(update(AuditLogTable).values(success=True))
        await session.commit()
        session.expire_all()

        assert await repo.verify_chain() == (False, 0)

    @pytest.mark.asyncio
    async def test_verify_limit(self, session):
        repo = AuditRepository(session)
        for i in range(4):
            await repo.log(_entry(f"op{i}"))
        assert await repo.verify_chain(limit=2) == (True, 2)


class TestQueryFilters:
    @pytest_asyncio.fixture
    async def populated(self, session):
        repo = AuditRepository(session)
        await repo.log(_entry("preview_deletion"))
        await repo.log(_entry("execute_delete", actor_id="bob", success=False, error="RATE_LIMITED"))
        await repo.log(_entry("execute_delete", entity_type="teacher", entity_id="t1"))
        await repo.log(_entry("validate_integrity", entity_type=None, entity_id=None))
        await session.commit()
        return repo

    @pytest.mark.asyncio
    async def test_by_operation(self, populated):
        entries, total = await populated.query(AuditQuery(operation="execute_delete"))
        assert total == 2
        assert all(e.operation == "execute_delete" for e in entries)

    @pytest.mark.asyncio
    async def test_by_actor(self, populated):
        entries, total = await populated.query(AuditQuery(actor_id="bob"))
        assert total == 1
        assert entries[0].error == "RATE_LIMITED"

    @pytest.mark.asyncio
    async def test_by_entity(self, populated):
        _, total = await populated.query(AuditQuery(entity_type="teacher", entity_id="t1"))
        assert total == 1

    @pytest.mark.asyncio
    async def test_by_success(self, populated):
        _, failures = await populated.query(AuditQuery(success=False))
        _, successes = await populated.query(AuditQuery(success=True))
        assert (failures, successes) == (1, 3)

    @pytest.mark.asyncio
    async def test_since_in_future_matches_nothing(self, populated):
        entries, total = await populated.query(AuditQuery(since=datetime.now(UTC) + timedelta(hours=1)))
        assert (entries, total) == ([], 0)

    @pytest.mark.asyncio
    async def test_since_in_past_matches_everything(self, populated):
        _, total = await populated.query(AuditQuery(since=datetime.now(UTC) - timedelta(hours=1)))
        assert total == 4


class TestPagination:
    @pytest.mark.asyncio
    async def test_pages(self, session):
        repo = AuditRepository(session)
        for i in range(7):
            await repo.log(_entry(f"op{i}"))

        first, total = await repo.query(AuditQuery(page=1, limit=3))
        third, _ = await repo.query(AuditQuery(page=3, limit=3))
        assert total == 7
        assert [e.operation for e in first] == ["op6", "op5", "op4"]
        assert [e.operation for e in third] == ["op0"]

    def test_limit_capped(self):
        with pytest.raises(ValueError):
            AuditQuery(limit=501)

    def test_inverted_range_rejected(self):
        now = datetime.now(UTC)
        with pytest.raises(ValueError):
            AuditQuery(since=now, until=now - timedelta(seconds=1))
