"""Unit tests for snapshot capture, rollback and the post-rollback cool-down."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from cascade_engine.errors import ConflictError, EntityNotFoundError, IntegrityViolation, RollbackNotAvailable
from cascade_engine.models.audit import Actor
from cascade_engine.models.operation import DeletionOperation, DeletionOptions, OperationStatus
from cascade_engine.models.refs import EntityRef, EntityType
from cascade_engine.models.snapshot import SnapshotKind
from cascade_engine.state.repository import SnapshotRepository

ACTOR = Actor(actor_id="tester", actor_role="admin")
S1 = EntityRef(entity_type=EntityType.STUDENT, entity_id="s1")


async def _delete_s1(runtime, seed) -> DeletionOperation:
    await seed.student_graph("s1")
    op = await runtime.executor.execute(S1, actor=ACTOR)
    assert op.status is OperationStatus.COMPLETED
    return op


class TestRollback:
    @pytest.mark.asyncio
    async def test_restores_deleted_and_nullified_records(self, runtime, seed):
        op = await _delete_s1(runtime, seed)

        result = await runtime.rollback.rollback(op.snapshot_id)

        assert result.verified is True
        assert result.records_restored == 11
        assert result.restored["students"] == 1
        assert result.restored["lessons"] == 2
        assert result.target == S1
        student = await seed.get("students", "s1")
        assert student is not None
        assert student["first_name"] == "Sam"
        assert student["created_at"] is not None
        assert (await seed.get("payments", "s1-p1"))["student_id"] == "s1"
        assert (await seed.get("attendance", "s1-a2"))["status"] == "late"

    @pytest.mark.asyncio
    async def test_preview_after_rollback_matches_original(self, runtime, seed):
        await seed.student_graph("s1")
        before = await runtime.analyzer.preview(S1)
        op = await runtime.executor.execute(S1, actor=ACTOR)
        await runtime.rollback.rollback(op.snapshot_id)
        after = await runtime.analyzer.preview(S1)
        assert after.counts == before.counts

    @pytest.mark.asyncio
    async def test_new_snapshot_chains_to_consumed_one(self, runtime, seed):
        op = await _delete_s1(runtime, seed)
        result = await runtime.rollback.rollback(op.snapshot_id)

        consumed = await runtime.snapshots.get(op.snapshot_id)
        assert consumed.consumed is True
        replay = await runtime.snapshots.get(result.new_snapshot_id)
        assert replay.kind is SnapshotKind.POST_ROLLBACK
        assert replay.parent_snapshot_id == op.snapshot_id
        assert replay.consumed is False

    @pytest.mark.asyncio
    async def test_second_rollback_refused(self, runtime, seed):
        op = await _delete_s1(runtime, seed)
        await runtime.rollback.rollback(op.snapshot_id)
        with pytest.raises(RollbackNotAvailable):
            await runtime.rollback.rollback(op.snapshot_id)

    @pytest.mark.asyncio
    async def test_post_rollback_snapshot_is_replayable(self, runtime, seed):
        op = await _delete_s1(runtime, seed)
        first = await runtime.rollback.rollback(op.snapshot_id)
        second = await runtime.rollback.rollback(first.new_snapshot_id)
        assert second.records_restored == first.records_restored
        assert second.new_snapshot_id not in (op.snapshot_id, first.new_snapshot_id)

    @pytest.mark.asyncio
    async def test_unknown_snapshot(self, runtime):
        with pytest.raises(EntityNotFoundError):
            await runtime.rollback.rollback("does-not-exist")

    @pytest.mark.asyncio
    async def test_refused_while_target_is_being_deleted(self, runtime, seed):
        op = await _delete_s1(runtime, seed)
        busy = DeletionOperation(operation_id="busy", target=S1, start_time=datetime.now(UTC))
        await runtime.registry.acquire(busy, 60)

        with pytest.raises(RollbackNotAvailable) as exc_info:
            await runtime.rollback.rollback(op.snapshot_id)
        assert exc_info.value.operation_id == "busy"
        assert (await runtime.snapshots.get(op.snapshot_id)).consumed is False

    @pytest.mark.asyncio
    async def test_delete_refused_while_rollback_restores(self, runtime, seed, monkeypatch):
        op = await _delete_s1(runtime, seed)
        capture = runtime.snapshots.capture
        holders: list[str] = []

        async def capture_and_delete(**kwargs):
            holder = runtime.registry.get(S1)
            holders.append(holder.operation_id)
            with pytest.raises(ConflictError) as exc_info:
                await runtime.executor.execute(S1, DeletionOptions(force_delete=True), actor=ACTOR)
            assert exc_info.value.code == "DELETE_IN_PROGRESS"
            assert exc_info.value.operation_id == holder.operation_id
            return await capture(**kwargs)

        monkeypatch.setattr(runtime.snapshots, "capture", capture_and_delete)
        result = await runtime.rollback.rollback(op.snapshot_id)

        assert result.verified is True
        assert holders and holders[0].startswith("rollback-")
        assert runtime.registry.get(S1) is None
        assert await seed.get("students", "s1") is not None

    @pytest.mark.asyncio
    async def test_slot_released_when_rollback_fails(self, runtime, seed, monkeypatch):
        op = await _delete_s1(runtime, seed)

        async def broken_capture(**kwargs):
            raise IntegrityViolation("snapshot store unavailable")

        monkeypatch.setattr(runtime.snapshots, "capture", broken_capture)
        with pytest.raises(IntegrityViolation):
            await runtime.rollback.rollback(op.snapshot_id)
        assert runtime.registry.get(S1) is None

    @pytest.mark.asyncio
    async def test_expired_snapshot_refused_and_purged(self, runtime, factory):
        created = datetime.now(UTC) - timedelta(days=3)
        async with factory() as session, session.begin():
            row = await SnapshotRepository(session).create(
                kind=SnapshotKind.PRE_DELETION.value,
                payload={"students": [{"id": "old", "first_name": "Old", "last_name": "Timer", "status": "active"}]},
                retention=timedelta(days=1),
                now=created,
            )
            snapshot_id = row.id

        with pytest.raises(RollbackNotAvailable):
            await runtime.rollback.rollback(snapshot_id)

        assert await runtime.snapshots.purge_expired() == 1
        with pytest.raises(EntityNotFoundError):
            await runtime.snapshots.get(snapshot_id)


class TestCooldown:
    @pytest.mark.asyncio
    async def test_delete_refused_during_cooldown(self, runtime, seed, audit_sink):
        op = await _delete_s1(runtime, seed)
        await runtime.rollback.rollback(op.snapshot_id)

        with pytest.raises(ConflictError) as exc_info:
            await runtime.executor.execute(S1, actor=ACTOR)
        assert exc_info.value.code == "ROLLBACK_COOLDOWN"
        assert exc_info.value.details["retry_after_seconds"] > 0
        assert audit_sink.entries[-1].success is False
        assert await seed.get("students", "s1") is not None

    @pytest.mark.asyncio
    async def test_force_bypasses_cooldown(self, runtime, seed):
        op = await _delete_s1(runtime, seed)
        await runtime.rollback.rollback(op.snapshot_id)

        again = await runtime.executor.execute(S1, DeletionOptions(force_delete=True), actor=ACTOR)
        assert again.status is OperationStatus.COMPLETED
        assert await seed.get("students", "s1") is None

    @pytest.mark.asyncio
    async def test_zero_cooldown_disables_it(self, runtime_factory, seed):
        runtime = runtime_factory(rollback_cooldown_seconds=0)
        op = await _delete_s1(runtime, seed)
        await runtime.rollback.rollback(op.snapshot_id)
        again = await runtime.executor.execute(S1, actor=ACTOR)
        assert again.status is OperationStatus.COMPLETED


class TestSnapshotListing:
    @pytest.mark.asyncio
    async def test_list_for_target_newest_first(self, runtime, seed):
        op = await _delete_s1(runtime, seed)
        result = await runtime.rollback.rollback(op.snapshot_id)

        snapshots = await runtime.snapshots.list_for_target(S1)
        assert [s.snapshot_id for s in snapshots] == [result.new_snapshot_id, op.snapshot_id]

    @pytest.mark.asyncio
    async def test_list_for_unknown_target_is_empty(self, runtime):
        other = EntityRef(entity_type=EntityType.TEACHER, entity_id="nobody")
        assert await runtime.snapshots.list_for_target(other) == []
