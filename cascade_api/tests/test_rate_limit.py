"""Tests for cascade_api/security/rate_limit.py

Covers:
- Calls within budget are admitted and counted.
- The call past the budget is refused with a retry-after hint.
- Refused calls never extend the window.
- The window slides: old hits expire and budget is restored.
- Keys isolate operation, actor and origin.
- Bulk operations get the lower budget.
- Disabled limiter admits everything.
- Stale keys are purged.
"""

from __future__ import annotations

import pytest
from cascade_api.security.rate_limit import OperationRateLimiter, SlidingWindowCounter


@pytest.fixture
def counter(clock) -> SlidingWindowCounter:
    return SlidingWindowCounter(60.0, clock=clock, cleanup_interval=3600)


@pytest.fixture
def limiter(counter: SlidingWindowCounter) -> OperationRateLimiter:
    return OperationRateLimiter(
        counter,
        budget=10,
        bulk_budget=2,
        bulk_operations=frozenset({"cleanup_orphaned"}),
    )


# ---------------------------------------------------------------------------
# SlidingWindowCounter
# ---------------------------------------------------------------------------


class TestSlidingWindowCounter:
    @pytest.mark.asyncio
    async def test_hit_counts(self, counter):
        assert await counter.hit("k") == 1
        assert await counter.hit("k") == 2
        assert await counter.count("k") == 2
        assert await counter.count("other") == 0

    @pytest.mark.asyncio
    async def test_entries_expire_after_window(self, counter, clock):
        await counter.hit("k")
        clock.advance(30)
        await counter.hit("k")
        clock.advance(31)
        assert await counter.count("k") == 1
        clock.advance(30)
        assert await counter.count("k") == 0

    @pytest.mark.asyncio
    async def test_hit_if_below_does_not_record_refusal(self, counter, clock):
        assert await counter.hit_if_below("k", 2) == (True, 1)
        assert await counter.hit_if_below("k", 2) == (True, 2)
        assert await counter.hit_if_below("k", 2) == (False, 2)
        assert await counter.count("k") == 2

    @pytest.mark.asyncio
    async def test_time_until_reset(self, counter, clock):
        assert await counter.time_until_reset("k") == 0.0
        await counter.hit("k")
        clock.advance(45)
        assert await counter.time_until_reset("k") == pytest.approx(15)

    @pytest.mark.asyncio
    async def test_reset(self, counter):
        await counter.hit("k")
        await counter.reset("k")
        assert await counter.count("k") == 0

    @pytest.mark.asyncio
    async def test_purge_stale(self, counter, clock):
        await counter.hit("old")
        clock.advance(61)
        await counter.hit("new")
        assert await counter.purge_stale() == 1
        assert await counter.active_keys() == 1

    @pytest.mark.asyncio
    async def test_start_stop_idempotent(self, counter):
        counter.start()
        counter.start()
        await counter.stop()
        await counter.stop()


# ---------------------------------------------------------------------------
# OperationRateLimiter
# ---------------------------------------------------------------------------


class TestOperationRateLimiter:
    @pytest.mark.asyncio
    async def test_eleventh_call_refused(self, limiter):
        for i in range(10):
            decision = await limiter.check("execute_delete", "alice", "10.0.0.1")
            assert decision.admitted, f"call {i + 1} should be admitted"

        decision = await limiter.check("execute_delete", "alice", "10.0.0.1")
        assert decision.admitted is False
        assert decision.limit == 10
        assert decision.key == "execute_delete:alice:10.0.0.1"
        assert 0 < decision.retry_after_seconds <= 60

    @pytest.mark.asyncio
    async def test_refused_calls_do_not_extend_lockout(self, limiter, clock):
        for _ in range(10):
            await limiter.check("execute_delete", "alice", "10.0.0.1")
        clock.advance(50)
        for _ in range(5):
            assert not (await limiter.check("execute_delete", "alice", "10.0.0.1")).admitted
        clock.advance(11)
        assert (await limiter.check("execute_delete", "alice", "10.0.0.1")).admitted

    @pytest.mark.asyncio
    async def test_window_slides(self, limiter, clock):
        for _ in range(5):
            await limiter.check("execute_delete", "alice", "10.0.0.1")
        clock.advance(40)
        for _ in range(5):
            await limiter.check("execute_delete", "alice", "10.0.0.1")
        assert not (await limiter.check("execute_delete", "alice", "10.0.0.1")).admitted

        # the first five expire; five slots open up
        clock.advance(21)
        decision = await limiter.check("execute_delete", "alice", "10.0.0.1")
        assert decision.admitted
        assert decision.count == 6

    @pytest.mark.asyncio
    async def test_keys_are_isolated(self, limiter):
        for _ in range(10):
            await limiter.check("execute_delete", "alice", "10.0.0.1")

        assert (await limiter.check("execute_delete", "bob", "10.0.0.1")).admitted
        assert (await limiter.check("execute_delete", "alice", "10.0.0.2")).admitted
        assert (await limiter.check("preview_deletion", "alice", "10.0.0.1")).admitted

    @pytest.mark.asyncio
    async def test_bulk_budget(self, limiter):
        assert limiter.limit_for("cleanup_orphaned") == 2
        assert (await limiter.check("cleanup_orphaned", "alice", "o")).admitted
        assert (await limiter.check("cleanup_orphaned", "alice", "o")).admitted
        assert not (await limiter.check("cleanup_orphaned", "alice", "o")).admitted

    @pytest.mark.asyncio
    async def test_disabled_admits_everything(self, counter):
        limiter = OperationRateLimiter(counter, budget=1, enabled=False)
        for _ in range(5):
            assert (await limiter.check("execute_delete", "alice", "o")).admitted
        assert await limiter.active_keys() == 0
