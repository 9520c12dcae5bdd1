"""Tests for suspicious-activity heuristics and origin blocking.

Covers:
- Each heuristic fires on its own trigger and stays quiet otherwise.
- Findings are recorded as HIGH violations.
- Repeated findings from one origin escalate to a timed block.
- Blocks expire on their own, are pruned by the cleanup loop, and can be
  lifted manually.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest
from cascade_api.security.anomaly import (
    DEFAULT_HEURISTICS,
    AnomalyDetector,
    DetectionContext,
    automation_user_agent,
    burst_rate,
    large_batch,
    outside_safe_hours,
)
from cascade_api.security.violations import ViolationLog, ViolationSeverity


@pytest.fixture
def violations(alerts) -> ViolationLog:
    return ViolationLog(alerts)


@pytest.fixture
def detector(api_settings, violations, clock) -> AnomalyDetector:
    return AnomalyDetector(api_settings, violations, clock=clock)


class TestHeuristics:
    def test_automation_user_agent(self, api_settings, make_ctx):
        dc = DetectionContext("execute_delete", make_ctx(user_agent="curl/8.4.0"), api_settings)
        assert automation_user_agent(dc) == "automation client signature 'curl'"
        dc = DetectionContext("execute_delete", make_ctx(), api_settings)
        assert automation_user_agent(dc) is None

    def test_large_batch(self, api_settings, make_ctx):
        ctx = make_ctx()
        assert large_batch(DetectionContext("x", ctx, api_settings, {"entity_count": 101})) is not None
        assert large_batch(DetectionContext("x", ctx, api_settings, {"entity_count": 100})) is None
        assert large_batch(DetectionContext("x", ctx, api_settings, {})) is None

    def test_burst_rate(self, api_settings, make_ctx):
        ctx = make_ctx()
        assert burst_rate(DetectionContext("x", ctx, api_settings, ops_last_minute=10)) is None
        assert burst_rate(DetectionContext("x", ctx, api_settings, ops_last_minute=11)) is not None

    def test_outside_safe_hours(self, api_settings_factory, make_ctx):
        settings = api_settings_factory(anomaly_safe_hours_start=6, anomaly_safe_hours_end=22)
        night = make_ctx(timestamp=datetime(2026, 3, 2, 3, 0, tzinfo=UTC))
        day = make_ctx(timestamp=datetime(2026, 3, 2, 12, 0, tzinfo=UTC))
        assert outside_safe_hours(DetectionContext("x", night, settings)) == (
            "operation at 03h is outside safe hours 06-22"
        )
        assert outside_safe_hours(DetectionContext("x", day, settings)) is None

    def test_default_heuristics(self):
        assert len(DEFAULT_HEURISTICS) == 5


class TestEvaluate:
    @pytest.mark.asyncio
    async def test_clean_call(self, detector, violations, make_ctx):
        assert await detector.evaluate("preview_deletion", make_ctx()) == []
        assert await violations.recent() == []

    @pytest.mark.asyncio
    async def test_finding_recorded_as_high(self, detector, violations, alerts, make_ctx):
        reasons = await detector.evaluate("execute_delete", make_ctx(user_agent="python-httpx/0.27"))
        assert reasons == ["automation client signature 'python'"]

        (violation,) = await violations.recent()
        assert violation.severity is ViolationSeverity.HIGH
        assert violation.metadata == {"operation": "execute_delete", "reasons": reasons}
        assert violation.context["user_agent"] == "python-httpx/0.27"
        assert len(alerts.alerts) == 1

    @pytest.mark.asyncio
    async def test_burst_across_operations(self, detector, make_ctx):
        ctx = make_ctx()
        for i in range(10):
            assert await detector.evaluate(f"op{i % 3}", ctx) == []
        reasons = await detector.evaluate("preview_deletion", ctx)
        assert reasons and reasons[0].startswith("burst of 11 operations")

    @pytest.mark.asyncio
    async def test_burst_window_slides(self, detector, clock, make_ctx):
        ctx = make_ctx()
        for _ in range(10):
            await detector.evaluate("preview_deletion", ctx)
        clock.advance(61)
        assert await detector.evaluate("preview_deletion", ctx) == []

    @pytest.mark.asyncio
    async def test_repeated_failures(self, detector, make_ctx):
        for _ in range(4):
            await detector.record_failure("alice")
        reasons = await detector.evaluate("execute_delete", make_ctx())
        assert reasons == ["4 recent failed operations (limit 3)"]
        # failures are tracked per actor
        assert await detector.evaluate("execute_delete", make_ctx(actor_id="bob")) == []

    @pytest.mark.asyncio
    async def test_large_batch_from_metadata(self, detector, make_ctx):
        reasons = await detector.evaluate("cleanup_orphaned", make_ctx(), {"entity_count": 250})
        assert reasons == ["batch of 250 entities exceeds 100"]


class TestEscalation:
    @pytest.mark.asyncio
    async def test_third_finding_blocks_origin(self, detector, violations, make_ctx):
        ctx = make_ctx(user_agent="curl/8.4.0", origin="203.0.113.9")
        for _ in range(2):
            await detector.evaluate("preview_deletion", ctx)
        assert await detector.blocked_for("203.0.113.9") is None

        await detector.evaluate("preview_deletion", ctx)

        assert await detector.blocked_for("203.0.113.9") == pytest.approx(3600)
        assert await detector.blocked_origins() == {"203.0.113.9": 3600.0}
        critical = [v for v in await violations.recent() if v.severity is ViolationSeverity.CRITICAL]
        assert len(critical) == 1
        assert "blocked after 3 suspicious findings" in critical[0].description

    @pytest.mark.asyncio
    async def test_findings_outside_window_do_not_escalate(self, detector, clock, make_ctx):
        ctx = make_ctx(user_agent="wget/1.21")
        await detector.evaluate("preview_deletion", ctx)
        await detector.evaluate("preview_deletion", ctx)
        clock.advance(301)
        await detector.evaluate("preview_deletion", ctx)
        assert await detector.blocked_for(ctx.origin) is None

    @pytest.mark.asyncio
    async def test_block_expires(self, detector, clock):
        await detector.block("198.51.100.7", 60)
        clock.advance(30)
        assert await detector.blocked_for("198.51.100.7") == pytest.approx(30)
        clock.advance(31)
        assert await detector.blocked_for("198.51.100.7") is None
        assert await detector.blocked_origins() == {}

    @pytest.mark.asyncio
    async def test_unblock_resets_findings(self, detector, make_ctx):
        ctx = make_ctx(user_agent="curl/8.4.0")
        for _ in range(3):
            await detector.evaluate("preview_deletion", ctx)
        assert await detector.unblock(ctx.origin) is True
        assert await detector.blocked_for(ctx.origin) is None

        # a single new finding does not immediately re-block
        await detector.evaluate("preview_deletion", ctx)
        assert await detector.blocked_for(ctx.origin) is None
        assert await detector.unblock(ctx.origin) is False


class TestBlockCleanup:
    @pytest.mark.asyncio
    async def test_purge_drops_only_expired_blocks(self, detector, clock):
        await detector.block("198.51.100.7", 60)
        await detector.block("198.51.100.8", 600)
        clock.advance(61)

        assert await detector.purge_expired_blocks() == 1
        assert "198.51.100.7" not in detector._blocked
        assert await detector.blocked_for("198.51.100.8") == pytest.approx(539)

    @pytest.mark.asyncio
    async def test_cleanup_loop_prunes_unqueried_origins(self, api_settings, violations, clock):
        detector = AnomalyDetector(api_settings, violations, clock=clock, cleanup_interval=0.01)
        await detector.block("198.51.100.7", 60)
        clock.advance(61)

        detector.start()
        try:
            for _ in range(100):
                if not detector._blocked:
                    break
                await asyncio.sleep(0.01)
        finally:
            await detector.stop()

        assert detector._blocked == {}
