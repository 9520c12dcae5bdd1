"""Tests for the rolling violation log and its alert side-channel."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from cascade_api.security.violations import ViolationLog, ViolationSeverity, ViolationType


class _FailingAlerts:
    def __init__(self) -> None:
        self.calls = 0

    async def alert(self, title: str, payload: dict[str, Any]) -> None:
        self.calls += 1
        raise ConnectionError("alert endpoint down")


class _WallClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


class TestRecording:
    @pytest.mark.asyncio
    async def test_records_and_lists(self, alerts):
        log = ViolationLog(alerts)
        violation = await log.record(
            ViolationType.RATE_LIMIT,
            ViolationSeverity.MEDIUM,
            "too many calls",
            context={"actor_id": "alice"},
        )
        assert violation.context == {"actor_id": "alice"}
        assert [v.id for v in await log.recent()] == [violation.id]
        assert await log.recent(type=ViolationType.PERMISSION_DENIED) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("severity", [ViolationSeverity.HIGH, ViolationSeverity.CRITICAL])
    async def test_severe_violations_alert(self, alerts, severity):
        log = ViolationLog(alerts)
        await log.record(ViolationType.SUSPICIOUS_ACTIVITY, severity, "odd")
        assert len(alerts.alerts) == 1
        title, payload = alerts.alerts[0]
        assert title == "Security violation: suspicious_activity"
        assert payload["severity"] == severity.value

    @pytest.mark.asyncio
    @pytest.mark.parametrize("severity", [ViolationSeverity.LOW, ViolationSeverity.MEDIUM])
    async def test_mild_violations_do_not_alert(self, alerts, severity):
        log = ViolationLog(alerts)
        await log.record(ViolationType.PERMISSION_DENIED, severity, "nope")
        assert alerts.alerts == []

    @pytest.mark.asyncio
    async def test_alert_failure_is_swallowed(self):
        failing = _FailingAlerts()
        log = ViolationLog(failing)
        violation = await log.record(ViolationType.SUSPICIOUS_ACTIVITY, ViolationSeverity.CRITICAL, "odd")
        assert failing.calls == 1
        assert (await log.recent())[0].id == violation.id

    @pytest.mark.asyncio
    async def test_no_alert_sink(self):
        log = ViolationLog(None)
        await log.record(ViolationType.SUSPICIOUS_ACTIVITY, ViolationSeverity.HIGH, "odd")
        assert len(await log.recent()) == 1


class TestRetention:
    @pytest.mark.asyncio
    async def test_old_entries_pruned(self):
        clock = _WallClock()
        log = ViolationLog(None, retention_seconds=60, clock=clock)
        await log.record(ViolationType.RATE_LIMIT, ViolationSeverity.LOW, "first")
        clock.now += timedelta(seconds=45)
        await log.record(ViolationType.RATE_LIMIT, ViolationSeverity.LOW, "second")
        clock.now += timedelta(seconds=30)

        assert [v.description for v in await log.recent()] == ["second"]

    @pytest.mark.asyncio
    async def test_summary(self):
        log = ViolationLog(None, retention_seconds=600)
        await log.record(ViolationType.RATE_LIMIT, ViolationSeverity.MEDIUM, "a")
        await log.record(ViolationType.RATE_LIMIT, ViolationSeverity.MEDIUM, "b")
        await log.record(ViolationType.PERMISSION_DENIED, ViolationSeverity.LOW, "c")

        assert await log.summary() == {
            "total": 3,
            "by_type": {"rate_limit": 2, "permission_denied": 1},
            "by_severity": {"medium": 2, "low": 1},
            "window_seconds": 600,
        }
