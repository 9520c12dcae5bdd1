"""Suspicious-activity heuristics and temporary origin blocking.

Each heuristic is a plain function over a :class:`DetectionContext` that
returns a reason string when it fires.  Heuristics are evaluated
independently and OR'd together; any finding denies the current call.
Repeated findings from one origin inside the escalation window place the
origin on a block list that expires on its own.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from zoneinfo import ZoneInfo

from cascade_api.config import APISettings
from cascade_api.security.context import SecurityContext
from cascade_api.security.rate_limit import SlidingWindowCounter
from cascade_api.security.violations import ViolationLog, ViolationSeverity, ViolationType

logger = logging.getLogger(__name__)

_BLOCK_CLEANUP_INTERVAL_SECONDS: float = 60.0


@dataclass
class DetectionContext:
    operation: str
    context: SecurityContext
    settings: APISettings
    metadata: dict[str, Any] = field(default_factory=dict)
    ops_last_minute: int = 0
    recent_failures: int = 0


Heuristic = Callable[[DetectionContext], str | None]


def burst_rate(dc: DetectionContext) -> str | None:
    limit = dc.settings.anomaly_burst_per_minute
    if dc.ops_last_minute > limit:
        return f"burst of {dc.ops_last_minute} operations in the last minute (limit {limit})"
    return None


def large_batch(dc: DetectionContext) -> str | None:
    count = dc.metadata.get("entity_count")
    limit = dc.settings.anomaly_max_entity_count
    if isinstance(count, int) and count > limit:
        return f"batch of {count} entities exceeds {limit}"
    return None


def outside_safe_hours(dc: DetectionContext) -> str | None:
    start, end = dc.settings.anomaly_safe_hours_start, dc.settings.anomaly_safe_hours_end
    hour = dc.context.timestamp.astimezone(ZoneInfo(dc.settings.timezone)).hour
    if not (start <= hour < end):
        return f"operation at {hour:02d}h is outside safe hours {start:02d}-{end:02d}"
    return None


def repeated_failures(dc: DetectionContext) -> str | None:
    limit = dc.settings.anomaly_max_failures
    if dc.recent_failures > limit:
        return f"{dc.recent_failures} recent failed operations (limit {limit})"
    return None


def automation_user_agent(dc: DetectionContext) -> str | None:
    agent = dc.context.user_agent.lower()
    for pattern in dc.settings.anomaly_user_agent_patterns:
        if pattern.lower() in agent:
            return f"automation client signature '{pattern}'"
    return None


DEFAULT_HEURISTICS: list[Heuristic] = [
    burst_rate,
    large_batch,
    outside_safe_hours,
    repeated_failures,
    automation_user_agent,
]


class AnomalyDetector:
    """Flags suspicious calls and escalates repeat offenders to a block."""

    def __init__(
        self,
        settings: APISettings,
        violations: ViolationLog,
        *,
        heuristics: list[Heuristic] | None = None,
        clock: Callable[[], float] = time.monotonic,
        cleanup_interval: float = _BLOCK_CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        self._settings = settings
        self._violations = violations
        self._heuristics = heuristics if heuristics is not None else list(DEFAULT_HEURISTICS)
        self._clock = clock
        self._ops = SlidingWindowCounter(60.0, clock=clock)
        self._failures = SlidingWindowCounter(settings.anomaly_failure_window_seconds, clock=clock)
        self._findings = SlidingWindowCounter(settings.anomaly_escalation_window_seconds, clock=clock)
        self._blocked: dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._cleanup_interval = cleanup_interval
        self._cleanup_task: asyncio.Task[None] | None = None
        self._running = False

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> None:
        for counter in (self._ops, self._failures, self._findings):
            counter.start()
        if not self._running:
            self._running = True
            self._cleanup_task = asyncio.ensure_future(self._cleanup_loop())

    async def stop(self) -> None:
        for counter in (self._ops, self._failures, self._findings):
            await counter.stop()
        self._running = False
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._cleanup_interval)
            await self.purge_expired_blocks()

    # -- Block list ----------------------------------------------------------

    async def blocked_for(self, origin: str) -> float | None:
        """Seconds left on *origin*'s block, or ``None`` when not blocked."""
        async with self._lock:
            expires = self._blocked.get(origin)
            if expires is None:
                return None
            remaining = expires - self._clock()
            if remaining <= 0:
                del self._blocked[origin]
                logger.info("Origin block expired: %s", origin)
                return None
            return remaining

    async def block(self, origin: str, seconds: float | None = None) -> None:
        duration = seconds if seconds is not None else self._settings.anomaly_block_seconds
        async with self._lock:
            self._blocked[origin] = self._clock() + duration
        logger.warning("Origin blocked for %.0fs: %s", duration, origin)

    async def unblock(self, origin: str) -> bool:
        async with self._lock:
            removed = self._blocked.pop(origin, None) is not None
        await self._findings.reset(origin)
        if removed:
            logger.info("Origin manually unblocked: %s", origin)
        return removed

    async def blocked_origins(self) -> dict[str, float]:
        await self.purge_expired_blocks()
        now = self._clock()
        async with self._lock:
            return {origin: round(exp - now, 1) for origin, exp in self._blocked.items() if exp > now}

    async def purge_expired_blocks(self) -> int:
        """Drop blocks whose expiry has passed; returns how many."""
        now = self._clock()
        async with self._lock:
            expired = [origin for origin, expires in self._blocked.items() if expires <= now]
            for origin in expired:
                del self._blocked[origin]
        if expired:
            logger.debug("Block list cleanup removed %d expired origins", len(expired))
        return len(expired)

    # -- Detection -----------------------------------------------------------

    async def record_failure(self, actor_id: str) -> None:
        await self._failures.hit(actor_id)

    async def evaluate(
        self,
        operation: str,
        context: SecurityContext,
        metadata: dict[str, Any] | None = None,
    ) -> list[str]:
        """Return the reasons this call looks suspicious (empty when clean)."""
        dc = DetectionContext(
            operation=operation,
            context=context,
            settings=self._settings,
            metadata=metadata or {},
            ops_last_minute=await self._ops.hit(context.actor_id),
            recent_failures=await self._failures.count(context.actor_id),
        )
        reasons = [reason for heuristic in self._heuristics if (reason := heuristic(dc)) is not None]
        if not reasons:
            return reasons

        await self._violations.record(
            ViolationType.SUSPICIOUS_ACTIVITY,
            ViolationSeverity.HIGH,
            f"Suspicious {operation} by {context.actor_id}: {'; '.join(reasons)}",
            context=_context_summary(context),
            metadata={"operation": operation, "reasons": reasons},
        )
        findings = await self._findings.hit(context.origin)
        if findings >= self._settings.anomaly_escalation_threshold:
            await self.block(context.origin)
            await self._findings.reset(context.origin)
            await self._violations.record(
                ViolationType.SUSPICIOUS_ACTIVITY,
                ViolationSeverity.CRITICAL,
                f"Origin {context.origin} blocked after {findings} suspicious findings",
                context=_context_summary(context),
                metadata={"operation": operation, "block_seconds": self._settings.anomaly_block_seconds},
            )
        return reasons


def _context_summary(context: SecurityContext) -> dict[str, Any]:
    return {
        "actor_id": context.actor_id,
        "actor_role": context.actor_role.value,
        "origin": context.origin,
        "user_agent": context.user_agent,
        "session_id": context.session_id,
    }
