"""Admission control in front of every engine call.

Order of checks:

1. Blocked origin -- refused before anything else is evaluated.
2. Permission rules.
3. Sliding-window rate limit (refused calls consume no budget).
4. Anomaly heuristics.

Every refusal is returned as a :class:`Refusal` value and logged to the
violation log; nothing here raises for business reasons.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from cascade_engine.ports import AlertSink

from cascade_api.config import APISettings
from cascade_api.security.anomaly import AnomalyDetector
from cascade_api.security.context import Refusal, RefusalCode, SecurityContext
from cascade_api.security.permissions import BULK_OPERATIONS, PermissionGuard, default_rules
from cascade_api.security.rate_limit import OperationRateLimiter, SlidingWindowCounter
from cascade_api.security.violations import ViolationLog, ViolationSeverity, ViolationType

logger = logging.getLogger(__name__)


class SecurityGate:
    def __init__(
        self,
        permissions: PermissionGuard,
        limiter: OperationRateLimiter,
        anomaly: AnomalyDetector,
        violations: ViolationLog,
    ) -> None:
        self.permissions = permissions
        self.limiter = limiter
        self.anomaly = anomaly
        self.violations = violations

    def start(self) -> None:
        self.limiter.start()
        self.anomaly.start()

    async def stop(self) -> None:
        await self.limiter.stop()
        await self.anomaly.stop()

    async def admit(
        self,
        operation: str,
        context: SecurityContext,
        metadata: dict[str, Any] | None = None,
    ) -> Refusal | None:
        """Return ``None`` when *operation* may proceed, else a :class:`Refusal`."""
        ctx_info = {"actor_id": context.actor_id, "origin": context.origin, "operation": operation}

        blocked = await self.anomaly.blocked_for(context.origin)
        if blocked is not None:
            logger.warning("Refusing %s from blocked origin %s", operation, context.origin)
            return Refusal(
                code=RefusalCode.ORIGIN_BLOCKED,
                reason=f"origin {context.origin} is temporarily blocked",
                operation=operation,
                retry_after_seconds=blocked,
            )

        refusal = self.permissions.check(operation, context)
        if refusal is not None:
            await self.violations.record(
                ViolationType.PERMISSION_DENIED,
                ViolationSeverity.MEDIUM,
                refusal.reason,
                context=ctx_info,
            )
            return refusal

        decision = await self.limiter.check(operation, context.actor_id, context.origin)
        if not decision.admitted:
            await self.violations.record(
                ViolationType.RATE_LIMIT,
                ViolationSeverity.MEDIUM,
                f"{operation} exceeded {decision.limit} calls per window",
                context=ctx_info,
                metadata={"key": decision.key, "count": decision.count},
            )
            return Refusal(
                code=RefusalCode.RATE_LIMITED,
                reason=f"too many {operation} requests, retry in {max(int(decision.retry_after_seconds) + 1, 1)}s",
                operation=operation,
                retry_after_seconds=decision.retry_after_seconds,
                details={"limit": decision.limit},
            )

        reasons = await self.anomaly.evaluate(operation, context, metadata)
        if reasons:
            return Refusal(
                code=RefusalCode.SUSPICIOUS_ACTIVITY,
                reason="request flagged as suspicious",
                operation=operation,
                details={"reasons": reasons},
            )
        return None

    async def summary(self) -> dict[str, Any]:
        return {
            "violations": await self.violations.summary(),
            "blocked_origins": await self.anomaly.blocked_origins(),
            "active_rate_limit_keys": await self.limiter.active_keys(),
        }


def build_security_gate(
    settings: APISettings,
    alerts: AlertSink | None = None,
    *,
    clock: Callable[[], float] = time.monotonic,
) -> SecurityGate:
    business_hours = (
        (settings.business_hours_start, settings.business_hours_end) if settings.enforce_business_hours else None
    )
    violations = ViolationLog(alerts, retention_seconds=settings.violation_retention_seconds)
    counter = SlidingWindowCounter(
        settings.rate_limit_window_seconds,
        clock=clock,
        cleanup_interval=settings.rate_limit_sweep_interval_seconds,
    )
    return SecurityGate(
        permissions=PermissionGuard(
            default_rules(
                business_hours=business_hours,
                reauth_window_seconds=settings.reauth_window_seconds,
                timezone=settings.timezone,
            )
        ),
        limiter=OperationRateLimiter(
            counter,
            budget=settings.rate_limit_budget,
            bulk_budget=settings.rate_limit_bulk_budget,
            bulk_operations=BULK_OPERATIONS,
            enabled=settings.rate_limit_enabled,
        ),
        anomaly=AnomalyDetector(settings, violations, clock=clock),
        violations=violations,
    )
