"""Rolling log of security violations with an alert side-channel."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter, deque
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from cascade_engine.ports import AlertSink
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ViolationType(str, Enum):
    RATE_LIMIT = "rate_limit"
    PERMISSION_DENIED = "permission_denied"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    DATA_INTEGRITY = "data_integrity"
    AUTHENTICATION = "authentication"


class ViolationSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_ALERTING = frozenset({ViolationSeverity.HIGH, ViolationSeverity.CRITICAL})


class SecurityViolation(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: ViolationType
    severity: ViolationSeverity
    description: str
    context: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ViolationLog:
    """Keeps violations for a rolling window and forwards severe ones.

    Alert delivery failures are logged and never propagate to the caller
    that recorded the violation.
    """

    def __init__(
        self,
        alerts: AlertSink | None = None,
        *,
        retention_seconds: float = 3600.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._alerts = alerts
        self._retention = timedelta(seconds=retention_seconds)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._entries: deque[SecurityViolation] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: datetime) -> None:
        cutoff = now - self._retention
        while self._entries and self._entries[0].timestamp <= cutoff:
            self._entries.popleft()

    async def record(
        self,
        type: ViolationType,
        severity: ViolationSeverity,
        description: str,
        *,
        context: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SecurityViolation:
        now = self._clock()
        violation = SecurityViolation(
            type=type,
            severity=severity,
            description=description,
            context=context or {},
            metadata=metadata or {},
            timestamp=now,
        )
        async with self._lock:
            self._prune(now)
            self._entries.append(violation)

        logger.warning(
            "Security violation: type=%s severity=%s %s",
            violation.type.value,
            violation.severity.value,
            description,
        )
        if severity in _ALERTING:
            await self._send_alert(violation)
        return violation

    async def _send_alert(self, violation: SecurityViolation) -> None:
        if self._alerts is None:
            return
        try:
            await self._alerts.alert(
                f"Security violation: {violation.type.value}",
                violation.model_dump(mode="json"),
            )
        except Exception:
            logger.exception("Failed to deliver alert for violation %s", violation.id)

    async def recent(self, *, type: ViolationType | None = None) -> list[SecurityViolation]:
        async with self._lock:
            self._prune(self._clock())
            entries = list(self._entries)
        if type is not None:
            entries = [v for v in entries if v.type is type]
        return entries

    async def summary(self) -> dict[str, Any]:
        entries = await self.recent()
        by_type = Counter(v.type.value for v in entries)
        by_severity = Counter(v.severity.value for v in entries)
        return {
            "total": len(entries),
            "by_type": dict(by_type),
            "by_severity": dict(by_severity),
            "window_seconds": int(self._retention.total_seconds()),
        }
