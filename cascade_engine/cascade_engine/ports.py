"""Outbound ports the engine calls but does not implement.

Implementations must not raise: an audit or alert failure never fails the
business operation that produced it.
"""

from __future__ import annotations

from typing import Any, Protocol

from cascade_engine.models.audit import AuditEntry


class AuditSink(Protocol):
    async def record(self, entry: AuditEntry) -> None: ...


class AlertSink(Protocol):
    async def alert(self, title: str, payload: dict[str, Any]) -> None: ...


class NullAuditSink:
    """Sink that discards entries; used when no audit trail is wired."""

    async def record(self, entry: AuditEntry) -> None:
        return None
