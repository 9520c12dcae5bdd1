"""Process-wide service wiring shared by the HTTP app and the CLI."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from cascade_engine.config import EngineSettings
from cascade_engine.executor.retry import RetryConfig
from cascade_engine.ports import AlertSink
from cascade_engine.runtime import CascadeRuntime, build_runtime
from cascade_engine.state.database import create_tables, get_engine, session_factory
from sqlalchemy.ext.asyncio import AsyncEngine

from cascade_api.config import APISettings
from cascade_api.security.gate import SecurityGate, build_security_gate
from cascade_api.services.alerts import LoggingAlertSink, WebhookAlertSink
from cascade_api.services.audit_service import AuditRecorder
from cascade_api.services.deletion_service import DeletionService

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class AppServices:
    settings: APISettings
    engine_settings: EngineSettings
    engine: AsyncEngine
    runtime: CascadeRuntime
    gate: SecurityGate
    audit: AuditRecorder
    alerts: AlertSink
    service: DeletionService
    now: Callable[[], datetime] = _utcnow
    owns_engine: bool = True
    _started: bool = field(default=False, repr=False)

    def start(self) -> None:
        if self._started:
            return
        self.runtime.start()
        self.gate.start()
        self._started = True

    async def stop(self) -> None:
        if self._started:
            await self.gate.stop()
            await self.runtime.stop()
            self._started = False
        if isinstance(self.alerts, WebhookAlertSink):
            await self.alerts.close()
        if self.owns_engine:
            await self.engine.dispose()
        logger.info("Services stopped")


async def build_services(
    settings: APISettings,
    engine_settings: EngineSettings,
    *,
    engine: AsyncEngine | None = None,
    alerts: AlertSink | None = None,
    clock: Callable[[], float] = time.monotonic,
    now: Callable[[], datetime] = _utcnow,
) -> AppServices:
    """Create the engine, ensure tables, and wire every service once."""
    owns_engine = engine is None
    if engine is None:
        engine = get_engine(
            engine_settings.database_url,
            pool_size=engine_settings.database_pool_size,
            max_overflow=engine_settings.database_max_overflow,
        )
    await create_tables(engine)

    if alerts is None:
        if settings.alert_webhook_url:
            alerts = WebhookAlertSink(
                settings.alert_webhook_url,
                timeout=settings.alert_webhook_timeout,
                retry=RetryConfig.from_settings(engine_settings),
            )
        else:
            alerts = LoggingAlertSink()

    audit = AuditRecorder(session_factory(engine), alerts, export_max_records=settings.audit_export_max_records)
    runtime = build_runtime(engine, engine_settings, audit=audit)
    gate = build_security_gate(settings, alerts, clock=clock)
    logger.info(
        "Services initialised (database=%s, alerts=%s)",
        engine_settings.database_url.split("://", 1)[0],
        type(alerts).__name__,
    )
    return AppServices(
        settings=settings,
        engine_settings=engine_settings,
        engine=engine,
        runtime=runtime,
        gate=gate,
        audit=audit,
        alerts=alerts,
        service=DeletionService(runtime, gate, audit),
        now=now,
        owns_engine=owns_engine,
    )
