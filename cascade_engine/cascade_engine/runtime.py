"""Wiring of the engine's stateful services.

:func:`build_runtime` constructs each service exactly once around a shared
session factory and active-operation registry.  The API lifespan and the
CLI both build one runtime per process; tests build a fresh one per case.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from cascade_engine.checks.engine import IntegrityValidator, create_default_validator
from cascade_engine.checks.orphans import OrphanCleanupEngine
from cascade_engine.config import EngineSettings
from cascade_engine.executor.cascade_executor import CascadeExecutor
from cascade_engine.executor.registry import ActiveOperationRegistry
from cascade_engine.ports import AuditSink
from cascade_engine.recovery.rollback import RollbackService
from cascade_engine.recovery.snapshots import SnapshotStore
from cascade_engine.simulation.impact_analyzer import ImpactAnalyzer
from cascade_engine.state.database import session_factory as make_session_factory


@dataclass
class CascadeRuntime:
    settings: EngineSettings
    session_factory: async_sessionmaker[AsyncSession]
    registry: ActiveOperationRegistry
    analyzer: ImpactAnalyzer
    snapshots: SnapshotStore
    executor: CascadeExecutor
    rollback: RollbackService
    orphans: OrphanCleanupEngine
    validator: IntegrityValidator

    def start(self) -> None:
        self.registry.start()

    async def stop(self) -> None:
        await self.registry.stop()


def build_runtime(
    engine: AsyncEngine,
    settings: EngineSettings,
    *,
    audit: AuditSink | None = None,
    registry: ActiveOperationRegistry | None = None,
) -> CascadeRuntime:
    factory = make_session_factory(engine)
    registry = registry or ActiveOperationRegistry(sweep_interval=settings.registry_sweep_interval_seconds)
    analyzer = ImpactAnalyzer(factory, settings, registry)
    snapshots = SnapshotStore(factory, settings)
    orphans = OrphanCleanupEngine(factory, settings, snapshots)
    return CascadeRuntime(
        settings=settings,
        session_factory=factory,
        registry=registry,
        analyzer=analyzer,
        snapshots=snapshots,
        executor=CascadeExecutor(factory, settings, registry, analyzer, snapshots, audit),
        rollback=RollbackService(factory, settings, registry, snapshots),
        orphans=orphans,
        validator=create_default_validator(factory, settings, snapshots=snapshots, scanner=orphans),
    )
