"""Shared fixtures for cascade engine unit tests.

Every test gets its own file-backed SQLite database under ``tmp_path`` so
that separate sessions (one per batch, one per snapshot) see each other's
commits, plus a freshly wired :class:`CascadeRuntime` around it.
"""

from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from cascade_engine.config import EngineSettings, load_settings
from cascade_engine.models.audit import AuditEntry
from cascade_engine.runtime import CascadeRuntime, build_runtime
from cascade_engine.state.database import create_tables, get_engine, session_factory
from cascade_engine.state.repository import RecordRepository
from cascade_engine.state.tables import (
    AttendanceTable,
    BagrutTable,
    Base,
    DocumentTable,
    LessonTable,
    OrchestraMemberTable,
    OrchestraTable,
    PaymentTable,
    RehearsalAttendanceTable,
    RehearsalTable,
    StudentTable,
    TeacherTable,
    TheoryClassTable,
    TheoryEnrollmentTable,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

_TEST_OVERRIDES: dict[str, Any] = {
    "default_batch_size": 2,
    "max_batch_size": 10,
    "registry_sweep_interval_seconds": 3600.0,
    "retry_base_delay": 0.01,
}


class RecordingAuditSink:
    """Audit sink that keeps entries in memory."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def record(self, entry: AuditEntry) -> None:
        self.entries.append(entry)


class Seeder:
    """Writes fixture rows and reads them back outside the engine."""

    def __init__(self, factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = factory

    async def add(self, *rows: Base) -> None:
        async with self._factory() as session, session.begin():
            session.add_all(rows)

    async def count(self, table: str) -> int:
        async with self._factory() as session:
            return await RecordRepository(session).count(table)

    async def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        async with self._factory() as session:
            return await RecordRepository(session).get(table, record_id)

    async def _shared(self) -> None:
        async with self._factory() as session, session.begin():
            if await session.get(TeacherTable, "t1") is None:
                session.add_all(
                    [
                        TeacherTable(id="t1", first_name="Ada", last_name="Lovelace", instrument="cello"),
                        OrchestraTable(id="o1", name="Youth Symphony", conductor_id="t1", member_count=0),
                        RehearsalTable(id="r1", orchestra_id="o1"),
                        TheoryClassTable(id="tc1", name="Harmony I", teacher_id="t1"),
                    ]
                )

    async def student_graph(self, student_id: str = "s1") -> None:
        """A student with one record in every dependent collection.

        Deleting it removes 10 records (2 lessons, 2 attendance rows, one
        each of membership, rehearsal attendance, enrollment, bagrut,
        document, plus the student) and detaches 1 payment.
        """
        await self._shared()
        sid = student_id
        async with self._factory() as session, session.begin():
            session.add_all(
                [
                    StudentTable(id=sid, first_name="Sam", last_name="Student"),
                    LessonTable(id=f"{sid}-l1", student_id=sid, teacher_id="t1", status="scheduled"),
                    LessonTable(id=f"{sid}-l2", student_id=sid, teacher_id="t1", status="completed"),
                    AttendanceTable(id=f"{sid}-a1", lesson_id=f"{sid}-l1", student_id=sid),
                    AttendanceTable(id=f"{sid}-a2", lesson_id=f"{sid}-l2", student_id=sid, status="late"),
                    OrchestraMemberTable(id=f"{sid}-m1", orchestra_id="o1", student_id=sid),
                    RehearsalAttendanceTable(id=f"{sid}-ra1", rehearsal_id="r1", student_id=sid),
                    TheoryEnrollmentTable(id=f"{sid}-te1", theory_class_id="tc1", student_id=sid),
                    BagrutTable(id=f"{sid}-b1", student_id=sid, teacher_id="t1", status="in_progress"),
                    DocumentTable(id=f"{sid}-d1", student_id=sid, filename="consent.pdf"),
                    PaymentTable(id=f"{sid}-p1", student_id=sid, amount=Decimal("120.00")),
                ]
            )
            orchestra = await session.get(OrchestraTable, "o1")
            orchestra.member_count += 1

    async def bare_student(self, student_id: str) -> None:
        await self.add(StudentTable(id=student_id, first_name="Lone", last_name="Student"))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'state.db'}"


@pytest.fixture
def settings(database_url: str) -> EngineSettings:
    return load_settings(database_url=database_url, **_TEST_OVERRIDES)


@pytest_asyncio.fixture
async def engine(database_url: str):
    engine = get_engine(database_url)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return session_factory(engine)


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def runtime(engine: AsyncEngine, settings: EngineSettings, audit_sink: RecordingAuditSink) -> CascadeRuntime:
    return build_runtime(engine, settings, audit=audit_sink)


@pytest.fixture
def runtime_factory(
    engine: AsyncEngine,
    database_url: str,
    audit_sink: RecordingAuditSink,
) -> Callable[..., CascadeRuntime]:
    """Build a runtime over the same database with different settings."""

    def _build(**overrides: Any) -> CascadeRuntime:
        merged = {**_TEST_OVERRIDES, **overrides}
        return build_runtime(engine, load_settings(database_url=database_url, **merged), audit=audit_sink)

    return _build


@pytest.fixture
def seed(factory: async_sessionmaker[AsyncSession]) -> Seeder:
    return Seeder(factory)
