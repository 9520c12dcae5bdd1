"""Shared fixtures for Cadenza API tests.

Services are wired against a file-backed SQLite database under
``tmp_path`` with a controllable monotonic clock, and the HTTP client
talks to the app in-process through ``httpx.ASGITransport``.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from cascade_api.config import APISettings, load_api_settings
from cascade_api.container import AppServices, build_services
from cascade_api.main import create_app
from cascade_api.security.context import Role, SecurityContext
from cascade_engine.config import EngineSettings, load_settings
from cascade_engine.state.database import session_factory
from cascade_engine.state.tables import (
    AttendanceTable,
    DocumentTable,
    LessonTable,
    PaymentTable,
    StudentTable,
    TeacherTable,
)
from httpx import ASGITransport, AsyncClient

BROWSER_UA = "Mozilla/5.0 (X11; Linux x86_64) Gecko/20100101 Firefox/128.0"

# Open-all-hours settings so tests do not depend on the wall clock.
_API_OVERRIDES: dict[str, Any] = {
    "enforce_business_hours": False,
    "anomaly_safe_hours_start": 0,
    "anomaly_safe_hours_end": 24,
}


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingAlertSink:
    def __init__(self) -> None:
        self.alerts: list[tuple[str, dict[str, Any]]] = []

    async def alert(self, title: str, payload: dict[str, Any]) -> None:
        self.alerts.append((title, payload))


def make_context(
    role: Role | str = Role.ADMIN,
    *,
    actor_id: str = "alice",
    origin: str = "10.0.0.1",
    user_agent: str = BROWSER_UA,
    timestamp: datetime | None = None,
    reauthenticated: bool = True,
) -> SecurityContext:
    ts = timestamp or datetime.now(UTC)
    return SecurityContext(
        actor_id=actor_id,
        actor_role=Role(role),
        session_id="sess-1",
        origin=origin,
        user_agent=user_agent,
        timestamp=ts,
        last_authenticated_at=ts if reauthenticated else None,
    )


def admin_headers(**extra: str) -> dict[str, str]:
    return {
        "X-Actor-Id": "alice",
        "X-Actor-Role": "admin",
        "User-Agent": BROWSER_UA,
        **extra,
    }


def reauth_headers() -> dict[str, str]:
    return admin_headers(**{"X-Last-Authenticated-At": datetime.now(UTC).isoformat()})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_ctx() -> Callable[..., SecurityContext]:
    return make_context


@pytest.fixture
def headers() -> Callable[..., dict[str, str]]:
    return admin_headers


@pytest.fixture
def bulk_headers() -> dict[str, str]:
    """Admin headers carrying a fresh re-authentication timestamp."""
    return reauth_headers()


@pytest.fixture
def alerts() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def api_settings() -> APISettings:
    return load_api_settings(**_API_OVERRIDES)


@pytest.fixture
def api_settings_factory() -> Callable[..., APISettings]:
    def _build(**overrides: Any) -> APISettings:
        return load_api_settings(**{**_API_OVERRIDES, **overrides})

    return _build


@pytest.fixture
def engine_settings(tmp_path) -> EngineSettings:
    return load_settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        default_batch_size=2,
        max_batch_size=10,
        registry_sweep_interval_seconds=3600.0,
    )


@pytest_asyncio.fixture
async def services(api_settings, engine_settings, alerts, clock):
    services = await build_services(api_settings, engine_settings, alerts=alerts, clock=clock)
    yield services
    await services.stop()


@pytest_asyncio.fixture
async def client(services: AppServices):
    app = create_app(services=services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=admin_headers()) as ac:
        yield ac


@pytest.fixture
def seed_student(services: AppServices) -> Callable[..., Any]:
    """Insert a student with a lesson, an attendance row, a document and a payment."""

    async def _seed(student_id: str = "s1") -> None:
        factory = session_factory(services.engine)
        async with factory() as session, session.begin():
            if await session.get(TeacherTable, "t1") is None:
                session.add(TeacherTable(id="t1", first_name="Ada", last_name="Lovelace"))
            session.add_all(
                [
                    StudentTable(id=student_id, first_name="Sam", last_name="Student"),
                    LessonTable(id=f"{student_id}-l1", student_id=student_id, teacher_id="t1"),
                    AttendanceTable(id=f"{student_id}-a1", lesson_id=f"{student_id}-l1", student_id=student_id),
                    DocumentTable(id=f"{student_id}-d1", student_id=student_id, filename="consent.pdf"),
                    PaymentTable(id=f"{student_id}-p1", student_id=student_id, amount=Decimal("50.00")),
                ]
            )

    return _seed


@pytest.fixture
def seed_orphan(services: AppServices) -> Callable[..., Any]:
    async def _seed(document_id: str = "d-orphan") -> None:
        factory = session_factory(services.engine)
        async with factory() as session, session.begin():
            session.add(DocumentTable(id=document_id, student_id="gone", filename="lost.pdf"))

    return _seed
