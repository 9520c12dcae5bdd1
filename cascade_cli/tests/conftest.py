"""Shared fixtures for CLI tests.

Each test gets a file-backed SQLite database under ``tmp_path``; seeding
runs on its own event loop because every CLI command calls
``asyncio.run`` itself.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from decimal import Decimal
from typing import Any

import pytest
from cascade_engine.state.database import create_tables, get_engine, session_factory
from cascade_engine.state.tables import (
    AttendanceTable,
    Base,
    DocumentTable,
    LessonTable,
    PaymentTable,
    StudentTable,
)


@pytest.fixture(autouse=True)
def _open_hours(monkeypatch):
    """Admit operations at any time of day."""
    monkeypatch.setenv("API_ENFORCE_BUSINESS_HOURS", "false")
    monkeypatch.setenv("API_ANOMALY_SAFE_HOURS_START", "0")
    monkeypatch.setenv("API_ANOMALY_SAFE_HOURS_END", "24")


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"


@pytest.fixture
def insert(database_url: str) -> Callable[..., None]:
    def _insert(*rows: Base) -> None:
        async def _run() -> None:
            engine = get_engine(database_url)
            try:
                await create_tables(engine)
                async with session_factory(engine)() as session, session.begin():
                    session.add_all(rows)
            finally:
                await engine.dispose()

        asyncio.run(_run())

    return _insert


@pytest.fixture
def student(insert) -> str:
    """A student with a lesson, attendance, a document and a payment."""
    insert(
        StudentTable(id="s1", first_name="Sam", last_name="Student"),
        LessonTable(id="l1", student_id="s1", status="completed"),
        AttendanceTable(id="a1", lesson_id="l1", student_id="s1"),
        DocumentTable(id="d1", student_id="s1", filename="consent.pdf"),
        PaymentTable(id="p1", student_id="s1", amount=Decimal("50.00")),
    )
    return "s1"


@pytest.fixture
def orphan(insert) -> str:
    insert(DocumentTable(id="d-orphan", student_id="gone", filename="lost.pdf"))
    return "d-orphan"


@pytest.fixture
def parse_json() -> Callable[[str], Any]:
    """Extract the JSON document from CLI output.

    CliRunner may interleave Rich output written to stderr with stdout.
    """

    def _parse(raw: str) -> Any:
        start = min(i for i in (raw.find("{\n"), raw.find("[\n"), raw.find("[]")) if i >= 0)
        end = max(raw.rfind("}"), raw.rfind("]")) + 1
        return json.loads(raw[start:end])

    return _parse
