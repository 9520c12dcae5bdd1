"""Tests for the JSON log formatter."""

from __future__ import annotations

import json
import logging
import sys

import pytest
from cascade_api.middleware.json_formatter import JSONFormatter, configure_logging


@pytest.fixture
def formatter() -> JSONFormatter:
    return JSONFormatter()


def _record(msg: str = "test message", level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="cascade_api.test",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_format(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record()))
        assert data["level"] == "INFO"
        assert data["logger"] == "cascade_api.test"
        assert data["message"] == "test message"
        assert "timestamp" in data

    def test_single_line_output(self, formatter: JSONFormatter) -> None:
        assert "\n" not in formatter.format(_record("line one\nline two"))

    def test_extra_fields_included(self, formatter: JSONFormatter) -> None:
        record = _record(
            "request completed",
            correlation_id="corr-1",
            operation_id="op-1",
            request={"method": "POST", "status_code": 200},
        )
        data = json.loads(formatter.format(record))
        assert data["correlation_id"] == "corr-1"
        assert data["operation_id"] == "op-1"
        assert data["request"]["status_code"] == 200
        assert "actor_id" not in data

    def test_exception_info(self, formatter: JSONFormatter) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record("failed", level=logging.ERROR)
            record.exc_info = sys.exc_info()
        data = json.loads(formatter.format(record))
        assert "RuntimeError: boom" in data["exc_info"]

    def test_non_serializable_values(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record(request={"when": object()})))
        assert data["request"]["when"].startswith("<object")


class TestConfigureLogging:
    def test_structured_handler(self) -> None:
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            configure_logging(structured=True, debug=True)
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert root.level == logging.DEBUG
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)
