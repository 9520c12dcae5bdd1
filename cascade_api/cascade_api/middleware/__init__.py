"""Middleware components for the Cadenza API."""

from __future__ import annotations

from cascade_api.middleware.json_formatter import JSONFormatter, configure_logging
from cascade_api.middleware.logging import RequestLoggingMiddleware

__all__ = [
    "JSONFormatter",
    "RequestLoggingMiddleware",
    "configure_logging",
]
