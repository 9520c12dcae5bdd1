"""Alert sinks for high-severity security events and audit write failures.

INVARIANT: alert delivery is fire-and-forget.  Failures are logged but
never propagate to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import httpx
from cascade_engine.errors import NetworkOrServerError
from cascade_engine.executor.retry import RetryConfig, async_retry_with_backoff

logger = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 5.0


class LoggingAlertSink:
    """Writes alerts to the log at ERROR level."""

    async def alert(self, title: str, payload: dict[str, Any]) -> None:
        logger.error("ALERT %s: %s", title, payload)


class WebhookAlertSink:
    """POSTs alerts as JSON to a fixed endpoint.

    Parameters
    ----------
    url:
        Destination endpoint.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client
        is created if not provided.
    retry:
        Backoff parameters for transient delivery failures.
    """

    def __init__(
        self,
        url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = _TIMEOUT_SECONDS,
        retry: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._url = url
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None
        self._retry = retry or RetryConfig(max_retries=2, base_delay=1.0, max_delay=4.0)
        self._sleep = sleep

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, body: dict[str, Any]) -> httpx.Response:
        try:
            response = await self._client.post(self._url, json=body)
        except (httpx.TimeoutException, httpx.RequestError) as exc:
            raise NetworkOrServerError(f"alert delivery failed: {exc}") from exc
        if response.status_code >= 500:
            raise NetworkOrServerError(f"alert endpoint returned HTTP {response.status_code}")
        return response

    async def alert(self, title: str, payload: dict[str, Any]) -> None:
        body = {
            "title": title,
            "payload": payload,
            "sent_at": datetime.now(UTC).isoformat(),
        }
        try:
            response = await async_retry_with_backoff(lambda: self._post(body), self._retry, sleep=self._sleep)
        except NetworkOrServerError as exc:
            logger.error("Alert not delivered to %s: %s", self._url, exc)
            return
        if response.status_code >= 400:
            logger.warning("Alert rejected by %s: HTTP %d", self._url, response.status_code)
            return
        logger.info("Alert delivered: %s", title)
