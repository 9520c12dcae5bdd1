"""Call-site retry with exponential backoff for transient failures.

Only errors flagged ``retryable`` (``NetworkOrServerError`` and friends)
are retried.  Admission refusals, validation failures and conflicts
propagate on the first attempt.  The cascade state machine never calls
this itself; it wraps calls *into* the engine from the outside.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field

from cascade_engine.config import EngineSettings
from cascade_engine.errors import CascadeError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt.")
    base_delay: float = Field(default=1.0, gt=0.0, description="Base delay in seconds.")
    max_delay: float = Field(default=10.0, gt=0.0, description="Upper bound on delay in seconds.")
    jitter: bool = Field(default=True, description="Randomise the delay within [0.5x, 1.5x].")

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> RetryConfig:
        return cls(
            max_retries=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )


def compute_delay(attempt: int, config: RetryConfig) -> float:
    """Backoff delay before retry number *attempt* (0-based)."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, CascadeError) and exc.retryable


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    *,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``fn()`` until it succeeds or retries run out.

    Parameters
    ----------
    fn:
        Zero-argument coroutine factory, invoked afresh on every attempt.
    config:
        Retry parameters.
    should_retry:
        Predicate deciding whether an exception is transient.
    sleep:
        Injectable sleep, for tests.

    Raises
    ------
    Exception
        The first non-retryable exception, or the last retryable one once
        attempts are exhausted.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if not should_retry(exc) or attempt >= config.max_retries:
                raise
            delay = compute_delay(attempt, config)
            logger.warning(
                "Retry %d/%d after %.1fs: %s",
                attempt + 1,
                config.max_retries,
                delay,
                exc,
            )
            attempt += 1
            await sleep(delay)
