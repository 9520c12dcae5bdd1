"""Sliding-window rate limiting keyed by (operation, actor, origin).

Implements an in-memory sliding window counter with support for:
- A per-operation budget (default 10 calls per 60s window).
- A lower budget for bulk operations (orphan cleanup, integrity repair).
- Denied calls do not consume budget.
- Automatic cleanup of stale tracking entries.

.. warning:: **Single-process limitation**

   All rate-limit state is held in process-local memory.  A restart
   grants every client a fresh budget, and separate processes keep
   independent counters.  Swapping :class:`SlidingWindowCounter` for a
   shared store only requires a class exposing the same async API.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_WINDOW_SECONDS: float = 60.0
_CLEANUP_INTERVAL_SECONDS: float = 60.0


class SlidingWindowCounter:
    """Asyncio-safe sliding window hit counter.

    Each key maps to a :class:`~collections.deque` of monotonic
    timestamps.  Every read or write prunes entries older than
    ``window_seconds`` first.

    A background task periodically removes keys that have been idle for
    longer than the window to prevent unbounded memory growth.
    """

    def __init__(
        self,
        window_seconds: float = _WINDOW_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
        cleanup_interval: float = _CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        self._window: float = window_seconds
        self._clock = clock
        self._cleanup_interval = cleanup_interval
        self._buckets: dict[str, deque[float]] = {}
        self._lock: asyncio.Lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task[None] | None = None
        self._running: bool = False

    @property
    def window_seconds(self) -> float:
        return self._window

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Launch the periodic cleanup coroutine."""
        if self._running:
            return
        self._running = True
        self._cleanup_task = asyncio.ensure_future(self._cleanup_loop())

    async def stop(self) -> None:
        """Cancel the cleanup loop and wait for it to finish."""
        self._running = False
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    # -- Core API ------------------------------------------------------------

    def _prune(self, bucket: deque[float], now: float) -> None:
        cutoff = now - self._window
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()

    async def hit(self, key: str) -> int:
        """Record a hit for *key* and return the count inside the window."""
        now = self._clock()
        async with self._lock:
            bucket = self._buckets.setdefault(key, deque())
            self._prune(bucket, now)
            bucket.append(now)
            return len(bucket)

    async def hit_if_below(self, key: str, limit: int) -> tuple[bool, int]:
        """Record a hit only if the window holds fewer than *limit* entries.

        Returns ``(admitted, count)``.  A refused hit leaves the window
        untouched so that rejected calls never extend a client's lockout.
        """
        now = self._clock()
        async with self._lock:
            bucket = self._buckets.setdefault(key, deque())
            self._prune(bucket, now)
            if len(bucket) >= limit:
                return False, len(bucket)
            bucket.append(now)
            return True, len(bucket)

    async def count(self, key: str) -> int:
        """Return the current count without recording a new hit."""
        now = self._clock()
        async with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return 0
            self._prune(bucket, now)
            return len(bucket)

    async def time_until_reset(self, key: str) -> float:
        """Seconds until the oldest entry in *key*'s window expires.

        Returns ``0.0`` if the key has no recorded timestamps.
        """
        now = self._clock()
        async with self._lock:
            bucket = self._buckets.get(key)
            if not bucket:
                return 0.0
            remaining = (bucket[0] + self._window) - now
            return max(remaining, 0.0)

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._buckets.pop(key, None)

    async def active_keys(self) -> int:
        """Number of keys with at least one hit inside the window."""
        now = self._clock()
        async with self._lock:
            for bucket in self._buckets.values():
                self._prune(bucket, now)
            return sum(1 for bucket in self._buckets.values() if bucket)

    # -- Housekeeping --------------------------------------------------------

    async def purge_stale(self) -> int:
        """Drop keys whose entries have all expired; returns how many."""
        now = self._clock()
        async with self._lock:
            stale_keys: list[str] = []
            for key, bucket in self._buckets.items():
                self._prune(bucket, now)
                if not bucket:
                    stale_keys.append(key)
            for key in stale_keys:
                del self._buckets[key]
        if stale_keys:
            logger.debug("Rate-limit cleanup removed %d stale keys", len(stale_keys))
        return len(stale_keys)

    async def _cleanup_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._cleanup_interval)
            await self.purge_stale()


@dataclass(frozen=True)
class RateDecision:
    admitted: bool
    key: str
    limit: int
    count: int
    retry_after_seconds: float = 0.0


class OperationRateLimiter:
    """Applies per-operation budgets on top of a :class:`SlidingWindowCounter`."""

    def __init__(
        self,
        counter: SlidingWindowCounter,
        *,
        budget: int = 10,
        bulk_budget: int = 2,
        bulk_operations: frozenset[str] = frozenset(),
        enabled: bool = True,
    ) -> None:
        self._counter = counter
        self._budget = budget
        self._bulk_budget = bulk_budget
        self._bulk_operations = bulk_operations
        self._enabled = enabled

    @staticmethod
    def key_for(operation: str, actor_id: str, origin: str) -> str:
        return f"{operation}:{actor_id}:{origin}"

    def limit_for(self, operation: str) -> int:
        return self._bulk_budget if operation in self._bulk_operations else self._budget

    async def check(self, operation: str, actor_id: str, origin: str) -> RateDecision:
        key = self.key_for(operation, actor_id, origin)
        limit = self.limit_for(operation)
        if not self._enabled:
            return RateDecision(admitted=True, key=key, limit=limit, count=0)

        admitted, count = await self._counter.hit_if_below(key, limit)
        if admitted:
            return RateDecision(admitted=True, key=key, limit=limit, count=count)

        retry_after = await self._counter.time_until_reset(key)
        logger.warning(
            "Rate limit exceeded: operation=%s actor=%s origin=%s count=%d limit=%d",
            operation,
            actor_id,
            origin,
            count,
            limit,
        )
        return RateDecision(
            admitted=False,
            key=key,
            limit=limit,
            count=count,
            retry_after_seconds=retry_after,
        )

    async def active_keys(self) -> int:
        return await self._counter.active_keys()

    def start(self) -> None:
        self._counter.start()

    async def stop(self) -> None:
        await self._counter.stop()
