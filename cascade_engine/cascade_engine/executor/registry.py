"""In-process registry of active deletion operations.

Acquiring a slot is the only mutual-exclusion point of the engine: at most
one operation may be active per target, and the check-and-insert happens
under an ``asyncio.Lock``.  Unrelated targets never contend beyond that
brief critical section.

The registry also carries the cooperative cancellation flag of each
operation, the post-rollback cool-down per target, and a periodic sweep
that fails operations whose wall-clock deadline passed without them
releasing their slot.

State is process-local.  One registry is constructed per process (or per
test) and passed to the components that need it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from cascade_engine.models.operation import DeletionOperation, OperationStatus
from cascade_engine.models.refs import EntityRef

logger = logging.getLogger(__name__)

_SWEEP_INTERVAL_SECONDS: float = 30.0


@dataclass
class _Slot:
    operation: DeletionOperation
    deadline: float
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


class ActiveOperationRegistry:
    """Map from target key to the operation currently running against it."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = _SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._slots: dict[str, _Slot] = {}
        self._cooldowns: dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._sweep_task: asyncio.Task[None] | None = None
        self._running = False

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Launch the periodic sweep coroutine."""
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.ensure_future(self._sweep_loop())

    async def stop(self) -> None:
        self._running = False
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    # -- Slots ---------------------------------------------------------------

    async def acquire(self, operation: DeletionOperation, timeout_seconds: float) -> DeletionOperation | None:
        """Register *operation* for its target.

        Returns ``None`` on success, or the operation already holding the
        slot when the target is busy.
        """
        key = operation.target.key
        async with self._lock:
            existing = self._slots.get(key)
            if existing is not None:
                return existing.operation
            self._slots[key] = _Slot(operation=operation, deadline=self._clock() + timeout_seconds)
        logger.debug("Registry slot acquired for %s by %s", key, operation.operation_id)
        return None

    async def release(self, target: EntityRef, operation_id: str) -> bool:
        """Free the slot if it is still held by *operation_id*."""
        key = target.key
        async with self._lock:
            slot = self._slots.get(key)
            if slot is None or slot.operation.operation_id != operation_id:
                return False
            del self._slots[key]
        logger.debug("Registry slot released for %s by %s", key, operation_id)
        return True

    def get(self, target: EntityRef) -> DeletionOperation | None:
        slot = self._slots.get(target.key)
        return slot.operation if slot is not None else None

    def list_active(self) -> list[DeletionOperation]:
        return sorted((s.operation for s in self._slots.values()), key=lambda op: op.start_time)

    def holds(self, operation_id: str) -> bool:
        return any(s.operation.operation_id == operation_id for s in self._slots.values())

    # -- Cancellation and deadlines ------------------------------------------

    def request_cancel(self, target: EntityRef) -> bool:
        """Set the cancellation flag of the operation active for *target*."""
        slot = self._slots.get(target.key)
        if slot is None or slot.operation.status.is_terminal:
            return False
        slot.cancel_event.set()
        logger.info("Cancellation requested for %s (%s)", target.key, slot.operation.operation_id)
        return True

    def cancel_requested(self, target: EntityRef, operation_id: str) -> bool:
        slot = self._slots.get(target.key)
        if slot is None or slot.operation.operation_id != operation_id:
            # Slot taken away by the sweep.
            return True
        return slot.cancel_event.is_set()

    def remaining(self, target: EntityRef) -> float:
        """Seconds left before the active operation's deadline."""
        slot = self._slots.get(target.key)
        if slot is None:
            return 0.0
        return max(slot.deadline - self._clock(), 0.0)

    # -- Cool-down -----------------------------------------------------------

    def start_cooldown(self, target: EntityRef, seconds: float) -> None:
        if seconds <= 0:
            return
        self._cooldowns[target.key] = self._clock() + seconds

    def cooldown_remaining(self, target: EntityRef) -> float:
        until = self._cooldowns.get(target.key)
        if until is None:
            return 0.0
        remaining = until - self._clock()
        if remaining <= 0:
            self._cooldowns.pop(target.key, None)
            return 0.0
        return remaining

    # -- Housekeeping --------------------------------------------------------

    async def sweep(self) -> int:
        """Fail and evict operations past their deadline; drop expired cool-downs."""
        now = self._clock()
        stuck: list[_Slot] = []
        async with self._lock:
            for key, slot in list(self._slots.items()):
                if slot.deadline <= now:
                    stuck.append(slot)
                    del self._slots[key]
            for key, until in list(self._cooldowns.items()):
                if until <= now:
                    del self._cooldowns[key]

        for slot in stuck:
            op = slot.operation
            slot.cancel_event.set()
            if not op.status.is_terminal:
                op.status = OperationStatus.FAILED
                op.error = "Operation exceeded its wall-clock deadline"
                op.error_code = "OPERATION_TIMEOUT"
                op.end_time = datetime.now(UTC)
                op.rollback_available = op.snapshot_id is not None
            logger.warning("Swept stuck operation %s for %s", op.operation_id, op.target.key)
        return len(stuck)

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._sweep_interval)
            swept = await self.sweep()
            if swept:
                logger.debug("Registry sweep evicted %d operations", swept)
