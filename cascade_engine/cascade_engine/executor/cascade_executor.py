"""Cascade executor: the deletion state machine.

One call to :meth:`CascadeExecutor.execute` drives a single
:class:`DeletionOperation` through::

    pending -> validating -> snapshotting -> deleting
            -> cleaning_orphans -> finalizing -> completed

``failed`` and ``cancelled`` are reachable from every non-terminal state.

Each batch runs in its own committed transaction and re-selects the ids
that still exist before touching them, so a stale preview is harmless.
Between batches the executor checks the cooperative cancellation flag and
the wall-clock deadline; the whole run is additionally bounded by
``asyncio.wait_for`` so a batch stuck on I/O cannot hold the target's
registry slot forever.  A failed or cancelled run is never resumed: the
pre-deletion snapshot is the only recovery path.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cascade_engine.config import EngineSettings
from cascade_engine.errors import (
    CascadeError,
    ConflictError,
    IntegrityViolation,
    OperationCancelled,
    OperationTimeoutError,
    ValidationError,
)
from cascade_engine.executor.registry import ActiveOperationRegistry
from cascade_engine.graph.relations import TARGET, deletion_order, get_schema, rules_for_tables
from cascade_engine.models.audit import Actor, AuditEntry
from cascade_engine.models.impact import CascadeAction
from cascade_engine.models.issues import CleanupMethod
from cascade_engine.models.operation import (
    DeletionOperation,
    DeletionOptions,
    OperationStatus,
    OperationSummary,
)
from cascade_engine.models.refs import EntityRef
from cascade_engine.models.snapshot import SnapshotKind
from cascade_engine.ports import AuditSink, NullAuditSink
from cascade_engine.recovery.snapshots import SnapshotStore
from cascade_engine.simulation.impact_analyzer import CascadeSet, ImpactAnalyzer
from cascade_engine.state.repository import RecordRepository

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[DeletionOperation], Awaitable[None] | None]

AUDIT_OPERATION = "execute_delete"

# Progress milestones per state.
_PROGRESS_VALIDATING = 5
_PROGRESS_SNAPSHOTTING = 10
_PROGRESS_DELETE_SPAN = 80
_PROGRESS_CLEANING = 95

# Errors raised before anything was touched are re-raised to the caller.
_PRE_MUTATION_CODES = frozenset({"NOT_FOUND", "VALIDATION_ERROR", "ROLLBACK_COOLDOWN"})


@dataclass(frozen=True)
class _Batch:
    relation: str
    collection: str
    table: str
    action: CascadeAction
    column: str | None
    ids: tuple[str, ...]
    index: int
    of: int

    @property
    def label(self) -> str:
        return f"{self.collection}[{self.index}/{self.of}]"


class CascadeExecutor:
    """Runs cascade deletions against the state store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: EngineSettings,
        registry: ActiveOperationRegistry,
        analyzer: ImpactAnalyzer,
        snapshots: SnapshotStore,
        audit: AuditSink | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._registry = registry
        self._analyzer = analyzer
        self._snapshots = snapshots
        self._audit: AuditSink = audit or NullAuditSink()

    # -- Public API ----------------------------------------------------------

    def resolve_batch_size(self, options: DeletionOptions) -> int:
        size = options.batch_size or self._settings.default_batch_size
        if size > self._settings.max_batch_size:
            raise ValidationError(
                f"batch_size {size} exceeds maximum {self._settings.max_batch_size}",
                details={"max_batch_size": self._settings.max_batch_size},
            )
        return size

    async def execute(
        self,
        target: EntityRef,
        options: DeletionOptions | None = None,
        *,
        actor: Actor,
        on_progress: ProgressCallback | None = None,
    ) -> DeletionOperation:
        """Run a cascade deletion of *target* to a terminal state.

        Returns the terminal operation for completed, failed and cancelled
        runs.  Raises :class:`ConflictError` without touching anything when
        the target already has an active operation, and re-raises
        validation-phase failures (missing target, cool-down) after they
        have been audited.
        """
        options = options or DeletionOptions()
        batch_size = self.resolve_batch_size(options)
        timeout = self._settings.operation_timeout_seconds

        op = DeletionOperation(
            operation_id=uuid.uuid4().hex,
            target=target,
            start_time=datetime.now(UTC),
            actor_id=actor.actor_id,
        )
        existing = await self._registry.acquire(op, timeout)
        if existing is not None:
            raise ConflictError(
                f"Deletion of {target.key} already in progress",
                operation_id=existing.operation_id,
                details={"operation_id": existing.operation_id},
            )

        logger.info(
            "Operation %s started for %s by %s (batch_size=%d, snapshot=%s)",
            op.operation_id,
            target.key,
            actor.actor_id,
            batch_size,
            options.create_snapshot,
        )
        raise_after: CascadeError | None = None
        try:
            await asyncio.wait_for(self._run(op, options, batch_size, on_progress), timeout=timeout)
            op.advance(OperationStatus.COMPLETED, "completed", 100)
        except OperationCancelled as exc:
            self._terminate(op, OperationStatus.CANCELLED, exc)
        except TimeoutError:
            self._terminate(
                op,
                OperationStatus.FAILED,
                OperationTimeoutError(f"Operation exceeded {timeout:.0f}s"),
            )
        except CascadeError as exc:
            self._terminate(op, OperationStatus.FAILED, exc)
            if exc.code in _PRE_MUTATION_CODES and op.records_deleted == 0 and op.records_nullified == 0:
                raise_after = exc
        except SQLAlchemyError as exc:
            logger.exception("Operation %s hit a database error", op.operation_id)
            self._terminate(op, OperationStatus.FAILED, CascadeError(str(exc), code="SERVER_ERROR"))
        except asyncio.CancelledError:
            self._terminate(op, OperationStatus.CANCELLED, OperationCancelled("Caller was cancelled"))
            raise
        finally:
            op.end_time = datetime.now(UTC)
            op.rollback_available = op.snapshot_id is not None
            await self._record_terminal(op, actor, options)
            await self._registry.release(target, op.operation_id)
            logger.info(
                "Operation %s finished: status=%s deleted=%d nullified=%d",
                op.operation_id,
                op.status.value,
                op.records_deleted,
                op.records_nullified,
            )

        if raise_after is not None:
            raise raise_after
        return op

    def cancel(self, target: EntityRef) -> bool:
        return self._registry.request_cancel(target)

    def active_operations(self) -> list[OperationSummary]:
        return [OperationSummary.from_operation(op) for op in self._registry.list_active()]

    # -- State machine -------------------------------------------------------

    async def _run(
        self,
        op: DeletionOperation,
        options: DeletionOptions,
        batch_size: int,
        on_progress: ProgressCallback | None,
    ) -> None:
        target = op.target

        op.advance(OperationStatus.VALIDATING, "validating", _PROGRESS_VALIDATING)
        await self._notify(op, on_progress)
        if not options.skip_validation:
            remaining = self._registry.cooldown_remaining(target)
            if remaining > 0 and not options.force_delete:
                raise ConflictError(
                    f"{target.key} was rolled back recently; retry in {remaining:.0f}s or force",
                    code="ROLLBACK_COOLDOWN",
                    details={"retry_after_seconds": round(remaining, 1)},
                )
        async with self._session_factory() as session:
            found = await self._analyzer.collect(session, target, require_target=not options.skip_validation)
        op.impact_summary = {k: v for k, v in found.collection_counts().items() if v}
        self._check_cancel(op)

        op.advance(OperationStatus.SNAPSHOTTING, "snapshotting", _PROGRESS_SNAPSHOTTING)
        await self._notify(op, on_progress)
        if options.create_snapshot:
            info = await self._snapshots.capture(
                kind=SnapshotKind.PRE_DELETION,
                payload=found.snapshot_payload(),
                operation_id=op.operation_id,
                target=target,
            )
            op.snapshot_id = info.snapshot_id
        self._check_cancel(op)

        op.advance(OperationStatus.DELETING, "deleting", _PROGRESS_SNAPSHOTTING)
        await self._notify(op, on_progress)
        deleted_ids = await self._delete_batches(op, found, batch_size, on_progress)

        op.advance(OperationStatus.CLEANING_ORPHANS, "cleaning_orphans", _PROGRESS_CLEANING)
        await self._notify(op, on_progress)
        await self._sweep_leftovers(op, deleted_ids)

        op.advance(OperationStatus.FINALIZING, "finalizing")
        await self._notify(op, on_progress)

    def _plan(self, found: CascadeSet, batch_size: int) -> list[_Batch]:
        schema = get_schema(found.target.entity_type)
        batches: list[_Batch] = []
        for name in deletion_order(found.target.entity_type):
            if name == TARGET:
                ids = [found.target.entity_id] if found.target_row is not None else []
                collection, table, action, column = schema.table, schema.table, CascadeAction.DELETE, None
            else:
                rel = schema.relation(name)
                ids = found.ids(name)
                collection, table, action = rel.collection, rel.table, rel.action
                column = rel.links[0][1] if action is CascadeAction.NULLIFY else None
            count = math.ceil(len(ids) / batch_size)
            for i in range(count):
                chunk = tuple(ids[i * batch_size : (i + 1) * batch_size])
                batches.append(_Batch(name, collection, table, action, column, chunk, i + 1, count))
        return batches

    async def _delete_batches(
        self,
        op: DeletionOperation,
        found: CascadeSet,
        batch_size: int,
        on_progress: ProgressCallback | None,
    ) -> dict[str, list[str]]:
        plan = self._plan(found, batch_size)
        deleted: dict[str, list[str]] = {}
        for done, batch in enumerate(plan, start=1):
            self._check_cancel(op)
            if self._registry.remaining(op.target) <= 0:
                raise OperationTimeoutError("Operation deadline reached between batches")

            op.current_step = f"deleting {batch.collection}"
            async with self._session_factory() as session, session.begin():
                records = RecordRepository(session)
                live = await records.existing_ids(batch.table, list(batch.ids))
                if len(live) != len(batch.ids):
                    logger.debug(
                        "Batch %s: %d of %d records already gone",
                        batch.label,
                        len(batch.ids) - len(live),
                        len(batch.ids),
                    )
                if batch.action is CascadeAction.NULLIFY:
                    affected = await records.nullify(batch.table, batch.column, live, [found.target.entity_id])
                    op.records_nullified += affected
                else:
                    affected = await records.delete_ids(batch.table, live)
                    if affected != len(live):
                        raise IntegrityViolation(
                            f"Batch {batch.label} deleted {affected} of {len(live)} verified records",
                            details={"table": batch.table, "operation_id": op.operation_id},
                        )
                    op.records_deleted += affected
                    deleted.setdefault(batch.table, []).extend(live)

            op.last_completed_step = batch.label
            op.advance(
                OperationStatus.DELETING,
                f"deleting {batch.collection}",
                _PROGRESS_SNAPSHOTTING + (_PROGRESS_DELETE_SPAN * done) // len(plan),
            )
            await self._notify(op, on_progress)
        return deleted

    async def _sweep_leftovers(self, op: DeletionOperation, deleted: dict[str, list[str]]) -> None:
        """Detach references to just-deleted records that the cascade did not cover."""
        swept = 0
        async with self._session_factory() as session, session.begin():
            records = RecordRepository(session)
            for rule in rules_for_tables(None):
                gone = deleted.get(rule.owner_table)
                if not gone:
                    continue
                rows = await records.fetch_where_in(rule.table, rule.column, gone)
                ids = [row["id"] for row in rows]
                if not ids:
                    continue
                if rule.method is CleanupMethod.NULLIFY:
                    count = await records.nullify_dangling(rule.table, rule.column, rule.owner_table, ids)
                    op.records_nullified += count
                else:
                    count = await records.delete_dangling(rule.table, rule.column, rule.owner_table, ids)
                    op.records_deleted += count
                swept += count
        if swept:
            logger.warning("Operation %s swept %d leftover references", op.operation_id, swept)

    # -- Helpers -------------------------------------------------------------

    def _check_cancel(self, op: DeletionOperation) -> None:
        if not self._registry.cancel_requested(op.target, op.operation_id):
            return
        if op.error_code == OperationTimeoutError.code:
            # Evicted by the registry sweep after its deadline.
            raise OperationTimeoutError(
                "Operation deadline reached",
                details={"last_completed_step": op.last_completed_step},
            )
        raise OperationCancelled(
            f"Operation {op.operation_id} cancelled",
            details={"last_completed_step": op.last_completed_step},
        )

    @staticmethod
    def _terminate(op: DeletionOperation, status: OperationStatus, exc: CascadeError) -> None:
        op.status = status
        op.current_step = status.value
        op.error = exc.message
        op.error_code = exc.code
        level = logging.INFO if status is OperationStatus.CANCELLED else logging.ERROR
        logger.log(
            level,
            "Operation %s %s at step %s: %s",
            op.operation_id,
            status.value,
            op.last_completed_step or "-",
            exc.message,
        )

    @staticmethod
    async def _notify(op: DeletionOperation, on_progress: ProgressCallback | None) -> None:
        if on_progress is None:
            return
        result = on_progress(op)
        if inspect.isawaitable(result):
            await result

    async def _record_terminal(self, op: DeletionOperation, actor: Actor, options: DeletionOptions) -> None:
        entry = AuditEntry(
            operation=AUDIT_OPERATION,
            actor_id=actor.actor_id,
            actor_role=actor.actor_role,
            success=op.status is OperationStatus.COMPLETED,
            duration_ms=int(((op.end_time or datetime.now(UTC)) - op.start_time).total_seconds() * 1000),
            error=op.error,
            entity_type=op.target.entity_type.value,
            entity_id=op.target.entity_id,
            metadata={
                "operation_id": op.operation_id,
                "status": op.status.value,
                "snapshot_id": op.snapshot_id,
                "records_deleted": op.records_deleted,
                "records_nullified": op.records_nullified,
                "last_completed_step": op.last_completed_step,
                "error_code": op.error_code,
                "reason": options.reason,
                "force_delete": options.force_delete,
            },
        )
        try:
            await asyncio.shield(self._audit.record(entry))
        except Exception:
            logger.exception("Audit sink failed for operation %s", op.operation_id)
