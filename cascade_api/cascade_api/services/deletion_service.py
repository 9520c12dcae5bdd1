"""Service facade over the cascade engine.

Every public method takes the caller's :class:`SecurityContext`, runs it
through the :class:`SecurityGate`, and audits the outcome.  An admission
refusal is *returned* (as a :class:`Refusal`), never raised; engine
failures propagate as :class:`~cascade_engine.errors.CascadeError`
subclasses after they have been audited.

``execute_delete`` is special: the engine's executor audits every run
that acquired an operation slot, so this facade only audits the paths
that never reach the executor (refusals, bad input, duplicates).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from cascade_engine.errors import CascadeError, ConflictError, ValidationError
from cascade_engine.executor.cascade_executor import ProgressCallback
from cascade_engine.models.audit import AuditEntry, AuditQuery, PagedAuditEntries
from cascade_engine.models.impact import DeletionImpact
from cascade_engine.models.issues import CleanupResult, RepairResult, ValidationResult
from cascade_engine.models.operation import (
    DeletionOptions,
    OperationResult,
    OperationStatus,
    OperationSummary,
)
from cascade_engine.models.refs import EntityRef
from cascade_engine.models.snapshot import RollbackResult, SnapshotInfo
from cascade_engine.runtime import CascadeRuntime
from cascade_engine.simulation.impact_analyzer import parse_ref

from cascade_api.security.context import Refusal, SecurityContext
from cascade_api.security.gate import SecurityGate
from cascade_api.services.audit_service import AuditAction, AuditExport, AuditExportFormat, AuditRecorder

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DeletionService:
    """Guarded, audited entry point for every engine operation."""

    def __init__(self, runtime: CascadeRuntime, gate: SecurityGate, audit: AuditRecorder) -> None:
        self._runtime = runtime
        self._gate = gate
        self._audit_recorder = audit

    @property
    def runtime(self) -> CascadeRuntime:
        return self._runtime

    @property
    def gate(self) -> SecurityGate:
        return self._gate

    # -- Plumbing ------------------------------------------------------------

    async def _audit(
        self,
        operation: str,
        ctx: SecurityContext,
        *,
        success: bool,
        started: float | None = None,
        error: str | None = None,
        target: EntityRef | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        duration_ms = int((time.monotonic() - started) * 1000) if started is not None else None
        await self._audit_recorder.record(
            AuditEntry(
                operation=operation,
                actor_id=ctx.actor_id,
                actor_role=ctx.actor_role.value,
                success=success,
                duration_ms=duration_ms,
                error=error,
                entity_type=target.entity_type.value if target else None,
                entity_id=target.entity_id if target else None,
                metadata={"origin": ctx.origin, "session_id": ctx.session_id, **(metadata or {})},
            )
        )

    async def _admit(
        self,
        operation: str,
        ctx: SecurityContext,
        *,
        target: EntityRef | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Refusal | None:
        refusal = await self._gate.admit(operation, ctx, metadata)
        if refusal is not None:
            await self._audit(
                operation,
                ctx,
                success=False,
                error=refusal.code.value,
                target=target,
                metadata={"refusal": refusal.reason, **refusal.details},
            )
        return refusal

    async def _failed(
        self,
        operation: str,
        ctx: SecurityContext,
        exc: Exception,
        *,
        started: float,
        target: EntityRef | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        code = exc.code if isinstance(exc, CascadeError) else type(exc).__name__
        await self._audit(
            operation,
            ctx,
            success=False,
            started=started,
            error=code,
            target=target,
            metadata={"message": str(exc), **(metadata or {})},
        )
        await self._gate.anomaly.record_failure(ctx.actor_id)

    async def _guarded(
        self,
        operation: str,
        ctx: SecurityContext,
        call: Callable[[], Awaitable[T]],
        *,
        target: EntityRef | None = None,
        metadata: dict[str, Any] | None = None,
        summarize: Callable[[T], dict[str, Any]] | None = None,
    ) -> T | Refusal:
        refusal = await self._admit(operation, ctx, target=target, metadata=metadata)
        if refusal is not None:
            return refusal
        started = time.monotonic()
        try:
            result = await call()
        except Exception as exc:
            await self._failed(operation, ctx, exc, started=started, target=target, metadata=metadata)
            raise
        await self._audit(
            operation,
            ctx,
            success=True,
            started=started,
            target=target,
            metadata={**(metadata or {}), **(summarize(result) if summarize else {})},
        )
        return result

    @staticmethod
    def _target_or_none(entity_type: str, entity_id: str) -> EntityRef | None:
        try:
            return parse_ref(entity_type, entity_id)
        except ValidationError:
            return None

    # -- Deletion ------------------------------------------------------------

    async def preview_deletion(self, entity_type: str, entity_id: str, ctx: SecurityContext) -> DeletionImpact | Refusal:
        target = self._target_or_none(entity_type, entity_id)

        async def call() -> DeletionImpact:
            return await self._runtime.analyzer.preview(parse_ref(entity_type, entity_id))

        return await self._guarded(
            AuditAction.PREVIEW_DELETION,
            ctx,
            call,
            target=target,
            summarize=lambda impact: {
                "total_records": impact.total_records,
                "risk_level": impact.risk_level.value,
                "can_proceed": impact.can_proceed,
            },
        )

    async def execute_delete(
        self,
        entity_type: str,
        entity_id: str,
        ctx: SecurityContext,
        options: DeletionOptions | None = None,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> OperationResult | Refusal:
        """Delete an entity and its dependents.

        A target that already has an active operation yields that
        operation's id with ``duplicate=True`` instead of a second run.
        """
        options = options or DeletionOptions()
        operation = AuditAction.EXECUTE_DELETE
        target = self._target_or_none(entity_type, entity_id)
        metadata = {"entity_count": options.batch_size} if options.batch_size else None

        refusal = await self._admit(operation, ctx, target=target, metadata=metadata)
        if refusal is not None:
            return refusal

        started = time.monotonic()
        try:
            target = parse_ref(entity_type, entity_id)
            self._runtime.executor.resolve_batch_size(options)
        except ValidationError as exc:
            await self._failed(operation, ctx, exc, started=started, target=target)
            raise

        try:
            op = await self._runtime.executor.execute(target, options, actor=ctx.actor, on_progress=on_progress)
        except ConflictError as exc:
            if exc.code != ConflictError.code:
                # Raised after slot acquisition; the executor has audited it.
                await self._gate.anomaly.record_failure(ctx.actor_id)
                raise
            await self._audit(
                operation,
                ctx,
                success=False,
                started=started,
                error=exc.code,
                target=target,
                metadata={"duplicate_of": exc.operation_id},
            )
            return self._duplicate_result(target, exc.operation_id)
        except CascadeError:
            await self._gate.anomaly.record_failure(ctx.actor_id)
            raise

        if op.status is not OperationStatus.COMPLETED:
            await self._gate.anomaly.record_failure(ctx.actor_id)
        return OperationResult.from_operation(op)

    def _duplicate_result(self, target: EntityRef, operation_id: str | None) -> OperationResult:
        existing = self._runtime.registry.get(target)
        if existing is not None and existing.operation_id == operation_id:
            return OperationResult.from_operation(existing, duplicate=True)
        logger.info("Duplicate request for %s; operation %s already finished", target.key, operation_id)
        return OperationResult(
            operation_id=operation_id or "",
            target=target,
            status=OperationStatus.PENDING,
            duplicate=True,
        )

    async def cancel_operation(self, entity_type: str, entity_id: str, ctx: SecurityContext) -> bool | Refusal:
        target = self._target_or_none(entity_type, entity_id)

        async def call() -> bool:
            return self._runtime.executor.cancel(parse_ref(entity_type, entity_id))

        return await self._guarded(
            AuditAction.CANCEL_OPERATION,
            ctx,
            call,
            target=target,
            summarize=lambda cancelled: {"cancelled": cancelled},
        )

    async def get_active_operations(self, ctx: SecurityContext) -> list[OperationSummary] | Refusal:
        async def call() -> list[OperationSummary]:
            return self._runtime.executor.active_operations()

        return await self._guarded(AuditAction.GET_ACTIVE_OPERATIONS, ctx, call)

    async def rollback_deletion(self, snapshot_id: str, ctx: SecurityContext) -> RollbackResult | Refusal:
        async def call() -> RollbackResult:
            return await self._runtime.rollback.rollback(snapshot_id)

        return await self._guarded(
            AuditAction.ROLLBACK_DELETION,
            ctx,
            call,
            metadata={"snapshot_id": snapshot_id},
            summarize=lambda result: {
                "records_restored": result.records_restored,
                "new_snapshot_id": result.new_snapshot_id,
                "target": result.target.key if result.target else None,
            },
        )

    async def list_snapshots(self, entity_type: str, entity_id: str, ctx: SecurityContext) -> list[SnapshotInfo] | Refusal:
        target = self._target_or_none(entity_type, entity_id)

        async def call() -> list[SnapshotInfo]:
            return await self._runtime.snapshots.list_for_target(parse_ref(entity_type, entity_id))

        return await self._guarded(
            AuditAction.LIST_SNAPSHOTS,
            ctx,
            call,
            target=target,
            summarize=lambda snapshots: {"returned": len(snapshots)},
        )

    # -- Integrity -----------------------------------------------------------

    async def cleanup_orphaned(
        self,
        ctx: SecurityContext,
        *,
        collections: list[str] | None = None,
        issue_ids: list[str] | None = None,
        dry_run: bool = False,
        batch_size: int | None = None,
        create_backup: bool = True,
    ) -> CleanupResult | Refusal:
        """Scan for (``dry_run``) or remove dangling references.

        Dry runs are admitted as a read-only scan; real cleanups count
        against the bulk-operation budget and need a fresh re-authentication.
        """
        operation = AuditAction.SCAN_ORPHANS if dry_run else AuditAction.CLEANUP_ORPHANED
        metadata: dict[str, Any] = {"dry_run": dry_run}
        if batch_size:
            metadata["entity_count"] = batch_size
        if collections:
            metadata["collections"] = collections

        async def call() -> CleanupResult:
            return await self._runtime.orphans.cleanup(
                collections=collections,
                issue_ids=issue_ids,
                dry_run=dry_run,
                batch_size=batch_size,
                create_backup=create_backup,
            )

        return await self._guarded(
            operation,
            ctx,
            call,
            metadata=metadata,
            summarize=lambda result: {
                "cleaned": result.cleaned,
                "skipped": result.skipped,
                "errors": len(result.errors),
                "backup_snapshot_id": result.backup_snapshot_id,
            },
        )

    async def validate_integrity(self, ctx: SecurityContext) -> ValidationResult | Refusal:
        return await self._guarded(
            AuditAction.VALIDATE_INTEGRITY,
            ctx,
            self._runtime.validator.validate,
            summarize=lambda result: {
                "overall_status": result.overall_status.value,
                "issues": len(result.issues),
            },
        )

    async def repair_integrity(
        self,
        ctx: SecurityContext,
        *,
        issue_ids: list[str] | None = None,
        create_backup: bool = True,
        dry_run: bool = False,
    ) -> RepairResult | Refusal:
        async def call() -> RepairResult:
            return await self._runtime.validator.repair(issue_ids, create_backup=create_backup, dry_run=dry_run)

        return await self._guarded(
            AuditAction.REPAIR_INTEGRITY,
            ctx,
            call,
            metadata={"dry_run": dry_run, "issue_ids": issue_ids},
            summarize=lambda result: {
                "repaired": result.repaired,
                "failed": result.failed,
                "backup_snapshot_id": result.backup_snapshot_id,
            },
        )

    # -- Audit and security --------------------------------------------------

    async def get_audit_log(self, query: AuditQuery, ctx: SecurityContext) -> PagedAuditEntries | Refusal:
        async def call() -> PagedAuditEntries:
            return await self._audit_recorder.query(query)

        return await self._guarded(
            AuditAction.GET_AUDIT_LOG,
            ctx,
            call,
            metadata=query.model_dump(mode="json", exclude_none=True),
            summarize=lambda page: {"returned": len(page.entries), "total_count": page.total_count},
        )

    async def export_audit_log(
        self,
        query: AuditQuery,
        ctx: SecurityContext,
        fmt: AuditExportFormat = AuditExportFormat.JSON,
    ) -> AuditExport | Refusal:
        """Export every entry matching *query* as a JSON or CSV document."""

        async def call() -> AuditExport:
            return await self._audit_recorder.export(query, fmt)

        return await self._guarded(
            AuditAction.EXPORT_AUDIT_LOG,
            ctx,
            call,
            metadata={
                **query.model_dump(mode="json", exclude_none=True, exclude={"page", "limit"}),
                "format": AuditExportFormat(fmt).value,
            },
            summarize=lambda export: {"record_count": export.record_count, "truncated": export.truncated},
        )

    async def verify_audit_chain(self, ctx: SecurityContext) -> dict[str, Any] | Refusal:
        async def call() -> dict[str, Any]:
            return await self._audit_recorder.verify_chain()

        return await self._guarded(AuditAction.GET_AUDIT_LOG, ctx, call, metadata={"verify_chain": True})

    async def security_summary(self, ctx: SecurityContext) -> dict[str, Any] | Refusal:
        async def call() -> dict[str, Any]:
            summary = await self._gate.summary()
            summary["active_operations"] = len(self._runtime.registry.list_active())
            return summary

        return await self._guarded(AuditAction.SECURITY_SUMMARY, ctx, call)

    async def unblock_origin(self, origin: str, ctx: SecurityContext) -> bool | Refusal:
        async def call() -> bool:
            return await self._gate.anomaly.unblock(origin)

        return await self._guarded(
            AuditAction.UNBLOCK_ORIGIN,
            ctx,
            call,
            metadata={"unblocked_origin": origin},
            summarize=lambda removed: {"was_blocked": removed},
        )
