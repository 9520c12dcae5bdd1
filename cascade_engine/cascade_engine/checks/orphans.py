"""Orphan cleanup engine.

Scans every reference column named in the schema's reference rules for
values whose owner row no longer exists, independent of any deletion
run, and removes or detaches them in resumable batches.

Every mutating statement re-checks ``NOT EXISTS (owner)`` itself, so a
reference whose owner reappeared between scan and cleanup is left alone.
High-severity issues are never touched by the automated sweep; they must
be selected by id.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cascade_engine.checks.models import classify_severity
from cascade_engine.config import EngineSettings
from cascade_engine.errors import ValidationError
from cascade_engine.graph.relations import REFERENCE_RULES, ReferenceRule, rules_for_tables
from cascade_engine.models.issues import CleanupMethod, CleanupResult, IssueSeverity, OrphanIssue
from cascade_engine.models.snapshot import SnapshotKind
from cascade_engine.recovery.snapshots import SnapshotStore
from cascade_engine.state.repository import RecordRepository, serialize_row

logger = logging.getLogger(__name__)

_SAMPLE_SIZE = 10
_KNOWN_TABLES = frozenset(rule.table for rule in REFERENCE_RULES)


def rule_for(issue_id: str) -> ReferenceRule:
    for rule in REFERENCE_RULES:
        if rule.issue_id == issue_id:
            return rule
    raise ValidationError(f"No reference rule for issue {issue_id}")


class OrphanCleanupEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: EngineSettings,
        snapshots: SnapshotStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._snapshots = snapshots

    @staticmethod
    def _validate_collections(collections: list[str] | None) -> None:
        if collections is None:
            return
        unknown = sorted(set(collections) - _KNOWN_TABLES)
        if unknown:
            raise ValidationError(
                f"Unknown collections: {', '.join(unknown)}",
                details={"allowed": sorted(_KNOWN_TABLES)},
            )

    async def scan(self, collections: list[str] | None = None) -> list[OrphanIssue]:
        """Return orphan issues sorted by id.  Read-only."""
        self._validate_collections(collections)
        async with self._session_factory() as session:
            return await self.scan_in(session, collections)

    async def scan_in(self, session: AsyncSession, collections: list[str] | None = None) -> list[OrphanIssue]:
        records = RecordRepository(session)
        issues: list[OrphanIssue] = []
        for rule in rules_for_tables(collections):
            count = await records.count_dangling(rule.table, rule.column, rule.owner_table)
            if not count:
                continue
            sample = await records.dangling_ids(rule.table, rule.column, rule.owner_table, limit=_SAMPLE_SIZE)
            issues.append(
                OrphanIssue(
                    id=rule.issue_id,
                    table=rule.table,
                    field=rule.column,
                    owner_table=rule.owner_table,
                    count=count,
                    severity=classify_severity(count, self._settings),
                    cleanup_method=rule.method,
                    description=f"{count} {rule.table} row(s) reference missing {rule.owner_table} via {rule.column}",
                    sample_ids=sample,
                )
            )

        # An owner table that is itself corrupted raises its dependents' severity.
        corrupted = {issue.table for issue in issues}
        for issue in issues:
            if issue.owner_table in corrupted and issue.severity.rank < IssueSeverity.MEDIUM.rank:
                issue.severity = IssueSeverity.MEDIUM
            issue.can_auto_fix = issue.severity.rank < IssueSeverity.HIGH.rank

        issues.sort(key=lambda i: i.id)
        return issues

    async def cleanup(
        self,
        *,
        collections: list[str] | None = None,
        issue_ids: list[str] | None = None,
        dry_run: bool = False,
        batch_size: int | None = None,
        create_backup: bool = True,
    ) -> CleanupResult:
        """Clean orphaned references.

        Without *issue_ids* only auto-fixable issues are processed and
        high-severity ones are counted as skipped.  Explicit *issue_ids*
        may include high-severity issues.
        """
        size = batch_size or self._settings.default_batch_size
        if size > self._settings.max_batch_size:
            raise ValidationError(f"batch_size {size} exceeds maximum {self._settings.max_batch_size}")

        issues = await self.scan(collections)
        result = CleanupResult(dry_run=dry_run, issues=issues)

        if issue_ids is not None:
            by_id = {issue.id: issue for issue in issues}
            selected = [by_id[i] for i in issue_ids if i in by_id]
            for missing in sorted(set(issue_ids) - by_id.keys()):
                result.errors.append(f"{missing}: no such issue")
        else:
            selected = [issue for issue in issues if issue.can_auto_fix]
            for issue in issues:
                if not issue.can_auto_fix:
                    result.skipped += issue.count
                    logger.warning("Skipping %s (%s severity) in automated sweep", issue.id, issue.severity.value)

        if dry_run:
            result.by_issue = {issue.id: issue.count for issue in selected}
            return result

        pending: dict[str, list[str]] = {}
        async with self._session_factory() as session:
            records = RecordRepository(session)
            for issue in selected:
                rule = rule_for(issue.id)
                pending[issue.id] = await records.dangling_ids(rule.table, rule.column, rule.owner_table)

        if create_backup and self._snapshots is not None and any(pending.values()):
            result.backup_snapshot_id = await self._backup(selected, pending)

        for issue in selected:
            rule = rule_for(issue.id)
            ids = pending.get(issue.id, [])
            cleaned = 0
            for start in range(0, len(ids), size):
                chunk = ids[start : start + size]
                try:
                    async with self._session_factory() as session, session.begin():
                        records = RecordRepository(session)
                        if rule.method is CleanupMethod.NULLIFY:
                            affected = await records.nullify_dangling(rule.table, rule.column, rule.owner_table, chunk)
                        else:
                            affected = await records.delete_dangling(rule.table, rule.column, rule.owner_table, chunk)
                except SQLAlchemyError as exc:
                    logger.error("Cleanup batch for %s failed: %s", issue.id, exc)
                    result.errors.append(f"{issue.id}: {exc}")
                    break
                cleaned += affected
                result.skipped += len(chunk) - affected
                result.batches += 1
            result.by_issue[issue.id] = cleaned
            result.cleaned += cleaned

        logger.info(
            "Orphan cleanup: cleaned=%d skipped=%d errors=%d batches=%d",
            result.cleaned,
            result.skipped,
            len(result.errors),
            result.batches,
        )
        return result

    async def _backup(self, selected: list[OrphanIssue], pending: dict[str, list[str]]) -> str:
        payload: dict[str, dict[str, dict]] = {}
        async with self._session_factory() as session:
            records = RecordRepository(session)
            for issue in selected:
                rows = await records.fetch_where_in(issue.table, "id", pending.get(issue.id, []))
                bucket = payload.setdefault(issue.table, {})
                for row in rows:
                    bucket[row["id"]] = serialize_row(row)
        info = await self._snapshots.capture(
            kind=SnapshotKind.PRE_CLEANUP,
            payload={table: list(rows.values()) for table, rows in payload.items() if rows},
        )
        return info.snapshot_id
