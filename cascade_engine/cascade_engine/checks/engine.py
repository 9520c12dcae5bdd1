"""Integrity validator and repairer.

The :class:`IntegrityValidator` runs every registered check against the
state store and aggregates the findings.  :meth:`IntegrityValidator.repair`
snapshots the rows the selected issues touch, then fixes each issue in its
own transaction.  One issue failing never blocks the others; the result
reports per-issue success.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cascade_engine.checks.base import BaseIntegrityCheck
from cascade_engine.checks.models import CheckContext, CheckName, Timer, summarize
from cascade_engine.checks.orphans import OrphanCleanupEngine
from cascade_engine.checks.registry import CheckRegistry
from cascade_engine.config import EngineSettings
from cascade_engine.errors import CascadeError
from cascade_engine.models.issues import (
    IntegrityIssue,
    IssueSeverity,
    RepairOutcome,
    RepairResult,
    ValidationResult,
)
from cascade_engine.models.snapshot import SnapshotKind
from cascade_engine.recovery.snapshots import SnapshotStore
from cascade_engine.state.repository import RecordRepository, serialize_row

logger = logging.getLogger(__name__)


class IntegrityValidator:
    """Runs integrity checks and repairs their findings.

    Parameters
    ----------
    session_factory:
        Factory for sessions against the state store.
    settings:
        Engine settings (severity thresholds).
    registry:
        Pre-populated check registry.  Use :func:`create_default_validator`
        for the built-in battery.
    snapshots:
        Store for pre-repair backups.  When ``None`` no backup is taken.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: EngineSettings,
        registry: CheckRegistry | None = None,
        snapshots: SnapshotStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._registry = registry or CheckRegistry()
        self._snapshots = snapshots

    @property
    def registry(self) -> CheckRegistry:
        return self._registry

    def register(self, check: BaseIntegrityCheck) -> None:
        self._registry.register(check)

    async def validate(self) -> ValidationResult:
        timer = Timer()
        timer.start()

        checks = self._registry.get_all()
        issues: list[IntegrityIssue] = []
        async with self._session_factory() as session:
            context = CheckContext(session=session, settings=self._settings)
            for check in checks:
                logger.debug("Running integrity check: %s", check.name.value)
                try:
                    issues.extend(await check.execute(context))
                except (SQLAlchemyError, CascadeError) as exc:
                    logger.error("Integrity check %s raised: %s", check.name.value, exc)
                    issues.append(
                        IntegrityIssue(
                            id=f"{check.name.value}.error",
                            check=check.name.value,
                            table="-",
                            severity=IssueSeverity.HIGH,
                            description=f"Check {check.name.value} failed to run: {exc}",
                            fix="none",
                        )
                    )

        result = summarize(issues, [c.name.value for c in checks], duration_ms=timer.elapsed_ms())
        logger.info(
            "Integrity validation: status=%s passed=%d failed=%d issues=%d",
            result.overall_status.value,
            result.passed,
            result.failed,
            len(result.issues),
        )
        return result

    async def repair(
        self,
        issue_ids: list[str] | None = None,
        *,
        create_backup: bool = True,
        dry_run: bool = False,
    ) -> RepairResult:
        """Repair *issue_ids*.

        With ``None`` every repairable issue below high severity is repaired;
        high and critical issues are reported in ``skipped`` and only run
        when selected by id.
        """
        current = await self.validate()
        repairable = [i for i in current.issues if i.fix != "none"]
        result = RepairResult(dry_run=dry_run)

        if issue_ids is None:
            selected = [i for i in repairable if i.severity.rank < IssueSeverity.HIGH.rank]
            result.skipped = [i.id for i in repairable if i.severity.rank >= IssueSeverity.HIGH.rank]
            for skipped in result.skipped:
                logger.warning("Skipping %s in unattended repair; select it by id", skipped)
        else:
            by_id = {i.id: i for i in repairable}
            selected = [by_id[i] for i in issue_ids if i in by_id]
            for missing in issue_ids:
                if missing not in by_id:
                    result.outcomes.append(RepairOutcome(issue_id=missing, success=False, error="no such issue"))
                    result.failed += 1

        if dry_run:
            result.outcomes.extend(
                RepairOutcome(issue_id=i.id, success=True, records_affected=i.count) for i in selected
            )
            return result

        if create_backup and self._snapshots is not None and selected:
            result.backup_snapshot_id = await self._backup(selected)

        for issue in selected:
            check = self._registry.get(CheckName(issue.check))
            if check is None:
                result.outcomes.append(RepairOutcome(issue_id=issue.id, success=False, error="check not registered"))
                result.failed += 1
                continue
            try:
                async with self._session_factory() as session, session.begin():
                    affected = await check.repair(CheckContext(session=session, settings=self._settings), issue)
            except (SQLAlchemyError, CascadeError) as exc:
                logger.error("Repair of %s failed: %s", issue.id, exc)
                result.outcomes.append(RepairOutcome(issue_id=issue.id, success=False, error=str(exc)))
                result.failed += 1
                continue
            result.outcomes.append(RepairOutcome(issue_id=issue.id, success=True, records_affected=affected))
            result.repaired += 1

        logger.info("Integrity repair: repaired=%d failed=%d", result.repaired, result.failed)
        return result

    async def _backup(self, issues: list[IntegrityIssue]) -> str:
        wanted: dict[str, set[str]] = {}
        for issue in issues:
            wanted.setdefault(issue.table, set()).update(issue.record_ids)

        payload: dict[str, list[dict]] = {}
        async with self._session_factory() as session:
            records = RecordRepository(session)
            for table, ids in sorted(wanted.items()):
                rows = await records.fetch_where_in(table, "id", sorted(ids))
                if rows:
                    payload[table] = [serialize_row(row) for row in rows]
        info = await self._snapshots.capture(kind=SnapshotKind.PRE_REPAIR, payload=payload)
        return info.snapshot_id


def create_default_validator(
    session_factory: async_sessionmaker[AsyncSession],
    settings: EngineSettings,
    *,
    snapshots: SnapshotStore | None = None,
    scanner: OrphanCleanupEngine | None = None,
) -> IntegrityValidator:
    """Create an :class:`IntegrityValidator` with every built-in check registered."""
    from cascade_engine.checks.builtin import (
        DuplicateMembershipCheck,
        EnumDomainCheck,
        MemberCountCheck,
        ReferentialCheck,
        RequiredFieldsCheck,
    )

    validator = IntegrityValidator(session_factory, settings, snapshots=snapshots)
    validator.register(RequiredFieldsCheck())
    validator.register(EnumDomainCheck())
    validator.register(MemberCountCheck())
    validator.register(DuplicateMembershipCheck())
    validator.register(ReferentialCheck(scanner or OrphanCleanupEngine(session_factory, settings, snapshots)))
    return validator
