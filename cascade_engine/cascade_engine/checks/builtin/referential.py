"""Referential consistency, backed by the orphan scanner."""

from __future__ import annotations

from cascade_engine.checks.base import BaseIntegrityCheck
from cascade_engine.checks.models import CheckContext, CheckName
from cascade_engine.checks.orphans import OrphanCleanupEngine, rule_for
from cascade_engine.models.issues import CleanupMethod, IntegrityIssue
from cascade_engine.state.repository import RecordRepository


class ReferentialCheck(BaseIntegrityCheck):
    """Reports each orphan issue as an integrity issue and repairs it in place."""

    def __init__(self, scanner: OrphanCleanupEngine) -> None:
        self._scanner = scanner

    @property
    def name(self) -> CheckName:
        return CheckName.REFERENTIAL

    async def execute(self, context: CheckContext) -> list[IntegrityIssue]:
        orphans = await self._scanner.scan_in(context.session)
        issues: list[IntegrityIssue] = []
        for orphan in orphans:
            ids = await RecordRepository(context.session).dangling_ids(orphan.table, orphan.field, orphan.owner_table)
            issues.append(
                IntegrityIssue(
                    id=f"{self.name.value}.{orphan.id}",
                    check=self.name.value,
                    table=orphan.table,
                    field=orphan.field,
                    severity=orphan.severity,
                    count=orphan.count,
                    description=orphan.description,
                    fix=orphan.cleanup_method.value,
                    record_ids=ids,
                    data={"owner_table": orphan.owner_table},
                )
            )
        return issues

    async def repair(self, context: CheckContext, issue: IntegrityIssue) -> int:
        rule = rule_for(f"{issue.table}.{issue.field}")
        records = RecordRepository(context.session)
        ids = await records.dangling_ids(rule.table, rule.column, rule.owner_table)
        if rule.method is CleanupMethod.NULLIFY:
            return await records.nullify_dangling(rule.table, rule.column, rule.owner_table, ids)
        return await records.delete_dangling(rule.table, rule.column, rule.owner_table, ids)
