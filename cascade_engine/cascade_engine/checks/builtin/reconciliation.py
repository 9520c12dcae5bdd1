"""Cross-collection reconciliation checks.

* ``member_counts``: ``orchestras.member_count`` must equal the number of
  ``orchestra_members`` rows for the orchestra.  Repair recomputes it.
* ``duplicate_memberships``: a student may appear at most once per
  orchestra and once per theory class.  Repair keeps the oldest row.
"""

from __future__ import annotations

from sqlalchemy import delete, func, select, update

from cascade_engine.checks.base import BaseIntegrityCheck
from cascade_engine.checks.models import CheckContext, CheckName, classify_severity
from cascade_engine.models.issues import IntegrityIssue, IssueSeverity
from cascade_engine.state.tables import Base, OrchestraMemberTable, OrchestraTable

# membership table -> (group column, member column)
MEMBERSHIP_TABLES: dict[str, tuple[str, str]] = {
    "orchestra_members": ("orchestra_id", "student_id"),
    "theory_enrollments": ("theory_class_id", "student_id"),
}


async def _actual_member_counts(context: CheckContext) -> dict[str, tuple[int, int]]:
    """Map orchestra id -> (stored, actual) for every mismatched orchestra."""
    actual = (
        select(OrchestraMemberTable.orchestra_id, func.count().label("n"))
        .group_by(OrchestraMemberTable.orchestra_id)
        .subquery()
    )
    stmt = (
        select(OrchestraTable.id, OrchestraTable.member_count, func.coalesce(actual.c.n, 0))
        .outerjoin(actual, actual.c.orchestra_id == OrchestraTable.id)
        .order_by(OrchestraTable.id)
    )
    rows = (await context.session.execute(stmt)).all()
    return {oid: (stored, int(n)) for oid, stored, n in rows if stored != n}


class MemberCountCheck(BaseIntegrityCheck):
    @property
    def name(self) -> CheckName:
        return CheckName.MEMBER_COUNTS

    async def execute(self, context: CheckContext) -> list[IntegrityIssue]:
        mismatched = await _actual_member_counts(context)
        if not mismatched:
            return []
        return [
            IntegrityIssue(
                id=f"{self.name.value}.orchestras.member_count",
                check=self.name.value,
                table="orchestras",
                field="member_count",
                severity=classify_severity(len(mismatched), context.settings),
                count=len(mismatched),
                description=f"{len(mismatched)} orchestra(s) with a stale member_count",
                fix="recompute",
                record_ids=sorted(mismatched),
                data={oid: {"stored": s, "actual": a} for oid, (s, a) in mismatched.items()},
            )
        ]

    async def repair(self, context: CheckContext, issue: IntegrityIssue) -> int:
        mismatched = await _actual_member_counts(context)
        for oid, (_, actual) in mismatched.items():
            await context.session.execute(update(OrchestraTable).where(OrchestraTable.id == oid).values(member_count=actual))
        return len(mismatched)


async def _duplicate_ids(context: CheckContext, table_name: str) -> list[str]:
    """Ids of every membership row except the oldest per (group, member)."""
    group_col, member_col = MEMBERSHIP_TABLES[table_name]
    t = Base.metadata.tables[table_name]
    stmt = (
        select(t.c.id, t.c[group_col], t.c[member_col])
        .where(t.c[group_col].is_not(None), t.c[member_col].is_not(None))
        .order_by(t.c[group_col], t.c[member_col], t.c.created_at, t.c.id)
    )
    seen: set[tuple[str, str]] = set()
    duplicates: list[str] = []
    for row_id, group, member in (await context.session.execute(stmt)).all():
        if (group, member) in seen:
            duplicates.append(row_id)
        else:
            seen.add((group, member))
    return sorted(duplicates)


class DuplicateMembershipCheck(BaseIntegrityCheck):
    @property
    def name(self) -> CheckName:
        return CheckName.DUPLICATE_MEMBERSHIPS

    async def execute(self, context: CheckContext) -> list[IntegrityIssue]:
        issues: list[IntegrityIssue] = []
        for table_name in sorted(MEMBERSHIP_TABLES):
            duplicates = await _duplicate_ids(context, table_name)
            if not duplicates:
                continue
            issues.append(
                IntegrityIssue(
                    id=f"{self.name.value}.{table_name}",
                    check=self.name.value,
                    table=table_name,
                    severity=max(
                        classify_severity(len(duplicates), context.settings),
                        IssueSeverity.MEDIUM,
                        key=lambda s: s.rank,
                    ),
                    count=len(duplicates),
                    description=f"{len(duplicates)} duplicate row(s) in {table_name}",
                    fix="delete",
                    record_ids=duplicates,
                )
            )
        return issues

    async def repair(self, context: CheckContext, issue: IntegrityIssue) -> int:
        duplicates = await _duplicate_ids(context, issue.table)
        if not duplicates:
            return 0
        t = Base.metadata.tables[issue.table]
        result = await context.session.execute(delete(t).where(t.c.id.in_(duplicates)))
        return result.rowcount or 0
