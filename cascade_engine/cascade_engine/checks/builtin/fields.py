"""Field-level checks: required values and enumerated domains."""

from __future__ import annotations

from sqlalchemy import delete, select, update

from cascade_engine.checks.base import BaseIntegrityCheck
from cascade_engine.checks.models import CheckContext, CheckName, classify_severity
from cascade_engine.models.issues import IntegrityIssue, IssueSeverity
from cascade_engine.state.tables import Base

# (table, column) pairs that must never be NULL.  Offending rows are deleted.
REQUIRED_FIELDS: tuple[tuple[str, str], ...] = (
    ("lessons", "student_id"),
    ("orchestra_members", "orchestra_id"),
    ("orchestra_members", "student_id"),
    ("students", "first_name"),
    ("students", "last_name"),
    ("theory_enrollments", "student_id"),
    ("theory_enrollments", "theory_class_id"),
)

# table -> (column, allowed values, default applied on repair)
ENUM_DOMAINS: dict[str, tuple[str, frozenset[str], str]] = {
    "attendance": ("status", frozenset({"present", "absent", "late", "excused"}), "present"),
    "bagruts": ("status", frozenset({"in_progress", "completed", "failed"}), "in_progress"),
    "lessons": ("status", frozenset({"scheduled", "completed", "cancelled"}), "scheduled"),
    "rehearsal_attendance": ("status", frozenset({"present", "absent", "late", "excused"}), "present"),
    "students": ("status", frozenset({"active", "inactive", "graduated"}), "active"),
}


class RequiredFieldsCheck(BaseIntegrityCheck):
    @property
    def name(self) -> CheckName:
        return CheckName.REQUIRED_FIELDS

    async def execute(self, context: CheckContext) -> list[IntegrityIssue]:
        issues: list[IntegrityIssue] = []
        for table_name, column in REQUIRED_FIELDS:
            t = Base.metadata.tables[table_name]
            result = await context.session.execute(select(t.c.id).where(t.c[column].is_(None)).order_by(t.c.id))
            ids = list(result.scalars().all())
            if not ids:
                continue
            issues.append(
                IntegrityIssue(
                    id=f"{self.name.value}.{table_name}.{column}",
                    check=self.name.value,
                    table=table_name,
                    field=column,
                    severity=max(
                        classify_severity(len(ids), context.settings),
                        IssueSeverity.MEDIUM,
                        key=lambda s: s.rank,
                    ),
                    count=len(ids),
                    description=f"{len(ids)} {table_name} row(s) missing required {column}",
                    fix="delete",
                    record_ids=ids,
                )
            )
        return issues

    async def repair(self, context: CheckContext, issue: IntegrityIssue) -> int:
        t = Base.metadata.tables[issue.table]
        result = await context.session.execute(delete(t).where(t.c[issue.field].is_(None)))
        return result.rowcount or 0


class EnumDomainCheck(BaseIntegrityCheck):
    @property
    def name(self) -> CheckName:
        return CheckName.ENUM_DOMAINS

    async def execute(self, context: CheckContext) -> list[IntegrityIssue]:
        issues: list[IntegrityIssue] = []
        for table_name, (column, allowed, default) in sorted(ENUM_DOMAINS.items()):
            t = Base.metadata.tables[table_name]
            stmt = select(t.c.id, t.c[column]).where(t.c[column].not_in(sorted(allowed))).order_by(t.c.id)
            rows = (await context.session.execute(stmt)).all()
            if not rows:
                continue
            bad_values = sorted({str(value) for _, value in rows})
            issues.append(
                IntegrityIssue(
                    id=f"{self.name.value}.{table_name}.{column}",
                    check=self.name.value,
                    table=table_name,
                    field=column,
                    severity=IssueSeverity.LOW,
                    count=len(rows),
                    description=f"{len(rows)} {table_name} row(s) with invalid {column}: {', '.join(bad_values)}",
                    fix="set_default",
                    record_ids=[row_id for row_id, _ in rows],
                    data={"default": default, "invalid_values": bad_values},
                )
            )
        return issues

    async def repair(self, context: CheckContext, issue: IntegrityIssue) -> int:
        column, allowed, default = ENUM_DOMAINS[issue.table]
        t = Base.metadata.tables[issue.table]
        stmt = update(t).where(t.c[column].not_in(sorted(allowed))).values({column: default})
        result = await context.session.execute(stmt)
        return result.rowcount or 0
