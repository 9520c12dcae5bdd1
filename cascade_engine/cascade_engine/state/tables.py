"""SQLAlchemy 2.0 ORM table definitions for the cadenza state store.

Domain tables hold the conservatory records the cascade engine operates
on.  References between them are plain string columns managed by the
application, not database foreign keys, so a dangling reference is
representable and the orphan scanner can find it.

The engine's own bookkeeping lives in ``deletion_snapshots`` and
``audit_log``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: uses JSONB on PostgreSQL, plain JSON on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all cadenza tables."""


# ---------------------------------------------------------------------------
# People
# ---------------------------------------------------------------------------


class StudentTable(Base):
    __tablename__ = "students"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class TeacherTable(Base):
    __tablename__ = "teachers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    instrument: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Lessons and attendance
# ---------------------------------------------------------------------------


class LessonTable(Base):
    """Individual instrument lessons.  ``scheduled`` lessons are hard dependents."""

    __tablename__ = "lessons"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    student_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    teacher_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="scheduled")
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_lessons_student", "student_id"),
        Index("ix_lessons_teacher", "teacher_id"),
    )


class AttendanceTable(Base):
    __tablename__ = "attendance"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    lesson_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    student_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="present")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_attendance_lesson", "lesson_id"),
        Index("ix_attendance_student", "student_id"),
    )


# ---------------------------------------------------------------------------
# Orchestras and rehearsals
# ---------------------------------------------------------------------------


class OrchestraTable(Base):
    __tablename__ = "orchestras"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    conductor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    member_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class OrchestraMemberTable(Base):
    __tablename__ = "orchestra_members"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    orchestra_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    student_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_orchestra_members_orchestra", "orchestra_id"),
        Index("ix_orchestra_members_student", "student_id"),
    )


class RehearsalTable(Base):
    __tablename__ = "rehearsals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    orchestra_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_rehearsals_orchestra", "orchestra_id"),)


class RehearsalAttendanceTable(Base):
    __tablename__ = "rehearsal_attendance"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    rehearsal_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    student_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="present")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_rehearsal_attendance_rehearsal", "rehearsal_id"),
        Index("ix_rehearsal_attendance_student", "student_id"),
    )


# ---------------------------------------------------------------------------
# Theory classes
# ---------------------------------------------------------------------------


class TheoryClassTable(Base):
    __tablename__ = "theory_classes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    teacher_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_theory_classes_teacher", "teacher_id"),)


class TheoryEnrollmentTable(Base):
    __tablename__ = "theory_enrollments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    theory_class_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    student_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_theory_enrollments_class", "theory_class_id"),
        Index("ix_theory_enrollments_student", "student_id"),
    )


# ---------------------------------------------------------------------------
# Bagrut (matriculation), documents, payments
# ---------------------------------------------------------------------------


class BagrutTable(Base):
    __tablename__ = "bagruts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    student_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    teacher_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="in_progress")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_bagruts_student", "student_id"),
        Index("ix_bagruts_teacher", "teacher_id"),
    )


class DocumentTable(Base):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    student_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    filename: Mapped[str] = mapped_column(String(512), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_documents_student", "student_id"),)


class PaymentTable(Base):
    """Payments keep their row when a student is deleted; only the reference is cleared."""

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    student_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_payments_student", "student_id"),)


# ---------------------------------------------------------------------------
# Engine bookkeeping
# ---------------------------------------------------------------------------


class DeletionSnapshotTable(Base):
    """Time-boxed serialized copy of records, consumed at most once.

    ``payload_json`` maps table name to a list of row dicts.
    ``parent_snapshot_id`` links a post-rollback snapshot to the snapshot
    it restored, forming an append-only chain.
    """

    __tablename__ = "deletion_snapshots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    operation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    target_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    target_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    parent_snapshot_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "kind IN ('pre_deletion','post_rollback','pre_repair','pre_cleanup')",
            name="ck_deletion_snapshots_kind",
        ),
        Index("ix_deletion_snapshots_target", "target_type", "target_id"),
        Index("ix_deletion_snapshots_expires", "expires_at"),
    )


class AuditLogTable(Base):
    """Append-only audit log with tamper-evidence via hash chaining.

    ``entry_hash`` is a SHA-256 digest of the entry's content fields and
    ``previous_hash`` links to the preceding entry's hash.
    """

    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    operation: Mapped[str] = mapped_column(String(128), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(256), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(32), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("ix_audit_created", "created_at"),
        Index("ix_audit_actor", "actor_id"),
        Index("ix_audit_operation", "operation"),
        Index("ix_audit_entity", "entity_type", "entity_id"),
        Index("ix_audit_seq", "seq", unique=True),
    )


DOMAIN_TABLES: dict[str, type[Base]] = {
    cls.__tablename__: cls
    for cls in (
        StudentTable,
        TeacherTable,
        LessonTable,
        AttendanceTable,
        OrchestraTable,
        OrchestraMemberTable,
        RehearsalTable,
        RehearsalAttendanceTable,
        TheoryClassTable,
        TheoryEnrollmentTable,
        BagrutTable,
        DocumentTable,
        PaymentTable,
    )
}
