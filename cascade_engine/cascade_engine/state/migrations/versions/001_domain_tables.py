"""Create the conservatory domain tables.

References between tables are plain indexed string columns; no foreign
keys are declared so dangling references remain representable.

Revision ID: 001
Revises:
Create Date: 2026-09-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _id() -> sa.Column:
    return sa.Column("id", sa.String(64), primary_key=True)


def _ref(name: str) -> sa.Column:
    return sa.Column(name, sa.String(64), nullable=True)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False)


def upgrade() -> None:
    op.create_table(
        "students",
        _id(),
        sa.Column("first_name", sa.String(128), nullable=True),
        sa.Column("last_name", sa.String(128), nullable=True),
        sa.Column("email", sa.String(256), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        _created_at(),
    )
    op.create_table(
        "teachers",
        _id(),
        sa.Column("first_name", sa.String(128), nullable=True),
        sa.Column("last_name", sa.String(128), nullable=True),
        sa.Column("email", sa.String(256), nullable=True),
        sa.Column("instrument", sa.String(64), nullable=True),
        _created_at(),
    )

    op.create_table(
        "lessons",
        _id(),
        _ref("student_id"),
        _ref("teacher_id"),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_lessons_student", "lessons", ["student_id"])
    op.create_index("ix_lessons_teacher", "lessons", ["teacher_id"])

    op.create_table(
        "attendance",
        _id(),
        _ref("lesson_id"),
        _ref("student_id"),
        sa.Column("status", sa.String(32), nullable=False),
        _created_at(),
    )
    op.create_index("ix_attendance_lesson", "attendance", ["lesson_id"])
    op.create_index("ix_attendance_student", "attendance", ["student_id"])

    op.create_table(
        "orchestras",
        _id(),
        sa.Column("name", sa.String(256), nullable=False),
        _ref("conductor_id"),
        sa.Column("member_count", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _created_at(),
    )
    op.create_table(
        "orchestra_members",
        _id(),
        _ref("orchestra_id"),
        _ref("student_id"),
        _created_at(),
    )
    op.create_index("ix_orchestra_members_orchestra", "orchestra_members", ["orchestra_id"])
    op.create_index("ix_orchestra_members_student", "orchestra_members", ["student_id"])

    op.create_table(
        "rehearsals",
        _id(),
        _ref("orchestra_id"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_rehearsals_orchestra", "rehearsals", ["orchestra_id"])

    op.create_table(
        "rehearsal_attendance",
        _id(),
        _ref("rehearsal_id"),
        _ref("student_id"),
        sa.Column("status", sa.String(32), nullable=False),
        _created_at(),
    )
    op.create_index("ix_rehearsal_attendance_rehearsal", "rehearsal_attendance", ["rehearsal_id"])
    op.create_index("ix_rehearsal_attendance_student", "rehearsal_attendance", ["student_id"])

    op.create_table(
        "theory_classes",
        _id(),
        sa.Column("name", sa.String(256), nullable=False),
        _ref("teacher_id"),
        _created_at(),
    )
    op.create_index("ix_theory_classes_teacher", "theory_classes", ["teacher_id"])

    op.create_table(
        "theory_enrollments",
        _id(),
        _ref("theory_class_id"),
        _ref("student_id"),
        _created_at(),
    )
    op.create_index("ix_theory_enrollments_class", "theory_enrollments", ["theory_class_id"])
    op.create_index("ix_theory_enrollments_student", "theory_enrollments", ["student_id"])

    op.create_table(
        "bagruts",
        _id(),
        _ref("student_id"),
        _ref("teacher_id"),
        sa.Column("status", sa.String(32), nullable=False),
        _created_at(),
    )
    op.create_index("ix_bagruts_student", "bagruts", ["student_id"])
    op.create_index("ix_bagruts_teacher", "bagruts", ["teacher_id"])

    op.create_table(
        "documents",
        _id(),
        _ref("student_id"),
        sa.Column("filename", sa.String(512), nullable=False),
        _created_at(),
    )
    op.create_index("ix_documents_student", "documents", ["student_id"])

    op.create_table(
        "payments",
        _id(),
        _ref("student_id"),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        _created_at(),
    )
    op.create_index("ix_payments_student", "payments", ["student_id"])


def downgrade() -> None:
    for table in (
        "payments",
        "documents",
        "bagruts",
        "theory_enrollments",
        "theory_classes",
        "rehearsal_attendance",
        "rehearsals",
        "orchestra_members",
        "orchestras",
        "attendance",
        "lessons",
        "teachers",
        "students",
    ):
        op.drop_table(table)
