"""create grade import tables

Revision ID: 1f6c2b9d4e70
Revises:
Create Date: 2026-10-17 10:12:41.302118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '1f6c2b9d4e70'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "students",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("first_names", sa.String(length=255), nullable=False),
        sa.Column("last_names", sa.String(length=255), nullable=False),
    )
    op.create_index("ix_students_id", "students", ["id"])
    op.create_index("ix_students_code", "students", ["code"], unique=True)

    op.create_table(
        "enrollments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("students.id", ondelete="CASCADE"), nullable=False),
        sa.Column("period_id", sa.Integer(), nullable=False),
        sa.Column("course_id", sa.Integer(), nullable=False),
        sa.Column("parallel_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("student_id", "period_id", "course_id", name="uq_enrollments_student_period_course"),
    )
    op.create_index("ix_enrollments_id", "enrollments", ["id"])
    op.create_index("ix_enrollments_student_id", "enrollments", ["student_id"])
    op.create_index("ix_enrollments_period_id", "enrollments", ["period_id"])
    op.create_index("ix_enrollments_course_id", "enrollments", ["course_id"])

    op.create_table(
        "evaluations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("period_id", sa.Integer(), nullable=False),
        sa.Column("subject_id", sa.Integer(), nullable=False),
        sa.Column("course_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("weight", sa.Float(), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False),
    )
    op.create_index("ix_evaluations_id", "evaluations", ["id"])
    op.create_index("ix_evaluations_period_id", "evaluations", ["period_id"])
    op.create_index("ix_evaluations_subject_id", "evaluations", ["subject_id"])
    op.create_index("ix_evaluations_course_id", "evaluations", ["course_id"])

    op.create_table(
        "grades",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("students.id", ondelete="CASCADE"), nullable=False),
        sa.Column("evaluation_id", sa.Integer(), sa.ForeignKey("evaluations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("value", sa.Float(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("source_draft_id", sa.String(length=32), nullable=True),
        sa.UniqueConstraint("student_id", "evaluation_id", name="uq_grade_student_evaluation"),
    )
    op.create_index("ix_grades_id", "grades", ["id"])
    op.create_index("ix_grades_student_id", "grades", ["student_id"])
    op.create_index("ix_grades_evaluation_id", "grades", ["evaluation_id"])

    op.create_table(
        "import_drafts",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("period_id", sa.Integer(), nullable=False),
        sa.Column("subject_id", sa.Integer(), nullable=False),
        sa.Column("course_id", sa.Integer(), nullable=False),
        sa.Column("parallel_id", sa.Integer(), nullable=True),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("blob_key", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("last_mapping", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("previewed_at", sa.DateTime(), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("lease_token", sa.String(length=32), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_import_drafts_period_id", "import_drafts", ["period_id"])
    op.create_index("ix_import_drafts_status", "import_drafts", ["status"])

    op.create_table(
        "import_commit_markers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "draft_id", sa.String(length=32), sa.ForeignKey("import_drafts.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("evaluation_id", sa.Integer(), nullable=False),
        sa.Column("row_index", sa.Integer(), nullable=False),
        sa.Column("committed_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("draft_id", "student_id", "evaluation_id", name="uq_marker_draft_student_evaluation"),
    )
    op.create_index("ix_import_commit_markers_id", "import_commit_markers", ["id"])
    op.create_index("ix_import_commit_markers_draft_id", "import_commit_markers", ["draft_id"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("import_commit_markers")
    op.drop_table("import_drafts")
    op.drop_table("grades")
    op.drop_table("evaluations")
    op.drop_table("enrollments")
    op.drop_table("students")
