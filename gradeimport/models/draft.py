import enum

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint

from gradeimport.db.base_class import Base


class DraftStatus(str, enum.Enum):
    RECEIVED = "RECEIVED"
    PREVIEWED = "PREVIEWED"
    CONFIRMED = "CONFIRMED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = (DraftStatus.CONFIRMED.value, DraftStatus.EXPIRED.value)


class ImportDraft(Base):
    __tablename__ = "import_drafts"

    id = Column(String(32), primary_key=True)

    period_id = Column(Integer, nullable=False, index=True)
    subject_id = Column(Integer, nullable=False)
    course_id = Column(Integer, nullable=False)
    parallel_id = Column(Integer, nullable=True)

    filename = Column(String(255), nullable=False)
    blob_key = Column(String(255), nullable=False)

    status = Column(String(20), nullable=False, default=DraftStatus.RECEIVED.value, index=True)
    last_mapping = Column(JSON(none_as_null=True), nullable=True)

    created_at = Column(DateTime, nullable=False)
    previewed_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)

    # exclusive confirm lease
    lease_token = Column(String(32), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)


class CommitMarker(Base):
    """One row per grade cell durably written by a draft's confirm."""

    __tablename__ = "import_commit_markers"

    id = Column(Integer, primary_key=True, index=True)
    draft_id = Column(String(32), ForeignKey("import_drafts.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id = Column(Integer, nullable=False)
    evaluation_id = Column(Integer, nullable=False)
    row_index = Column(Integer, nullable=False)
    committed_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("draft_id", "student_id", "evaluation_id", name="uq_marker_draft_student_evaluation"),
    )
