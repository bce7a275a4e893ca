from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from gradeimport.db.base_class import Base


class Grade(Base):
    __tablename__ = "grades"

    id = Column(Integer, primary_key=True, index=True)

    student_id = Column(Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    evaluation_id = Column(Integer, ForeignKey("evaluations.id", ondelete="CASCADE"), nullable=False, index=True)

    # NULL means "no grade yet"; otherwise within GRADE_MIN..GRADE_MAX
    value = Column(Float, nullable=True)
    updated_at = Column(DateTime, nullable=False)

    # set when the last write came from a bulk import
    source_draft_id = Column(String(32), nullable=True)

    __table_args__ = (
        UniqueConstraint("student_id", "evaluation_id", name="uq_grade_student_evaluation"),
    )

    student = relationship("Student", back_populates="grades")
