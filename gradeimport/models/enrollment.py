from sqlalchemy import Column, DateTime, ForeignKey, Integer, UniqueConstraint, func
from sqlalchemy.orm import relationship

from gradeimport.db.base_class import Base


class Enrollment(Base):
    """Roster membership: a student belongs to a course (and parallel) in a period."""

    __tablename__ = "enrollments"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(
        Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    period_id = Column(Integer, nullable=False, index=True)
    course_id = Column(Integer, nullable=False, index=True)
    parallel_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "student_id", "period_id", "course_id", name="uq_enrollments_student_period_course"
        ),
    )

    student = relationship("Student", back_populates="enrollments")
