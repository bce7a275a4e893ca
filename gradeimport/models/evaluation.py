from sqlalchemy import Column, Float, Integer, String

from gradeimport.db.base_class import Base


class Evaluation(Base):
    __tablename__ = "evaluations"

    id = Column(Integer, primary_key=True, index=True)
    period_id = Column(Integer, nullable=False, index=True)
    subject_id = Column(Integer, nullable=False, index=True)
    course_id = Column(Integer, nullable=False, index=True)

    name = Column(String(255), nullable=False)
    weight = Column(Float, nullable=True)
    position = Column(Integer, nullable=False, default=0)
