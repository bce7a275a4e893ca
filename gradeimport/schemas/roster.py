from typing import Optional

from pydantic import BaseModel


class Scope(BaseModel):
    period_id: int
    subject_id: int
    course_id: int
    parallel_id: Optional[int] = None


class RosterStudent(BaseModel):
    """Canonical roster entry, whatever shape the roster collaborator answered with."""

    student_id: int
    code: Optional[str] = None
    display_name: str


class EvaluationDef(BaseModel):
    id: int
    name: str
    weight: Optional[float] = None
