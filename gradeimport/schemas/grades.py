from typing import Optional

from pydantic import BaseModel, Field

from gradeimport.schemas.roster import EvaluationDef


class GradeCell(BaseModel):
    evaluation_id: int
    value: Optional[float] = None


class GradeMatrixRow(BaseModel):
    student_id: int
    code: Optional[str] = None
    display_name: str
    grades: list[GradeCell] = Field(default_factory=list)


class GradeMatrix(BaseModel):
    evaluations: list[EvaluationDef] = Field(default_factory=list)
    students: list[GradeMatrixRow] = Field(default_factory=list)


class GradeWrite(BaseModel):
    student_id: int
    evaluation_id: int
    value: Optional[float] = None


class GradeMatrixWrite(BaseModel):
    period_id: int
    subject_id: int
    course_id: int
    parallel_id: Optional[int] = None
    grades: list[GradeWrite] = Field(default_factory=list)
