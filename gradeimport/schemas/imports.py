from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from gradeimport.schemas.roster import EvaluationDef, Scope

# Field tags a spreadsheet column can be mapped to
FIELD_STUDENT = "student"
FIELD_OBSERVATION = "observation"
FIELD_IGNORE = "ignore"
EVALUATION_PREFIX = "evaluation:"


class DraftCreated(BaseModel):
    draft_id: str
    status: str
    filename: str
    created_at: datetime


class ColumnMapping(BaseModel):
    column: str
    field: str  # "student" | "evaluation:<id>" | "observation" | "ignore"


class MappingConfig(BaseModel):
    columns: list[ColumnMapping] = Field(default_factory=list)


class DraftRead(BaseModel):
    draft_id: str
    status: str
    scope: Scope
    filename: str
    created_at: datetime
    last_mapping: Optional[MappingConfig] = None

    # what the operator needs to build a mapping
    columns: list[str] = Field(default_factory=list)
    evaluations: list[EvaluationDef] = Field(default_factory=list)


class StructuralError(BaseModel):
    row_index: Optional[int] = None
    message: str


class PreviewValue(BaseModel):
    evaluation_id: int
    value: Optional[float] = None
    error: Optional[str] = None


class PreviewRow(BaseModel):
    row_index: int
    student_identifier: Optional[str] = None
    student_id: Optional[int] = None
    display_name: Optional[str] = None
    values: list[PreviewValue] = Field(default_factory=list)
    row_errors: list[str] = Field(default_factory=list)
    observation: Optional[str] = None
    status: str = "valid"  # "valid" | "invalid"


class PreviewResult(BaseModel):
    rows: list[PreviewRow] = Field(default_factory=list)
    valid_count: int = 0
    invalid_count: int = 0
    observations: list[str] = Field(default_factory=list)
    errors: list[StructuralError] = Field(default_factory=list)


class RowError(BaseModel):
    row_index: int
    message: str


class CommitResult(BaseModel):
    committed_count: int = 0
    rejected_count: int = 0
    resumed_count: int = 0  # accepted rows already written by an earlier attempt
    observations: list[str] = Field(default_factory=list)
    errors: list[RowError] = Field(default_factory=list)
