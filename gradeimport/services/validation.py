import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from gradeimport.core.clock import utcnow
from gradeimport.core.config import GRADE_MAX, GRADE_MIN
from gradeimport.core.errors import AlreadyConfirmed, Conflict, DraftExpired, RowErrorCode, StorageError
from gradeimport.models.draft import DraftStatus, ImportDraft
from gradeimport.schemas.imports import (
    EVALUATION_PREFIX,
    FIELD_IGNORE,
    FIELD_OBSERVATION,
    FIELD_STUDENT,
    MappingConfig,
    PreviewResult,
)
from gradeimport.schemas.roster import EvaluationDef, RosterStudent
from gradeimport.services.blobs import FileBlobStore
from gradeimport.services.drafts import draft_scope, load_open_draft
from gradeimport.services.normalization import UnrecognizedPayload, normalize_mapping, normalize_preview
from gradeimport.services.roster import RosterSource, load_evaluations, load_roster
from gradeimport.services.spreadsheet import Table, UnreadableFile, read_table

logger = logging.getLogger(__name__)

# plain decimal numbers only: no thousands separators, exponents or "nan"
NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d+)?|\.\d+)$")
EVALUATION_ID_RE = re.compile(r"\d+", re.ASCII)


@dataclass
class ResolvedMapping:
    student_column: str
    evaluation_columns: list[tuple[int, str]]  # (evaluation id, column) in mapping order
    observation_column: Optional[str] = None


@dataclass
class RowOutcome:
    row_index: int
    identifier: Optional[str]
    student_id: Optional[int] = None
    display_name: Optional[str] = None
    cells: list[tuple[int, Optional[float], Optional[str]]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    observation: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return not self.errors

    def add_error(self, code: RowErrorCode) -> None:
        if code.value not in self.errors:
            self.errors.append(code.value)


@dataclass
class ValidationOutcome:
    rows: list[RowOutcome] = field(default_factory=list)
    observations: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def accepted_rows(self) -> list[RowOutcome]:
        return [r for r in self.rows if r.accepted]

    def to_payload(self) -> dict:
        rows = [
            {
                "row_index": r.row_index,
                "student_identifier": r.identifier,
                "student_id": r.student_id,
                "display_name": r.display_name,
                "values": [{"evaluation_id": e, "value": v, "error": err} for e, v, err in r.cells],
                "row_errors": list(r.errors),
                "observation": r.observation,
                "status": "valid" if r.accepted else "invalid",
            }
            for r in self.rows
        ]
        valid = len(self.accepted_rows)
        return {
            "rows": rows,
            "valid_count": valid,
            "invalid_count": len(self.rows) - valid,
            "observations": list(self.observations),
            "errors": [{"row_index": None, "message": m} for m in self.errors],
        }


def parse_score(text: str) -> tuple[Optional[float], Optional[RowErrorCode]]:
    """Blank -> (None, None); otherwise a value in range or the reason it is not one."""
    text = (text or "").strip()
    if not text:
        return None, None
    if not NUMBER_RE.match(text):
        return None, RowErrorCode.INVALID_FORMAT
    value = float(text)
    if value < GRADE_MIN or value > GRADE_MAX:
        return None, RowErrorCode.INVALID_RANGE
    return value, None


def resolve_mapping(
    mapping: MappingConfig,
    columns: list[str],
    evaluations: list[EvaluationDef],
) -> tuple[Optional[ResolvedMapping], list[str], list[str]]:
    """Check a mapping against the file header and the scope's evaluations.

    Returns (resolved mapping or None, structural errors, observations).
    """
    errors: list[str] = []
    observations: list[str] = []

    known_evaluations = {e.id for e in evaluations}
    header = set(columns)
    seen_columns: set[str] = set()
    student_columns: list[str] = []
    evaluation_columns: list[tuple[int, str]] = []
    mapped_evaluations: set[int] = set()
    observation_column = None

    for entry in mapping.columns:
        column, tag = entry.column.strip(), entry.field.strip()

        if tag == FIELD_IGNORE:
            continue
        if column not in header:
            errors.append(f"Column '{column}' is not in the file")
            continue
        if column in seen_columns:
            errors.append(f"Column '{column}' is mapped more than once")
            continue
        seen_columns.add(column)

        if tag == FIELD_STUDENT:
            student_columns.append(column)
        elif tag == FIELD_OBSERVATION:
            observation_column = column
        elif tag.startswith(EVALUATION_PREFIX) and EVALUATION_ID_RE.fullmatch(tag[len(EVALUATION_PREFIX):].strip()):
            eval_id = int(tag[len(EVALUATION_PREFIX):].strip())
            if eval_id in mapped_evaluations:
                errors.append(f"Evaluation {eval_id} is mapped to more than one column")
            elif eval_id not in known_evaluations:
                observations.append(
                    f"Column '{column}' maps to evaluation {eval_id}, which is not defined for this scope; column ignored"
                )
            else:
                mapped_evaluations.add(eval_id)
                evaluation_columns.append((eval_id, column))
        else:
            errors.append(f"Column '{column}' has unknown field '{tag}'")

    if not student_columns:
        errors.append("No column is mapped to the student identifier")
    elif len(student_columns) > 1:
        errors.append("Only one column can be mapped to the student identifier")
    if not evaluation_columns and not errors:
        errors.append("No mapped column targets an evaluation of this scope")

    for e in evaluations:
        if e.id not in mapped_evaluations:
            observations.append(f"Evaluation '{e.name}' has no column mapped; its grades are left unchanged")

    if errors:
        return None, errors, observations
    return ResolvedMapping(student_columns[0], evaluation_columns, observation_column), errors, observations


def validate_rows(
    table: Table,
    mapping: MappingConfig,
    roster: list[RosterStudent],
    evaluations: list[EvaluationDef],
) -> ValidationOutcome:
    """Pure validation pass: same inputs, same outcome, no I/O."""
    resolved, errors, observations = resolve_mapping(mapping, table.columns, evaluations)
    if resolved is None:
        return ValidationOutcome(rows=[], observations=observations, errors=errors)

    by_code = {s.code.casefold(): s for s in roster if s.code}
    by_id = {str(s.student_id): s for s in roster}
    claimed: set[int] = set()  # students with an accepted row
    seen: set[int] = set()  # students with any row

    rows = []
    for index, record in enumerate(table.rows):
        identifier = record.get(resolved.student_column, "").strip() or None
        row = RowOutcome(row_index=index, identifier=identifier)

        cell_errors: list[RowErrorCode] = []
        blanks = 0
        for eval_id, column in resolved.evaluation_columns:
            raw = record.get(column, "")
            value, code = parse_score(raw)
            if code is not None:
                cell_errors.append(code)
            elif value is None:
                blanks += 1
            row.cells.append((eval_id, value, code.value if code else None))

        student = None
        if identifier:
            student = by_code.get(identifier.casefold()) or by_id.get(identifier)
        if student is None:
            row.add_error(RowErrorCode.UNKNOWN_STUDENT)
        else:
            row.display_name = student.display_name
            seen.add(student.student_id)
            if student.student_id in claimed:
                # an earlier accepted row owns the student; this row never
                # carries the student id so (student, evaluation) stays unique
                row.add_error(RowErrorCode.DUPLICATE_STUDENT)
            else:
                row.student_id = student.student_id
                if not cell_errors:
                    claimed.add(student.student_id)

        for code in cell_errors:
            row.add_error(code)

        if resolved.observation_column:
            row.observation = record.get(resolved.observation_column, "").strip() or None
        if row.observation is None and blanks:
            row.observation = f"{blanks} blank value(s) will be stored as empty"

        rows.append(row)

    if not rows:
        observations.append("The file has no data rows")
    missing = sum(1 for s in roster if s.student_id not in seen)
    if rows and missing:
        observations.append(f"{missing} student(s) on the roster have no row in the file")

    return ValidationOutcome(rows=rows, observations=observations, errors=[])


def validate_draft(
    draft: ImportDraft,
    mapping: MappingConfig,
    blobs: FileBlobStore,
    roster_source: RosterSource,
) -> ValidationOutcome:
    """Re-derive the validation of a draft from its raw file and the current roster."""
    raw = blobs.get(draft.blob_key)
    try:
        table = read_table(raw, draft.filename)
    except UnreadableFile as e:
        return ValidationOutcome(errors=[str(e)])

    scope = draft_scope(draft)
    return validate_rows(
        table,
        mapping,
        load_roster(roster_source, scope),
        load_evaluations(roster_source, scope),
    )


def preview(
    db: Session,
    blobs: FileBlobStore,
    roster_source: RosterSource,
    draft_id: str,
    mapping_payload,
    now: Optional[datetime] = None,
) -> PreviewResult:
    now = now or utcnow()
    draft = load_open_draft(db, blobs, draft_id, now)

    try:
        mapping = normalize_mapping(mapping_payload)
    except UnrecognizedPayload as e:
        return normalize_preview({"rows": [], "errors": [{"row_index": None, "message": e.message}]})

    outcome = validate_draft(draft, mapping, blobs, roster_source)
    result = normalize_preview(outcome.to_payload())

    if outcome.errors:
        # not a successful preview: the stored mapping and status stay as they were
        logger.info("draft %s preview rejected: %s", draft_id, "; ".join(outcome.errors))
        return result

    updated = (
        db.query(ImportDraft)
        .filter(
            ImportDraft.id == draft_id,
            ImportDraft.status.in_([DraftStatus.RECEIVED.value, DraftStatus.PREVIEWED.value]),
            or_(ImportDraft.lease_token.is_(None), ImportDraft.lease_expires_at <= now),
        )
        .update(
            {
                ImportDraft.last_mapping: mapping.model_dump(),
                ImportDraft.status: DraftStatus.PREVIEWED.value,
                ImportDraft.previewed_at: now,
            },
            synchronize_session=False,
        )
    )
    try:
        db.commit()
    except Exception as e:
        db.rollback()
        raise StorageError(f"Could not save the mapping: {e}") from e

    if not updated:
        # lost a race with confirm (or expiry) between load and update
        db.refresh(draft)
        if draft.status == DraftStatus.CONFIRMED.value:
            raise AlreadyConfirmed(f"Import draft {draft_id} was already confirmed")
        if draft.status == DraftStatus.EXPIRED.value:
            raise DraftExpired(f"Import draft {draft_id} has expired; upload the file again")
        raise Conflict(f"Import draft {draft_id} is being confirmed")

    logger.info(
        "draft %s previewed: %d valid, %d invalid",
        draft_id, result.valid_count, result.invalid_count,
    )
    return result
