import logging
import math
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from gradeimport.core.clock import utcnow
from gradeimport.core.config import GRADE_MAX, GRADE_MIN
from gradeimport.core.errors import InvalidGrade, RowErrorCode
from gradeimport.models.grade import Grade
from gradeimport.schemas.grades import GradeMatrix, GradeWrite
from gradeimport.schemas.roster import Scope
from gradeimport.services.roster import RosterSource, load_evaluations, load_roster

logger = logging.getLogger(__name__)


def read_matrix(db: Session, roster_source: RosterSource, scope: Scope) -> GradeMatrix:
    """Roster x evaluations for a scope; cells without a stored grade are null."""
    roster = load_roster(roster_source, scope)
    evaluations = load_evaluations(roster_source, scope)

    stored: dict[tuple[int, int], Optional[float]] = {}
    if roster and evaluations:
        rows = (
            db.query(Grade.student_id, Grade.evaluation_id, Grade.value)
            .filter(
                Grade.student_id.in_([s.student_id for s in roster]),
                Grade.evaluation_id.in_([e.id for e in evaluations]),
            )
            .all()
        )
        stored = {(r.student_id, r.evaluation_id): r.value for r in rows}

    students = [
        {
            "student_id": s.student_id,
            "code": s.code,
            "display_name": s.display_name,
            "grades": [
                {"evaluation_id": e.id, "value": stored.get((s.student_id, e.id))}
                for e in evaluations
            ],
        }
        for s in roster
    ]
    return GradeMatrix(evaluations=evaluations, students=students)


def write_matrix(
    db: Session,
    roster_source: RosterSource,
    scope: Scope,
    cells: list[GradeWrite],
    now: Optional[datetime] = None,
) -> GradeMatrix:
    """Replace the given cells (last write wins) and return the fresh matrix.

    Every cell is checked before anything is written; one bad cell rejects
    the whole request.
    """
    now = now or utcnow()
    roster_ids = {s.student_id for s in load_roster(roster_source, scope)}
    evaluation_ids = {e.id for e in load_evaluations(roster_source, scope)}

    for cell in cells:
        if cell.student_id not in roster_ids:
            raise InvalidGrade(
                RowErrorCode.UNKNOWN_STUDENT,
                f"Student {cell.student_id} is not on the roster for this scope",
                student_id=cell.student_id,
            )
        if cell.evaluation_id not in evaluation_ids:
            raise InvalidGrade(
                "UnknownEvaluation",
                f"Evaluation {cell.evaluation_id} is not defined for this scope",
                evaluation_id=cell.evaluation_id,
            )
        if cell.value is not None and (
            not math.isfinite(cell.value) or cell.value < GRADE_MIN or cell.value > GRADE_MAX
        ):
            raise InvalidGrade(
                RowErrorCode.INVALID_RANGE,
                f"Grade must be between {GRADE_MIN:g} and {GRADE_MAX:g}",
                student_id=cell.student_id,
                evaluation_id=cell.evaluation_id,
            )

    if cells:
        existing = {
            (g.student_id, g.evaluation_id): g
            for g in db.query(Grade)
            .filter(
                Grade.student_id.in_(sorted({c.student_id for c in cells})),
                Grade.evaluation_id.in_(sorted({c.evaluation_id for c in cells})),
            )
            .all()
        }
        for cell in cells:
            grade = existing.get((cell.student_id, cell.evaluation_id))
            if grade is None:
                grade = Grade(student_id=cell.student_id, evaluation_id=cell.evaluation_id)
                db.add(grade)
                existing[(cell.student_id, cell.evaluation_id)] = grade
            grade.value = cell.value
            grade.updated_at = now
            grade.source_draft_id = None

        try:
            db.commit()
        except Exception:
            db.rollback()
            raise

    logger.info("unitary write: %d cell(s) for course=%s subject=%s", len(cells), scope.course_id, scope.subject_id)
    return read_matrix(db, roster_source, scope)
