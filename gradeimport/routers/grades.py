from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from gradeimport.core.deps import get_db, get_roster
from gradeimport.core.errors import ScopeIncomplete
from gradeimport.schemas.grades import GradeMatrix, GradeMatrixWrite
from gradeimport.schemas.roster import Scope
from gradeimport.services.grades import read_matrix, write_matrix
from gradeimport.services.roster import RosterSource

router = APIRouter()


def _scope(period_id, subject_id, course_id, parallel_id) -> Scope:
    missing = [
        name
        for name, value in (("period_id", period_id), ("subject_id", subject_id), ("course_id", course_id))
        if value is None
    ]
    if missing:
        raise ScopeIncomplete(f"Scope is incomplete; missing {', '.join(missing)}", missing=missing)
    return Scope(period_id=period_id, subject_id=subject_id, course_id=course_id, parallel_id=parallel_id)


@router.get("/unitary", response_model=GradeMatrix)
def get_unitary_grades(
    period_id: Optional[int] = Query(None),
    subject_id: Optional[int] = Query(None),
    course_id: Optional[int] = Query(None),
    parallel_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    roster: RosterSource = Depends(get_roster),
):
    return read_matrix(db, roster, _scope(period_id, subject_id, course_id, parallel_id))


@router.put(
    "/unitary",
    response_model=GradeMatrix,
    responses={422: {"description": "InvalidRange / UnknownStudent / UnknownEvaluation"}},
)
def save_unitary_grades(
    payload: GradeMatrixWrite,
    db: Session = Depends(get_db),
    roster: RosterSource = Depends(get_roster),
):
    scope = _scope(payload.period_id, payload.subject_id, payload.course_id, payload.parallel_id)
    return write_matrix(db, roster, scope, payload.grades)
