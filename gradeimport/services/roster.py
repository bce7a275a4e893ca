"""
Roster and evaluation-definition lookups.

``SqlRoster`` answers from the local enrollment/evaluation tables the way an
upstream academic service would: roster as a bare array of person records and
evaluations as a paginated envelope. Callers never use those payloads
directly; they go through ``load_roster`` / ``load_evaluations`` which pass
them through the normalization layer.
"""

from typing import Any, Protocol

from sqlalchemy import or_
from sqlalchemy.orm import Session

from gradeimport.models.enrollment import Enrollment
from gradeimport.models.evaluation import Evaluation
from gradeimport.models.student import Student
from gradeimport.schemas.roster import EvaluationDef, RosterStudent, Scope
from gradeimport.services.normalization import normalize_evaluations, normalize_roster


class RosterSource(Protocol):
    def students(self, scope: Scope) -> Any: ...

    def evaluations(self, scope: Scope) -> Any: ...


class SqlRoster:
    def __init__(self, db: Session):
        self.db = db

    def students(self, scope: Scope) -> list[dict]:
        q = (
            self.db.query(Student)
            .join(Enrollment, Enrollment.student_id == Student.id)
            .filter(
                Enrollment.period_id == scope.period_id,
                Enrollment.course_id == scope.course_id,
            )
        )
        if scope.parallel_id is not None:
            # enrollments without a parallel belong to every parallel of the course
            q = q.filter(
                or_(Enrollment.parallel_id == scope.parallel_id, Enrollment.parallel_id.is_(None))
            )

        return [
            {
                "id": s.id,
                "codigo": s.code,
                "persona": {"nombres": s.first_names, "apellidos": s.last_names},
            }
            for s in q.order_by(Student.last_names.asc(), Student.first_names.asc(), Student.id.asc()).all()
        ]

    def evaluations(self, scope: Scope) -> dict:
        rows = (
            self.db.query(Evaluation)
            .filter(
                Evaluation.period_id == scope.period_id,
                Evaluation.subject_id == scope.subject_id,
                Evaluation.course_id == scope.course_id,
            )
            .order_by(Evaluation.position.asc(), Evaluation.id.asc())
            .all()
        )
        items = [{"id": e.id, "nombre": e.name, "peso": e.weight} for e in rows]
        return {"items": items, "total": len(items), "page": 1, "page_size": len(items)}


def load_roster(source: RosterSource, scope: Scope) -> list[RosterStudent]:
    return normalize_roster(source.students(scope))


def load_evaluations(source: RosterSource, scope: Scope) -> list[EvaluationDef]:
    return normalize_evaluations(source.evaluations(scope))
