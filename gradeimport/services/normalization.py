"""
Normalization layer: one canonical shape for every payload crossing a boundary.

Upstream services (and older versions of this one) answer with several
payload layouts. Each kind of payload has an ordered table of
``Shape(name, detect, extract)`` entries; the FIRST shape whose marker fields
are present wins, and the order below is part of the contract:

    preview results   envelope > summary_with_series > canonical > legacy_flat > bare_array
    commit results    envelope > summary_with_series > canonical > legacy_flat
    roster / evals    envelope > paginated > legacy_flat > bare_array
    mappings          canonical > legacy_flat

``envelope`` means ``{"data": ...}`` or ``{"result": ...}``; it is unwrapped
once and the rest of the table is tried on the inner value. A payload no
shape recognizes raises ``UnrecognizedPayload`` instead of being guessed at.
Optional fields default to None or empty collections.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from gradeimport.core.errors import StorageError
from gradeimport.schemas.imports import (
    EVALUATION_PREFIX,
    FIELD_OBSERVATION,
    FIELD_STUDENT,
    ColumnMapping,
    CommitResult,
    MappingConfig,
    PreviewResult,
    PreviewRow,
    PreviewValue,
    RowError,
    StructuralError,
)
from gradeimport.schemas.roster import EvaluationDef, RosterStudent

logger = logging.getLogger(__name__)

ENVELOPE_KEYS = ("data", "result")


class UnrecognizedPayload(StorageError):
    pass


@dataclass(frozen=True)
class Shape:
    name: str
    detect: Callable[[Any], bool]
    extract: Callable[[Any], Any]


def reconcile(payload: Any, shapes: Sequence[Shape], what: str) -> Any:
    for i, shape in enumerate(shapes):
        if not shape.detect(payload):
            continue
        if shape.name == "envelope":
            inner = _unwrap(payload)
            return reconcile(inner, [s for s in shapes[i + 1:] if s.name != "envelope"], what)
        logger.debug("%s payload matched shape %s", what, shape.name)
        return shape.extract(payload)

    raise UnrecognizedPayload(
        f"Unrecognized {what} payload shape",
        expected=[s.name for s in shapes],
    )


# ---------------------------------------------------------------------------
# small coercion helpers (tolerant, never raise)
# ---------------------------------------------------------------------------

def _first(d: dict, *keys: str) -> Any:
    for k in keys:
        if k in d and d[k] is not None:
            return d[k]
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _is_envelope(p: Any) -> bool:
    return isinstance(p, dict) and any(isinstance(p.get(k), (dict, list)) for k in ENVELOPE_KEYS)


def _unwrap(p: dict) -> Any:
    for k in ENVELOPE_KEYS:
        if isinstance(p.get(k), (dict, list)):
            return p[k]
    return p


def _has_list(*keys: str) -> Callable[[Any], bool]:
    return lambda p: isinstance(p, dict) and any(isinstance(p.get(k), list) for k in keys)


def _has_key(*keys: str) -> Callable[[Any], bool]:
    return lambda p: isinstance(p, dict) and any(k in p for k in keys)


def _is_list(p: Any) -> bool:
    return isinstance(p, list)


def _has_summary(marker: Optional[str] = None) -> Callable[[Any], bool]:
    def detect(p: Any) -> bool:
        if not isinstance(p, dict) or not isinstance(p.get("summary"), dict):
            return False
        if marker is None:
            return isinstance(p.get("series"), list) or isinstance(p.get("rows"), list)
        return marker in p["summary"]

    return detect


# ---------------------------------------------------------------------------
# structural error lists ({row_index, message} / {fila, mensaje} / bare strings)
# ---------------------------------------------------------------------------

def _structural_errors(raw: Any) -> list[StructuralError]:
    out = []
    for e in _as_list(raw):
        if isinstance(e, str):
            out.append(StructuralError(row_index=None, message=e))
        elif isinstance(e, dict):
            message = _as_text(_first(e, "message", "mensaje", "detail")) or "Unknown error"
            out.append(StructuralError(row_index=_as_int(_first(e, "row_index", "fila")), message=message))
    return out


def _row_errors(raw: Any) -> list[RowError]:
    # commit errors must point at a row; entries without one are dropped loudly
    out = []
    for e in _structural_errors(raw):
        if e.row_index is None:
            logger.warning("dropping commit error without row index: %s", e.message)
            continue
        out.append(RowError(row_index=e.row_index, message=e.message))
    return out


def _observations(raw: Any) -> list[str]:
    return [str(o) for o in _as_list(raw) if o is not None and str(o).strip()]


# ---------------------------------------------------------------------------
# preview results
# ---------------------------------------------------------------------------

def _preview_values(row: dict) -> list[PreviewValue]:
    values = row.get("values")
    if isinstance(values, list):
        out = []
        for v in values:
            if not isinstance(v, dict):
                continue
            eval_id = _as_int(_first(v, "evaluation_id", "evaluacion_id"))
            if eval_id is None:
                continue
            out.append(PreviewValue(evaluation_id=eval_id, value=_as_float(v.get("value")), error=_as_text(v.get("error"))))
        return out

    # legacy: {"notas": {"<evaluation id>": value}}
    notas = row.get("notas")
    if isinstance(notas, dict):
        out = []
        for key, value in notas.items():
            eval_id = _as_int(key)
            if eval_id is not None:
                out.append(PreviewValue(evaluation_id=eval_id, value=_as_float(value)))
        return out
    return []


def _preview_row(raw: Any, position: int) -> PreviewRow:
    row = raw if isinstance(raw, dict) else {}
    errors = []
    for e in _as_list(_first(row, "row_errors", "errores")):
        code = e.get("code") if isinstance(e, dict) else e
        if code is not None and str(code) not in errors:
            errors.append(str(code))

    row_index = _as_int(_first(row, "row_index", "fila"))
    status = _as_text(_first(row, "status", "estado"))
    if status not in ("valid", "invalid"):
        status = "invalid" if errors else "valid"

    return PreviewRow(
        row_index=position if row_index is None else row_index,
        student_identifier=_as_text(_first(row, "student_identifier", "identificador")),
        student_id=_as_int(_first(row, "student_id", "estudiante_id")),
        display_name=_as_text(_first(row, "display_name", "estudiante")),
        values=_preview_values(row),
        row_errors=errors,
        observation=_as_text(_first(row, "observation", "observacion")),
        status=status,
    )


def _build_preview(rows_raw: Any, counts: dict, observations: Any, errors: Any) -> PreviewResult:
    rows = [_preview_row(r, i) for i, r in enumerate(_as_list(rows_raw))]
    invalid = sum(1 for r in rows if r.status == "invalid")

    valid_count = _as_int(_first(counts, "valid_count", "validos"))
    invalid_count = _as_int(_first(counts, "invalid_count", "invalidos"))
    return PreviewResult(
        rows=rows,
        valid_count=len(rows) - invalid if valid_count is None else valid_count,
        invalid_count=invalid if invalid_count is None else invalid_count,
        observations=_observations(observations),
        errors=_structural_errors(errors),
    )


def _preview_from_summary(p: dict) -> PreviewResult:
    summary = p["summary"]
    rows = p["series"] if isinstance(p.get("series"), list) else p.get("rows")
    return _build_preview(
        rows,
        summary,
        _first(p, "observations") or summary.get("observations"),
        _first(p, "errors") or summary.get("errors"),
    )


def _preview_from_canonical(p: dict) -> PreviewResult:
    return _build_preview(p["rows"], p, p.get("observations"), p.get("errors"))


def _preview_from_legacy(p: dict) -> PreviewResult:
    return _build_preview(p["filas"], p, p.get("observaciones"), p.get("errores"))


def _preview_from_array(p: list) -> PreviewResult:
    return _build_preview(p, {}, None, None)


PREVIEW_SHAPES: tuple[Shape, ...] = (
    Shape("envelope", _is_envelope, _unwrap),
    Shape("summary_with_series", _has_summary(), _preview_from_summary),
    Shape("canonical", _has_list("rows"), _preview_from_canonical),
    Shape("legacy_flat", _has_list("filas"), _preview_from_legacy),
    Shape("bare_array", _is_list, _preview_from_array),
)


def normalize_preview(payload: Any) -> PreviewResult:
    return reconcile(payload, PREVIEW_SHAPES, "preview")


# ---------------------------------------------------------------------------
# commit results
# ---------------------------------------------------------------------------

def _build_commit(committed: Any, rejected: Any, resumed: Any, observations: Any, errors: Any) -> CommitResult:
    row_errors = _row_errors(errors)
    rejected_count = _as_int(rejected)
    return CommitResult(
        committed_count=_as_int(committed) or 0,
        rejected_count=len(row_errors) if rejected_count is None else rejected_count,
        resumed_count=_as_int(resumed) or 0,
        observations=_observations(observations),
        errors=row_errors,
    )


def _commit_from_summary(p: dict) -> CommitResult:
    s = p["summary"]
    return _build_commit(
        s.get("committed_count"),
        s.get("rejected_count"),
        s.get("resumed_count"),
        _first(p, "observations") or s.get("observations"),
        _first(p, "errors") or s.get("errors"),
    )


def _commit_from_canonical(p: dict) -> CommitResult:
    return _build_commit(
        p.get("committed_count"), p.get("rejected_count"), p.get("resumed_count"), p.get("observations"), p.get("errors")
    )


def _commit_from_legacy(p: dict) -> CommitResult:
    # legacy servers split writes into inserted vs updated; both are commits
    committed = (_as_int(p.get("insertados")) or 0) + (_as_int(p.get("actualizados")) or 0)
    return _build_commit(committed, p.get("rechazados"), None, p.get("observaciones"), p.get("errores"))


COMMIT_SHAPES: tuple[Shape, ...] = (
    Shape("envelope", _is_envelope, _unwrap),
    Shape("summary_with_series", _has_summary("committed_count"), _commit_from_summary),
    Shape("canonical", _has_key("committed_count"), _commit_from_canonical),
    Shape("legacy_flat", _has_key("insertados", "actualizados"), _commit_from_legacy),
)


def normalize_commit(payload: Any) -> CommitResult:
    return reconcile(payload, COMMIT_SHAPES, "commit")


# ---------------------------------------------------------------------------
# collections consumed from collaborators (roster, evaluation definitions)
# ---------------------------------------------------------------------------

def _collection_shapes(*domain_keys: str) -> tuple[Shape, ...]:
    def from_page(p: dict) -> list:
        return p["items"] if isinstance(p.get("items"), list) else p["results"]

    def from_legacy(p: dict) -> list:
        return next(p[k] for k in domain_keys if isinstance(p.get(k), list))

    return (
        Shape("envelope", _is_envelope, _unwrap),
        Shape("paginated", _has_list("items", "results"), from_page),
        Shape("legacy_flat", _has_list(*domain_keys), from_legacy),
        Shape("bare_array", _is_list, list),
    )


ROSTER_SHAPES = _collection_shapes("students", "estudiantes")
EVALUATION_SHAPES = _collection_shapes("evaluations", "evaluaciones")


def _display_name(item: dict, student_id: int) -> str:
    name = _as_text(_first(item, "display_name", "full_name", "name"))
    if name:
        return name

    person = _first(item, "persona", "person")
    person = person if isinstance(person, dict) else item
    last = _as_text(_first(person, "last_names", "apellidos"))
    first = _as_text(_first(person, "first_names", "nombres"))
    parts = [p for p in (last, first) if p]
    return " ".join(parts) if parts else f"Student {student_id}"


def _roster_entry(item: Any) -> Optional[RosterStudent]:
    if not isinstance(item, dict):
        return None
    student_id = _as_int(_first(item, "student_id", "estudiante_id", "id"))
    if student_id is None:
        return None
    return RosterStudent(
        student_id=student_id,
        code=_as_text(_first(item, "code", "codigo", "codigo_rude")),
        display_name=_display_name(item, student_id),
    )


def _evaluation_entry(item: Any) -> Optional[EvaluationDef]:
    if not isinstance(item, dict):
        return None
    eval_id = _as_int(_first(item, "evaluation_id", "evaluacion_id", "id"))
    if eval_id is None:
        return None
    return EvaluationDef(
        id=eval_id,
        name=_as_text(_first(item, "name", "nombre")) or f"Evaluation {eval_id}",
        weight=_as_float(_first(item, "weight", "peso")),
    )


def _entries(items: list, build: Callable[[Any], Any], what: str) -> list:
    out = []
    for item in items:
        entry = build(item)
        if entry is None:
            logger.warning("skipping %s entry without a usable id: %r", what, item)
            continue
        out.append(entry)
    return out


def normalize_roster(payload: Any) -> list[RosterStudent]:
    return _entries(reconcile(payload, ROSTER_SHAPES, "roster"), _roster_entry, "roster")


def normalize_evaluations(payload: Any) -> list[EvaluationDef]:
    return _entries(reconcile(payload, EVALUATION_SHAPES, "evaluation"), _evaluation_entry, "evaluation")


# ---------------------------------------------------------------------------
# column mappings supplied by the caller
# ---------------------------------------------------------------------------

def _mapping_from_canonical(p: dict) -> MappingConfig:
    columns = []
    for entry in p["columns"]:
        if isinstance(entry, dict):
            column, field = entry.get("column"), entry.get("field")
        elif isinstance(entry, (list, tuple)) and len(entry) == 2:
            column, field = entry
        else:
            continue
        if column is not None and field is not None:
            columns.append(ColumnMapping(column=str(column), field=str(field).strip()))
    return MappingConfig(columns=columns)


def _mapping_from_legacy(p: dict) -> MappingConfig:
    columns = []
    student = _as_text(_first(p, "student", "identificador_estudiante"))
    if student:
        columns.append(ColumnMapping(column=student, field=FIELD_STUDENT))

    evaluations = _first(p, "evaluations", "evaluaciones")
    if isinstance(evaluations, dict):
        for eval_id, column in evaluations.items():
            if _as_text(column):
                columns.append(ColumnMapping(column=str(column), field=f"{EVALUATION_PREFIX}{eval_id}"))

    observation = _as_text(_first(p, "observation", "observacion"))
    if observation:
        columns.append(ColumnMapping(column=observation, field=FIELD_OBSERVATION))
    return MappingConfig(columns=columns)


MAPPING_SHAPES: tuple[Shape, ...] = (
    Shape("canonical", _has_list("columns"), _mapping_from_canonical),
    Shape("legacy_flat", _has_key("student", "identificador_estudiante"), _mapping_from_legacy),
)


def normalize_mapping(payload: Any) -> MappingConfig:
    return reconcile(payload, MAPPING_SHAPES, "mapping")
