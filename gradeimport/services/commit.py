"""
Commit engine: turns a previewed draft into grade writes, exactly once.

Policy: partial, resumable commit.

* Only one confirm per draft runs at a time. The lease is taken with a single
  conditional UPDATE, so it holds across worker processes sharing the DB.
* Validation is re-derived from the stored mapping and the raw file; a
  client-held preview is never trusted.
* Accepted rows are written in chunks. Each chunk upserts its grades and
  inserts a ``CommitMarker`` per (draft, student, evaluation) in one
  transaction. If a chunk fails, or the caller's timeout/cancellation hits
  between chunks, the error names exactly which rows are durably committed,
  the draft stays PREVIEWED, and a retry skips every cell that has a marker.
"""

import logging
import threading
import time
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gradeimport.core.clock import utcnow
from gradeimport.core.config import CONFIRM_CHUNK_SIZE, CONFIRM_LEASE_GRACE, CONFIRM_TIMEOUT_SECONDS
from gradeimport.core.errors import (
    AlreadyConfirmed,
    ConfirmTimeout,
    Conflict,
    DraftExpired,
    MappingNotSet,
    StorageError,
)
from gradeimport.models.draft import CommitMarker, DraftStatus, ImportDraft
from gradeimport.models.grade import Grade
from gradeimport.schemas.imports import CommitResult, MappingConfig
from gradeimport.services.blobs import FileBlobStore
from gradeimport.services.drafts import load_draft
from gradeimport.services.normalization import normalize_commit
from gradeimport.services.roster import RosterSource
from gradeimport.services.validation import RowOutcome, validate_draft

logger = logging.getLogger(__name__)


class CancellationToken:
    """Caller-side stop signal: explicit ``cancel()`` or an elapsed deadline."""

    def __init__(self, timeout_seconds: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout_seconds if timeout_seconds is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline


def _acquire_lease(db: Session, draft: ImportDraft, timeout_seconds: float, now: datetime) -> str:
    token = uuid.uuid4().hex
    expires = now + timedelta(seconds=timeout_seconds) + CONFIRM_LEASE_GRACE

    acquired = (
        db.query(ImportDraft)
        .filter(
            ImportDraft.id == draft.id,
            ImportDraft.status == DraftStatus.PREVIEWED.value,
            or_(ImportDraft.lease_token.is_(None), ImportDraft.lease_expires_at <= now),
        )
        .update(
            {ImportDraft.lease_token: token, ImportDraft.lease_expires_at: expires},
            synchronize_session=False,
        )
    )
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"Could not lock import draft: {e}") from e

    if acquired:
        return token

    db.refresh(draft)
    if draft.status == DraftStatus.CONFIRMED.value:
        raise AlreadyConfirmed(f"Import draft {draft.id} was already confirmed")
    if draft.status == DraftStatus.EXPIRED.value:
        raise DraftExpired(f"Import draft {draft.id} has expired; upload the file again")
    logger.warning("draft %s: concurrent confirm rejected", draft.id)
    raise Conflict(f"Import draft {draft.id} is already being confirmed")


def _release_lease(db: Session, draft_id: str, token: str) -> None:
    try:
        db.query(ImportDraft).filter(
            ImportDraft.id == draft_id, ImportDraft.lease_token == token
        ).update(
            {ImportDraft.lease_token: None, ImportDraft.lease_expires_at: None},
            synchronize_session=False,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        # the lease runs out on its own
        logger.warning("draft %s: could not release confirm lease", draft_id, exc_info=True)


def _committed_cells(db: Session, draft_id: str) -> set[tuple[int, int]]:
    rows = (
        db.query(CommitMarker.student_id, CommitMarker.evaluation_id)
        .filter(CommitMarker.draft_id == draft_id)
        .all()
    )
    return {(r.student_id, r.evaluation_id) for r in rows}


def _write_chunk(
    db: Session,
    draft_id: str,
    chunk: list[RowOutcome],
    committed: set[tuple[int, int]],
    now: datetime,
) -> None:
    student_ids = sorted({r.student_id for r in chunk})
    existing = {
        (g.student_id, g.evaluation_id): g
        for g in db.query(Grade).filter(Grade.student_id.in_(student_ids)).all()
    }

    for row in chunk:
        for eval_id, value, _error in row.cells:
            key = (row.student_id, eval_id)
            if key in committed:
                continue

            grade = existing.get(key)
            if grade is None:
                grade = Grade(student_id=row.student_id, evaluation_id=eval_id)
                db.add(grade)
                existing[key] = grade
            grade.value = value
            grade.updated_at = now
            grade.source_draft_id = draft_id

            db.add(
                CommitMarker(
                    draft_id=draft_id,
                    student_id=row.student_id,
                    evaluation_id=eval_id,
                    row_index=row.row_index,
                    committed_at=now,
                )
            )


def confirm(
    db: Session,
    blobs: FileBlobStore,
    roster_source: RosterSource,
    draft_id: str,
    timeout_seconds: Optional[float] = None,
    token: Optional[CancellationToken] = None,
    now: Optional[datetime] = None,
    chunk_size: int = CONFIRM_CHUNK_SIZE,
) -> CommitResult:
    now = now or utcnow()
    timeout_seconds = CONFIRM_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
    token = token or CancellationToken(timeout_seconds)
    chunk_size = max(chunk_size, 1)

    draft = load_draft(db, blobs, draft_id, now)
    if draft.status == DraftStatus.CONFIRMED.value:
        raise AlreadyConfirmed(f"Import draft {draft_id} was already confirmed")
    if draft.status != DraftStatus.PREVIEWED.value or draft.last_mapping is None:
        raise MappingNotSet(f"Import draft {draft_id} has no previewed mapping; run a preview first")

    blob_key = draft.blob_key
    lease = _acquire_lease(db, draft, timeout_seconds, now)
    logger.info("draft %s: confirm started", draft_id)

    committed_rows: list[int] = []
    try:
        mapping = MappingConfig.model_validate(draft.last_mapping)
        outcome = validate_draft(draft, mapping, blobs, roster_source)
        if outcome.errors:
            raise MappingNotSet(
                "Stored mapping no longer applies to this draft: " + "; ".join(outcome.errors)
            )

        accepted = outcome.accepted_rows
        rejected = [r for r in outcome.rows if not r.accepted]

        committed = _committed_cells(db, draft_id)
        resumed = [r for r in accepted if all((r.student_id, e) in committed for e, _v, _err in r.cells)]
        resumed_rows = {r.row_index for r in resumed}
        pending = [r for r in accepted if r.row_index not in resumed_rows]

        for start in range(0, len(pending), chunk_size):
            if token.cancelled:
                logger.warning("draft %s: confirm stopped after %d rows", draft_id, len(committed_rows))
                raise ConfirmTimeout(
                    f"Confirm of {draft_id} was cancelled or timed out; "
                    f"{len(committed_rows)} row(s) committed, retry to finish",
                    committed_rows=sorted(committed_rows),
                )

            chunk = pending[start:start + chunk_size]
            try:
                _write_chunk(db, draft_id, chunk, committed, now)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.warning("draft %s: write failed after %d rows", draft_id, len(committed_rows), exc_info=True)
                raise StorageError(
                    f"Grade store write failed; {len(committed_rows)} row(s) committed, retry to finish",
                    committed_rows=sorted(committed_rows),
                ) from e

            committed_rows.extend(r.row_index for r in chunk)

        finished = (
            db.query(ImportDraft)
            .filter(ImportDraft.id == draft_id, ImportDraft.lease_token == lease)
            .update(
                {
                    ImportDraft.status: DraftStatus.CONFIRMED.value,
                    ImportDraft.confirmed_at: now,
                    ImportDraft.lease_token: None,
                    ImportDraft.lease_expires_at: None,
                },
                synchronize_session=False,
            )
        )
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(
                f"Grades were written but the draft could not be closed: {e}",
                committed_rows=sorted(committed_rows),
            ) from e
        if not finished:
            raise Conflict(f"Confirm lease on {draft_id} was lost; retry to finish")
    except Exception:
        _release_lease(db, draft_id, lease)
        raise

    # the raw file is only needed until the draft is closed
    blobs.delete(blob_key)

    observations = list(outcome.observations)
    if resumed:
        observations.append(f"{len(resumed)} row(s) were already committed by an earlier attempt")

    logger.info(
        "draft %s confirmed: %d committed (%d resumed), %d rejected",
        draft_id, len(accepted), len(resumed), len(rejected),
    )
    return normalize_commit(
        {
            "committed_count": len(accepted),
            "rejected_count": len(rejected),
            "resumed_count": len(resumed),
            "observations": observations,
            "errors": [{"row_index": r.row_index, "message": "; ".join(r.errors)} for r in rejected],
        }
    )
