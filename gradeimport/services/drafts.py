import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from gradeimport.core.clock import utcnow
from gradeimport.core.config import DRAFT_RETENTION
from gradeimport.core.errors import AlreadyConfirmed, Conflict, DraftExpired, DraftNotFound
from gradeimport.models.draft import TERMINAL_STATUSES, DraftStatus, ImportDraft
from gradeimport.schemas.roster import Scope
from gradeimport.services.blobs import FileBlobStore

logger = logging.getLogger(__name__)


def new_draft_id() -> str:
    return uuid.uuid4().hex


def draft_scope(draft: ImportDraft) -> Scope:
    return Scope(
        period_id=draft.period_id,
        subject_id=draft.subject_id,
        course_id=draft.course_id,
        parallel_id=draft.parallel_id,
    )


def is_stale(draft: ImportDraft, now: datetime) -> bool:
    return draft.status not in TERMINAL_STATUSES and draft.created_at + DRAFT_RETENTION <= now


def lease_is_live(draft: ImportDraft, now: datetime) -> bool:
    return draft.lease_token is not None and draft.lease_expires_at is not None and draft.lease_expires_at > now


def _expire(db: Session, blobs: FileBlobStore, draft: ImportDraft) -> None:
    draft.status = DraftStatus.EXPIRED.value
    draft.lease_token = None
    draft.lease_expires_at = None
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    blobs.delete(draft.blob_key)
    logger.info("draft %s expired", draft.id)


def load_draft(
    db: Session,
    blobs: FileBlobStore,
    draft_id: str,
    now: Optional[datetime] = None,
) -> ImportDraft:
    """Fetch a draft, expiring it on the spot when its retention window has passed."""
    now = now or utcnow()

    draft = db.query(ImportDraft).filter(ImportDraft.id == draft_id).first()
    if not draft:
        raise DraftNotFound(f"Import draft {draft_id} not found")

    if draft.status != DraftStatus.EXPIRED.value and is_stale(draft, now) and not lease_is_live(draft, now):
        _expire(db, blobs, draft)

    if draft.status == DraftStatus.EXPIRED.value:
        raise DraftExpired(f"Import draft {draft_id} has expired; upload the file again")
    return draft


def load_open_draft(
    db: Session,
    blobs: FileBlobStore,
    draft_id: str,
    now: Optional[datetime] = None,
) -> ImportDraft:
    """Like ``load_draft`` but rejects drafts that can no longer be previewed."""
    now = now or utcnow()
    draft = load_draft(db, blobs, draft_id, now)

    if draft.status == DraftStatus.CONFIRMED.value:
        raise AlreadyConfirmed(f"Import draft {draft_id} was already confirmed")
    if lease_is_live(draft, now):
        raise Conflict(f"Import draft {draft_id} is being confirmed")
    return draft


def expire_stale_drafts(db: Session, blobs: FileBlobStore, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    cutoff = now - DRAFT_RETENTION

    stale = (
        db.query(ImportDraft)
        .filter(
            ImportDraft.status.in_([DraftStatus.RECEIVED.value, DraftStatus.PREVIEWED.value]),
            ImportDraft.created_at <= cutoff,
        )
        .all()
    )

    expired = 0
    for draft in stale:
        if lease_is_live(draft, now):
            continue
        _expire(db, blobs, draft)
        expired += 1

    if expired:
        logger.info("expired %d stale import drafts", expired)
    return expired
