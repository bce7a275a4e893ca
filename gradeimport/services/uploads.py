import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from gradeimport.core.clock import utcnow
from gradeimport.core.config import MAX_UPLOAD_BYTES
from gradeimport.core.errors import ScopeIncomplete, UploadRejected
from gradeimport.models.draft import DraftStatus, ImportDraft
from gradeimport.services.blobs import FileBlobStore
from gradeimport.services.drafts import new_draft_id

logger = logging.getLogger(__name__)


def submit(
    db: Session,
    blobs: FileBlobStore,
    *,
    period_id: Optional[int],
    subject_id: Optional[int],
    course_id: Optional[int],
    parallel_id: Optional[int] = None,
    filename: Optional[str],
    data: Optional[bytes],
    now: Optional[datetime] = None,
) -> ImportDraft:
    """
    Receive an upload: validate the scope, store the raw bytes opaquely and
    open a RECEIVED draft. The file is not parsed here.
    """
    missing = [
        name
        for name, value in (("period_id", period_id), ("subject_id", subject_id), ("course_id", course_id))
        if value is None
    ]
    if missing:
        raise ScopeIncomplete(
            f"Scope is incomplete; missing {', '.join(missing)}",
            missing=missing,
        )

    if not data:
        raise UploadRejected("A non-empty grades file is required")
    if len(data) > MAX_UPLOAD_BYTES:
        raise UploadRejected(f"File is larger than {MAX_UPLOAD_BYTES} bytes")

    draft_id = new_draft_id()
    blob_key = blobs.put(draft_id, data)

    draft = ImportDraft(
        id=draft_id,
        period_id=period_id,
        subject_id=subject_id,
        course_id=course_id,
        parallel_id=parallel_id,
        filename=(filename or "upload.csv")[:255],
        blob_key=blob_key,
        status=DraftStatus.RECEIVED.value,
        created_at=now or utcnow(),
    )
    db.add(draft)

    try:
        db.commit()
    except Exception:
        db.rollback()
        blobs.delete(blob_key)
        raise

    db.refresh(draft)
    logger.info(
        "draft %s received (%s, %d bytes) for period=%s subject=%s course=%s parallel=%s",
        draft.id, draft.filename, len(data), period_id, subject_id, course_id, parallel_id,
    )
    return draft
