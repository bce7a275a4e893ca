import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, File, Form, Query, UploadFile, status
from sqlalchemy.orm import Session

from gradeimport.core.config import MAX_UPLOAD_BYTES
from gradeimport.core.deps import get_blob_store, get_db, get_roster
from gradeimport.core.errors import StorageError
from gradeimport.models.draft import DraftStatus
from gradeimport.schemas.imports import CommitResult, DraftCreated, DraftRead, MappingConfig, PreviewResult
from gradeimport.services.blobs import FileBlobStore
from gradeimport.services.commit import confirm
from gradeimport.services.drafts import draft_scope, load_draft
from gradeimport.services.roster import RosterSource, load_evaluations
from gradeimport.services.spreadsheet import UnreadableFile, read_header
from gradeimport.services.uploads import submit
from gradeimport.services.validation import preview

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "",
    response_model=DraftCreated,
    status_code=status.HTTP_201_CREATED,
    responses={
        422: {"description": "ScopeIncomplete / UploadRejected"},
    },
)
def upload_grades_file(
    period_id: Optional[int] = Form(None),
    subject_id: Optional[int] = Form(None),
    course_id: Optional[int] = Form(None),
    parallel_id: Optional[int] = Form(None),
    file: Optional[UploadFile] = File(None),
    db: Session = Depends(get_db),
    blobs: FileBlobStore = Depends(get_blob_store),
):
    draft = submit(
        db,
        blobs,
        period_id=period_id,
        subject_id=subject_id,
        course_id=course_id,
        parallel_id=parallel_id,
        filename=file.filename if file is not None else None,
        # one byte past the cap is enough to reject an oversized file
        data=file.file.read(MAX_UPLOAD_BYTES + 1) if file is not None else None,
    )
    return DraftCreated(
        draft_id=draft.id,
        status=draft.status,
        filename=draft.filename,
        created_at=draft.created_at,
    )


@router.get(
    "/{draft_id}",
    response_model=DraftRead,
    responses={404: {"description": "DraftNotFound"}, 410: {"description": "DraftExpired"}},
)
def get_draft(
    draft_id: str,
    db: Session = Depends(get_db),
    blobs: FileBlobStore = Depends(get_blob_store),
    roster: RosterSource = Depends(get_roster),
):
    draft = load_draft(db, blobs, draft_id)
    scope = draft_scope(draft)

    columns: list[str] = []
    if draft.status != DraftStatus.CONFIRMED.value:
        # confirmed drafts no longer keep their raw file
        try:
            columns = read_header(blobs.get(draft.blob_key), draft.filename)
        except (UnreadableFile, StorageError) as e:
            # the preview reports this as a structural error; here it only hides the header
            logger.warning("draft %s: header unavailable: %s", draft_id, e)

    return DraftRead(
        draft_id=draft.id,
        status=draft.status,
        scope=scope,
        filename=draft.filename,
        created_at=draft.created_at,
        last_mapping=MappingConfig.model_validate(draft.last_mapping) if draft.last_mapping else None,
        columns=columns,
        evaluations=load_evaluations(roster, scope),
    )


@router.post(
    "/{draft_id}/preview",
    response_model=PreviewResult,
    responses={
        404: {"description": "DraftNotFound"},
        409: {"description": "AlreadyConfirmed / Conflict"},
        410: {"description": "DraftExpired"},
    },
)
def preview_import(
    draft_id: str,
    mapping: Any = Body(...),
    db: Session = Depends(get_db),
    blobs: FileBlobStore = Depends(get_blob_store),
    roster: RosterSource = Depends(get_roster),
):
    return preview(db, blobs, roster, draft_id, mapping)


@router.post(
    "/{draft_id}/confirm",
    response_model=CommitResult,
    responses={
        404: {"description": "DraftNotFound"},
        409: {"description": "MappingNotSet / AlreadyConfirmed / Conflict"},
        410: {"description": "DraftExpired"},
        503: {"description": "StorageError"},
        504: {"description": "ConfirmTimeout"},
    },
)
def confirm_import(
    draft_id: str,
    timeout_seconds: Optional[float] = Query(None, gt=0),
    db: Session = Depends(get_db),
    blobs: FileBlobStore = Depends(get_blob_store),
    roster: RosterSource = Depends(get_roster),
):
    return confirm(db, blobs, roster, draft_id, timeout_seconds=timeout_seconds)
