"""
Error taxonomy for the grade import pipeline.

Structural failures abort a call and are raised as ``GradeImportError``
subclasses. Each carries a stable ``code`` (what API clients switch on), the
HTTP status it maps to, and a human-readable message. Optional ``extra`` data
is rendered next to the code by the exception handler in ``main.py``.

Row-level validation outcomes are NOT exceptions: they are ``RowErrorCode``
values collected into PreviewResult / CommitResult payloads.
"""

from enum import Enum
from typing import Any


class RowErrorCode(str, Enum):
    UNKNOWN_STUDENT = "UnknownStudent"
    INVALID_RANGE = "InvalidRange"
    INVALID_FORMAT = "InvalidFormat"
    DUPLICATE_STUDENT = "DuplicateStudent"


class GradeImportError(Exception):
    code = "GradeImportError"
    status_code = 400

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_payload(self) -> dict[str, Any]:
        payload = {"code": self.code, "message": self.message, "detail": self.message}
        payload.update(self.extra)
        return payload


class ScopeIncomplete(GradeImportError):
    code = "ScopeIncomplete"
    status_code = 422


class DraftNotFound(GradeImportError):
    code = "DraftNotFound"
    status_code = 404


class DraftExpired(GradeImportError):
    code = "DraftExpired"
    status_code = 410


class MappingNotSet(GradeImportError):
    code = "MappingNotSet"
    status_code = 409


class AlreadyConfirmed(GradeImportError):
    code = "AlreadyConfirmed"
    status_code = 409


class Conflict(GradeImportError):
    code = "Conflict"
    status_code = 409


class StorageError(GradeImportError):
    code = "StorageError"
    status_code = 503


class ConfirmTimeout(GradeImportError):
    """Confirm ran out of time or was cancelled; ``committed_rows`` says what landed."""

    code = "ConfirmTimeout"
    status_code = 504


class InvalidGrade(GradeImportError):
    """Rejected cell on the unitary write path; ``code`` is a row error code or "UnknownEvaluation"."""

    status_code = 422

    def __init__(self, code, message: str, **extra: Any):
        super().__init__(message, **extra)
        self.code = code.value if isinstance(code, RowErrorCode) else code


class UploadRejected(GradeImportError):
    """File missing, empty or over MAX_UPLOAD_BYTES."""

    code = "UploadRejected"
    status_code = 422
