# =============================================================================
# Submissions — Validating and Accepting a CV Upload
# =============================================================================
#
# ACCEPT PATH (one HTTP request):
#   1. validate_upload()      type / size checks, no side effects
#   2. supersede              cancel the user's pending/processing jobs
#   3. COMMIT                 cancellations are durable...
#   4. create_job()           ...strictly before the new job exists
#   5. COMMIT
#   6. enqueue                (API layer; see app.workers.dispatch)
#
# The two commits give the ordering guarantee: no observer can ever see the
# new job next to a still-active older one.
# =============================================================================

from __future__ import annotations

import logging
from pathlib import PurePath
from typing import TypedDict

from sqlalchemy.orm import Session

from app.config import settings
from app.db.models import UploadJob
from app.services import job_store
from app.services.supersede import supersede_active_jobs

logger = logging.getLogger(__name__)

# Fallback when the client sends a generic MIME type (application/octet-stream)
_EXTENSION_TYPES = {".pdf": "pdf", ".docx": "docx"}


class FileInfo(TypedDict):
    file_name: str
    file_type: str
    mime_type: str
    file_size: int


class UploadValidationError(ValueError):
    """Upload rejected before a job was created. `status_code` is the HTTP code."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


def validate_upload(file_name: str | None, mime_type: str | None, data: bytes) -> FileInfo:
    """
    Check type and size of an upload.

    Raises:
        UploadValidationError: 400 for an unsupported type or empty file,
            413 for a file over settings.max_upload_bytes.
    """
    name = PurePath(file_name or "").name or "upload"
    mime = (mime_type or "").split(";")[0].strip().lower()

    file_type = settings.allowed_mime_types.get(mime)
    if file_type is None and mime in ("", "application/octet-stream"):
        file_type = _EXTENSION_TYPES.get(PurePath(name).suffix.lower())
    if file_type is None:
        raise UploadValidationError(
            f"Unsupported file type '{mime or 'unknown'}'. "
            f"Only PDF and DOCX files are accepted."
        )

    if not data:
        raise UploadValidationError("Uploaded file is empty.")

    if len(data) > settings.max_upload_bytes:
        raise UploadValidationError(
            f"File is {len(data)} bytes; the limit is {settings.max_upload_bytes} bytes.",
            status_code=413,
        )

    return FileInfo(
        file_name=name,
        file_type=file_type,
        mime_type=mime or "application/octet-stream",
        file_size=len(data),
    )


def accept_submission(
    session: Session,
    user_id: str,
    file_info: FileInfo,
    data: bytes,
) -> tuple[UploadJob, list[str]]:
    """
    Supersede the user's active jobs, then persist the new PENDING job.

    Returns:
        The new job and the ids of the jobs it superseded.
    """
    cancelled = supersede_active_jobs(session, user_id)
    session.commit()

    job = job_store.create_job(session, user_id, dict(file_info), data)
    session.commit()

    logger.info(
        "Accepted upload %s for user %s (superseded: %s)",
        job.id, user_id, ", ".join(cancelled) or "none",
    )
    return job, cancelled
