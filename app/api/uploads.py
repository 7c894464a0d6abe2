# =============================================================================
# Uploads API — CV Submission and Job Status
# =============================================================================
#
# ENDPOINTS:
#   POST /uploads            — validate, supersede, create job, enqueue → 202
#   GET  /uploads            — the caller's pending/processing jobs
#   GET  /uploads/document   — the caller's current CV and profile analysis
#   GET  /uploads/{job_id}   — poll one job (progress, result, error)
#
# DESIGN DECISION: 202 Accepted for POST /uploads. Parsing, embedding and
# LLM analysis take seconds to minutes; the request returns as soon as the
# job row exists and its reference is on the queue.
#
# DESIGN DECISION: Job store calls go through session.run_sync(). The job
# store is written once, against a sync Session, and shared with the
# Celery workers.
#
# Status comes from the job store, never from Celery's result backend: the
# queue message is only a pointer and may be retried, dropped or expired.
# =============================================================================

import logging

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user_id
from app.db.engine import get_async_session
from app.models.responses import (
    ActiveJobsResponse,
    FileInfoResponse,
    JobStatusResponse,
    UploadAcceptedResponse,
    UserDocumentResponse,
)
from app.services import job_store
from app.services.job_store import JobNotFoundError
from app.services.submissions import UploadValidationError, accept_submission, validate_upload
from app.services.user_documents import get_user_document
from app.workers.dispatch import enqueue_upload_job

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Uploads"])

DISPATCH_FAILED_REASON = "Dispatch failed; please upload again"


# ---------------------------------------------------------------------------
# POST /uploads — Submit a CV
# ---------------------------------------------------------------------------


@router.post(
    "/uploads",
    response_model=UploadAcceptedResponse,
    status_code=202,
    summary="Upload a CV for processing",
    description=(
        "Upload a PDF or DOCX CV (max 10 MB). Any of your uploads still "
        "pending or processing is cancelled first. Returns immediately with "
        "a job_id to poll."
    ),
)
async def create_upload(
    file: UploadFile = File(..., description="CV file (.pdf or .docx)"),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
) -> UploadAcceptedResponse:
    data = await file.read()
    try:
        file_info = validate_upload(file.filename, file.content_type, data)
    except UploadValidationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    job, superseded = await session.run_sync(accept_submission, user_id, file_info, data)

    try:
        enqueue_upload_job(job.id, user_id)
    except Exception as exc:
        # The job would otherwise sit in PENDING until the reaper finds it
        logger.exception("Could not enqueue job %s: %s", job.id, exc)
        await session.run_sync(job_store.cancel_job, job.id, DISPATCH_FAILED_REASON)
        await session.commit()
        raise HTTPException(
            status_code=503,
            detail="Upload could not be queued for processing. Please try again.",
        ) from exc

    return UploadAcceptedResponse(
        job_id=job.id,
        status=job.status.value,
        progress=job.progress,
        file_info=FileInfoResponse.model_validate(dict(file_info)),
        superseded_job_ids=superseded,
    )


# ---------------------------------------------------------------------------
# GET /uploads — Active jobs of the caller
# ---------------------------------------------------------------------------


@router.get(
    "/uploads",
    response_model=ActiveJobsResponse,
    summary="List your pending and processing uploads",
)
async def list_active_uploads(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
) -> ActiveJobsResponse:
    jobs = await session.run_sync(job_store.list_active_jobs, user_id)
    return ActiveJobsResponse(
        jobs=[JobStatusResponse.from_job(job) for job in jobs],
        total=len(jobs),
    )


# ---------------------------------------------------------------------------
# GET /uploads/document — Current CV
# ---------------------------------------------------------------------------
# Declared before /uploads/{job_id} so "document" is not taken as a job id.
# ---------------------------------------------------------------------------


@router.get(
    "/uploads/document",
    response_model=UserDocumentResponse | None,
    summary="Get your current CV and its profile analysis",
)
async def get_current_document(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
) -> UserDocumentResponse | None:
    doc = await session.run_sync(get_user_document, user_id)
    if doc is None:
        return None
    return UserDocumentResponse.model_validate(doc)


# ---------------------------------------------------------------------------
# GET /uploads/{job_id} — Poll one job
# ---------------------------------------------------------------------------


@router.get(
    "/uploads/{job_id}",
    response_model=JobStatusResponse,
    summary="Check the status of an upload",
    description=(
        "Poll until status is completed, failed or cancelled. Progress "
        "moves through 10, 20, 40, 50, 70, 85, 95 and 100."
    ),
)
async def get_upload_status(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
) -> JobStatusResponse:
    try:
        job = await session.run_sync(job_store.get_job, job_id, user_id)
    except JobNotFoundError as exc:
        # Same answer for "missing" and "someone else's"
        raise HTTPException(status_code=404, detail=f"Upload {job_id} not found.") from exc
    return JobStatusResponse.from_job(job)
