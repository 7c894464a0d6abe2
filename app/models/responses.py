# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming OUT of the API.
#
# DESIGN DECISION: Separate response models from DB models
# An upload_jobs row carries the raw file bytes and the full error trace.
# Neither is ever sent to the client: the status response exposes
# file_info and error.message only.
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.models.profile import ProfileAnalysis


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


class FileInfoResponse(BaseModel):
    file_name: str
    file_type: str
    mime_type: str | None = None
    file_size: int


class JobError(BaseModel):
    message: str


class JobResult(BaseModel):
    """`result` of a completed job."""

    ids: list[str] = Field(description="Artifact (chunk) ids stored by this job")
    total_chunks: int
    analysis: ProfileAnalysis | None = Field(
        default=None,
        description="Profile analysis, null when the analysis step failed",
    )


class UploadAcceptedResponse(BaseModel):
    """
    Response for POST /uploads — the job exists and its reference is queued.

    Poll GET /uploads/{job_id} for progress.
    """

    job_id: str
    status: str = "pending"
    progress: int = 0
    file_info: FileInfoResponse
    superseded_job_ids: list[str] = Field(
        default_factory=list,
        description="Earlier active jobs of this user cancelled by this upload",
    )
    message: str = "CV uploaded. Processing in progress."


class JobStatusResponse(BaseModel):
    """Response for GET /uploads/{job_id}."""

    job_id: str
    status: str
    progress: int
    file_info: FileInfoResponse
    result: JobResult | None = None
    error: JobError | None = None
    retry_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_job(cls, job: Any) -> "JobStatusResponse":
        error = job.error
        return cls(
            job_id=job.id,
            status=job.status.value,
            progress=job.progress,
            file_info=FileInfoResponse.model_validate(job.file_info),
            result=JobResult.model_validate(job.result) if job.result else None,
            error=JobError(message=error.get("message", "")) if error else None,
            retry_count=job.retry_count,
            started_at=job.started_at,
            completed_at=job.completed_at,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class ActiveJobsResponse(BaseModel):
    """Response for GET /uploads — the caller's pending/processing jobs."""

    jobs: list[JobStatusResponse]
    total: int


class UserDocumentResponse(BaseModel):
    """Response for GET /uploads/document — the caller's current CV."""

    job_id: str
    file_name: str
    file_type: str
    chunk_ids: list[str]
    total_chunks: int
    analysis: ProfileAnalysis | None = None
    uploaded_at: datetime

    model_config = ConfigDict(from_attributes=True)
