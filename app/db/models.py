# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌─────────────────────┐     ┌───────────────────┐     ┌──────────────────┐
# │  upload_jobs        │     │  user_documents   │     │  chunks          │
# ├─────────────────────┤     ├───────────────────┤     ├──────────────────┤
# │ id (PK, uuid)       │     │ user_id (PK)      │     │ id (PK, str)     │
# │ user_id             │     │ job_id            │     │ user_id          │
# │ status              │     │ file_name         │     │ job_id           │
# │ progress            │     │ file_type         │     │ content          │
# │ file_info (json)    │     │ chunk_ids (json)  │     │ chunk_index      │
# │ payload (bytes)     │     │ total_chunks      │     │ token_count      │
# │ result (json)       │     │ analysis (json)   │     │ embedding (vec)  │
# │ error (json)        │     │ uploaded_at       │     │ metadata_ (json) │
# │ retry_count         │     └───────────────────┘     └──────────────────┘
# │ heartbeat_at        │
# │ started_at / ...    │
# └─────────────────────┘
#
# DESIGN DECISIONS:
#
# 1. `upload_jobs` is the single source of truth for job state. The Celery
#    message only carries the job id; the raw payload lives in this row.
#
# 2. `user_documents` holds the user's CURRENT CV: the artifact ids that a
#    later upload must delete, plus the derived profile fields.
#
# 3. JSON columns use JSONB on PostgreSQL and plain JSON elsewhere, so the
#    job tables also work against SQLite in unit tests.
# =============================================================================

import enum
import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.config import settings

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for every ORM model."""

    pass


class JobStatus(str, enum.Enum):
    """
    Lifecycle state of an upload job.

    State machine:
        PENDING ──▶ PROCESSING ──▶ COMPLETED
           │            │
           │            └───────▶ FAILED
           └────────────┴───────▶ CANCELLED

    COMPLETED, FAILED and CANCELLED are terminal: nothing moves out of them.
    """

    PENDING = "pending"          # Accepted, waiting for a worker
    PROCESSING = "processing"    # Claimed by a worker (or awaiting a retry)
    COMPLETED = "completed"      # Artifacts stored, result written
    FAILED = "failed"            # Final attempt failed (see error)
    CANCELLED = "cancelled"      # Superseded by a newer upload

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})


def _new_job_id() -> str:
    return str(uuid.uuid4())


class UploadJob(Base):
    """
    Durable record of one CV upload and its processing lifecycle.

    Created by the accept path in PENDING; afterwards mutated only by the
    worker that claims it, plus the supersede cancellation. Every write is a
    conditional UPDATE keyed on the current status (see services/job_store).
    """

    __tablename__ = "upload_jobs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=_new_job_id,
    )

    # Owning user; scopes supersede and status queries
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=JobStatus.PENDING,
        index=True,
    )

    # 0–100, only ever increases
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # {file_name, file_type, mime_type, file_size}, immutable after creation
    file_info: Mapped[dict] = mapped_column(JSONType, nullable=False)

    # Raw upload bytes, so the queue message can stay a bare reference.
    # Deferred: status polls never load it; workers use job_store.load_payload.
    payload: Mapped[bytes] = mapped_column(
        LargeBinary, nullable=False, deferred=True,
    )

    # Populated only on COMPLETED: {ids, total_chunks, analysis}
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # Populated on FAILED ({message, trace}) or CANCELLED ({message})
    error: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # Processing runs consumed beyond the first one
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Refreshed by the running worker; NULL while awaiting a retry
    heartbeat_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<UploadJob(id={self.id}, user_id={self.user_id}, "
            f"status={self.status}, progress={self.progress})>"
        )


# History listing per user, and status scans for the reaper
upload_job_user_created_idx = Index(
    "idx_upload_job_user_created",
    UploadJob.user_id,
    UploadJob.created_at,
)
upload_job_status_created_idx = Index(
    "idx_upload_job_status_created",
    UploadJob.status,
    UploadJob.created_at,
)


class UserDocument(Base):
    """
    The user's current CV and the profile fields derived from it.

    One row per user, overwritten by every completed job. `chunk_ids` is what
    the next job deletes as "superseded artifacts".
    """

    __tablename__ = "user_documents"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    job_id: Mapped[str] = mapped_column(String(36), nullable=False)
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_type: Mapped[str] = mapped_column(String(16), nullable=False)
    chunk_ids: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # ProfileAnalysis as JSON; NULL when analysis failed or was skipped
    analysis: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<UserDocument(user_id={self.user_id}, file='{self.file_name}', "
            f"chunks={self.total_chunks})>"
        )


class Chunk(Base):
    """
    A stored artifact: one CV text chunk with its embedding (pgvector backend).

    The string id is generated by the pipeline (user_{user}_{ms}_{i}) so the
    same ids can be handed to either backend and recorded on the user.
    """

    __tablename__ = "chunks"

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    job_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False)

    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )

    # Named `metadata_` to avoid clashing with DeclarativeBase.metadata
    metadata_: Mapped[dict | None] = mapped_column(
        JSONType,
        nullable=True,
        default=dict,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<Chunk(id={self.id}, user_id={self.user_id}, "
            f"index={self.chunk_index}, tokens={self.token_count})>"
        )


# HNSW index for cosine similarity search by downstream consumers
chunk_embedding_idx = Index(
    "idx_chunk_embedding_hnsw",
    Chunk.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

# Per-user filtering and bulk deletion
chunk_user_idx = Index(
    "idx_chunk_user_id",
    Chunk.user_id,
)
