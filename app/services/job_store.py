# =============================================================================
# Job Store — Durable Job Records and the Status State Machine
# =============================================================================
#
# The `upload_jobs` table is the single source of truth for job state. The
# Celery message is only a pointer to a row here.
#
# DESIGN DECISION: Every mutation is ONE conditional UPDATE (compare-and-set).
#   UPDATE upload_jobs SET ... WHERE id = :id AND status IN (:allowed)
# `rowcount == 1` means we won; `0` means somebody else (the supersede
# cancellation, another worker) changed the row first. There is no
# read-then-write window: the status check and the write are one statement.
#
# Two writers may touch a job concurrently:
#   - the worker that claimed it (progress, result, error, timestamps)
#   - the supersede controller (→ CANCELLED)
# Because both sides write through guarded updates, a worker can never
# resurrect a cancelled job and a cancellation can never clobber a
# completed one.
#
# DESIGN DECISION: Sync functions over a `Session`.
# Celery workers call these directly; FastAPI handlers call them through
# `await session.run_sync(job_store.get_job, job_id)`. One implementation,
# two execution models.
#
# RETRY SEMANTICS:
# A failed attempt that still has attempts left is NOT written as FAILED.
# The job stays PROCESSING with heartbeat_at = NULL ("released"), which
# lets the queue's redelivery claim it again. FAILED is only written on the
# final attempt, so the terminal-state idempotent skip never blocks a retry.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.orm import Session

from app.db.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobStatus,
    UploadJob,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# State Machine
# ---------------------------------------------------------------------------

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(from_status: JobStatus, to_status: JobStatus) -> bool:
    """Whether `from_status → to_status` is a legal lifecycle move."""
    return to_status in ALLOWED_TRANSITIONS[from_status]


def _sources_for(to_status: JobStatus) -> list[JobStatus]:
    return [s for s, targets in ALLOWED_TRANSITIONS.items() if to_status in targets]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class JobNotFoundError(LookupError):
    """No job with this id (or not owned by the requesting user)."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransitionError(RuntimeError):
    """A guarded write lost: the job was not in an expected status."""

    def __init__(self, job_id: str, current: JobStatus, expected: Iterable[JobStatus]) -> None:
        expected_names = ", ".join(sorted(s.value for s in expected))
        super().__init__(
            f"Job {job_id} is '{current.value}', expected one of: {expected_names}"
        )
        self.job_id = job_id
        self.current = current


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _guarded_update(
    session: Session,
    job_id: str,
    expected: Iterable[JobStatus],
    *conditions,
    **values,
) -> bool:
    """
    Apply `values` iff the job's status is in `expected` (and `conditions` hold).

    synchronize_session=False: callers re-read through get_job(), which uses
    populate_existing, instead of trusting in-memory objects.
    """
    stmt = (
        update(UploadJob)
        .where(
            UploadJob.id == job_id,
            UploadJob.status.in_(list(expected)),
            *conditions,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    return result.rowcount == 1


def _current_status(session: Session, job_id: str) -> JobStatus:
    status = session.scalar(select(UploadJob.status).where(UploadJob.id == job_id))
    if status is None:
        raise JobNotFoundError(job_id)
    return status


# ---------------------------------------------------------------------------
# Create / Read
# ---------------------------------------------------------------------------


def create_job(
    session: Session,
    user_id: str,
    file_info: dict,
    payload: bytes,
) -> UploadJob:
    """Persist a new job in PENDING. The id is assigned on flush."""
    job = UploadJob(
        user_id=user_id,
        status=JobStatus.PENDING,
        progress=0,
        file_info=file_info,
        payload=payload,
        retry_count=0,
    )
    session.add(job)
    session.flush()
    logger.info(
        "Created job %s for user %s (%s, %d bytes)",
        job.id, user_id, file_info.get("file_name"), len(payload),
    )
    return job


def get_job(session: Session, job_id: str, user_id: str | None = None) -> UploadJob:
    """
    Load a job by id, optionally scoped to its owner.

    Raises:
        JobNotFoundError: unknown id, or owned by a different user.
    """
    stmt = (
        select(UploadJob)
        .where(UploadJob.id == job_id)
        .execution_options(populate_existing=True)
    )
    if user_id is not None:
        stmt = stmt.where(UploadJob.user_id == user_id)

    job = session.execute(stmt).scalar_one_or_none()
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def load_payload(session: Session, job_id: str) -> bytes:
    """Fetch only the raw upload bytes (the column is deferred on UploadJob)."""
    payload = session.scalar(select(UploadJob.payload).where(UploadJob.id == job_id))
    if payload is None:
        raise JobNotFoundError(job_id)
    return payload


def list_active_jobs(session: Session, user_id: str) -> list[UploadJob]:
    """Non-terminal jobs for a user, oldest first."""
    stmt = (
        select(UploadJob)
        .where(
            UploadJob.user_id == user_id,
            UploadJob.status.in_(list(ACTIVE_STATUSES)),
        )
        .order_by(UploadJob.created_at)
        .execution_options(populate_existing=True)
    )
    return list(session.execute(stmt).scalars())


# ---------------------------------------------------------------------------
# Generic Guarded Writes
# ---------------------------------------------------------------------------


def update_job(
    session: Session,
    job_id: str,
    expected: Iterable[JobStatus] = ACTIVE_STATUSES,
    **values,
) -> UploadJob:
    """
    Partially update a job if its status is still one of `expected`.

    A `status` value must be reachable from every expected status.

    Raises:
        ValueError: `status` is not a legal transition from `expected`.
        JobNotFoundError: unknown id.
        InvalidTransitionError: the job left `expected` before the write.
    """
    expected = list(expected)
    target = values.get("status")
    if target is not None:
        illegal = [s for s in expected if not can_transition(s, target)]
        if illegal:
            raise ValueError(
                f"Illegal transition to '{target.value}' from "
                f"{', '.join(s.value for s in illegal)}"
            )

    if not _guarded_update(session, job_id, expected, **values):
        raise InvalidTransitionError(job_id, _current_status(session, job_id), expected)
    return get_job(session, job_id)


def transition(
    session: Session,
    job_id: str,
    to_status: JobStatus,
    *conditions,
    **values,
) -> bool:
    """
    Compare-and-set the job into `to_status` from any legal source status.

    Returns False (without raising) when the job is already elsewhere,
    e.g. a worker trying to complete a job that was just cancelled.
    """
    return _guarded_update(
        session, job_id, _sources_for(to_status), *conditions,
        status=to_status, **values,
    )


# ---------------------------------------------------------------------------
# Cancellation (Supersede)
# ---------------------------------------------------------------------------


def cancel_job(session: Session, job_id: str, reason: str) -> bool:
    """Guarded `{pending, processing} → cancelled`. False if already terminal."""
    cancelled = transition(
        session,
        job_id,
        JobStatus.CANCELLED,
        error={"message": reason},
        completed_at=_utcnow(),
        heartbeat_at=None,
    )
    if cancelled:
        logger.info("Cancelled job %s: %s", job_id, reason)
    return cancelled


def cancel_active_jobs(session: Session, user_id: str, reason: str) -> list[str]:
    """
    Cancel every non-terminal job of a user, one guarded write per job.

    Returns:
        Ids of the jobs this call cancelled (its length is the count). A job
        that reached a terminal state after the listing is left untouched.
    """
    cancelled: list[str] = []
    for job in list_active_jobs(session, user_id):
        if cancel_job(session, job.id, reason):
            cancelled.append(job.id)
        else:
            logger.info("Job %s reached a terminal state before it could be cancelled", job.id)
    return cancelled


# ---------------------------------------------------------------------------
# Worker Lifecycle
# ---------------------------------------------------------------------------


def claim_job(session: Session, job_id: str, stale_before: datetime) -> UploadJob | None:
    """
    Atomically take ownership of a job for one processing run.

    Claimable:
      - PENDING (first run)
      - PROCESSING with heartbeat_at NULL (released for a retry)
      - PROCESSING with heartbeat_at < stale_before (orphaned by a crash)

    A PROCESSING job with a live heartbeat belongs to another worker, so a
    duplicate delivery returns None instead of running it twice.

    retry_count is incremented on every claim except the first one.
    """
    now = _utcnow()
    claimed = _guarded_update(
        session,
        job_id,
        ACTIVE_STATUSES,
        or_(
            UploadJob.status == JobStatus.PENDING,
            UploadJob.heartbeat_at.is_(None),
            UploadJob.heartbeat_at < stale_before,
        ),
        status=JobStatus.PROCESSING,
        retry_count=case(
            (UploadJob.status == JobStatus.PENDING, UploadJob.retry_count),
            else_=UploadJob.retry_count + 1,
        ),
        started_at=now,
        heartbeat_at=now,
    )
    if not claimed:
        return None
    return get_job(session, job_id)


def checkpoint(session: Session, job_id: str, progress: int) -> bool:
    """
    Persist a progress checkpoint and refresh the heartbeat.

    Progress never moves backwards: the write is guarded by
    `progress <= :progress`, so a retry run cannot lower a value an earlier
    run already reported.

    Returns:
        True while the job is still PROCESSING, False once it has left that
        state (cancelled by a newer upload). Workers must stop writing then.
    """
    if _guarded_update(
        session,
        job_id,
        [JobStatus.PROCESSING],
        UploadJob.progress <= progress,
        progress=progress,
        heartbeat_at=_utcnow(),
    ):
        return True
    return _current_status(session, job_id) == JobStatus.PROCESSING


def is_processing(session: Session, job_id: str) -> bool:
    """Status re-check before a destructive write."""
    return _current_status(session, job_id) == JobStatus.PROCESSING


def touch_heartbeat(session: Session, job_id: str) -> bool:
    """Refresh heartbeat_at for a running job. False once it left PROCESSING."""
    return _guarded_update(
        session, job_id, [JobStatus.PROCESSING], heartbeat_at=_utcnow(),
    )


def release_job(session: Session, job_id: str) -> bool:
    """Hand a failed-but-retryable run back to the queue (heartbeat_at = NULL)."""
    return _guarded_update(
        session, job_id, [JobStatus.PROCESSING], heartbeat_at=None,
    )


def complete_job(session: Session, job_id: str, result: dict) -> bool:
    """Guarded `processing → completed` with result and progress=100."""
    return transition(
        session,
        job_id,
        JobStatus.COMPLETED,
        result=result,
        error=None,
        progress=100,
        completed_at=_utcnow(),
        heartbeat_at=None,
    )


def fail_job(
    session: Session,
    job_id: str,
    message: str,
    trace: str | None = None,
    stale_before: datetime | None = None,
) -> bool:
    """
    Guarded `processing → failed` with `error={message, trace}`.

    stale_before: only fail the job if it still shows no sign of life since
    this instant (used by the reaper so it never fails a job that a worker
    just claimed).
    """
    conditions = []
    if stale_before is not None:
        conditions.append(_last_seen() < stale_before)
    error: dict = {"message": message}
    if trace:
        error["trace"] = trace
    return transition(
        session,
        job_id,
        JobStatus.FAILED,
        *conditions,
        error=error,
        completed_at=_utcnow(),
        heartbeat_at=None,
    )


# ---------------------------------------------------------------------------
# Reaper
# ---------------------------------------------------------------------------


def _last_seen():
    # heartbeat for running jobs; the last write (creation, release, requeue) otherwise
    return func.coalesce(UploadJob.heartbeat_at, UploadJob.updated_at)


def find_stale_jobs(session: Session, stale_before: datetime) -> list[UploadJob]:
    """
    Active jobs nobody is visibly working on.

    - PROCESSING with no heartbeat since `stale_before`: the worker crashed,
      or a released job's retry message was lost.
    - PENDING untouched since `stale_before`: the dispatch message was lost.
    """
    stmt = (
        select(UploadJob)
        .where(
            UploadJob.status.in_(list(ACTIVE_STATUSES)),
            _last_seen() < stale_before,
        )
        .order_by(UploadJob.created_at)
        .execution_options(populate_existing=True)
    )
    return list(session.execute(stmt).scalars())


def requeue_stale_job(session: Session, job_id: str, stale_before: datetime) -> bool:
    """
    Mark a stale job as handed back to the queue.

    Clears the heartbeat and bumps updated_at, so the job is claimable by
    the new message but not reported stale again until another timeout has
    passed. False if a worker showed a sign of life in the meantime.
    """
    return _guarded_update(
        session,
        job_id,
        ACTIVE_STATUSES,
        _last_seen() < stale_before,
        heartbeat_at=None,
        updated_at=_utcnow(),
    )


def is_terminal(job: UploadJob) -> bool:
    return job.status in TERMINAL_STATUSES
