# =============================================================================
# Celery Task Definitions — CV Upload Processing
# =============================================================================
#
# `process_upload_job` receives {job_id, user_id} and runs the pipeline
# against the job row. The orchestration lives in `execute_upload_job()`
# so it can be driven without a broker.
#
# PIPELINE (progress checkpoint after each stage):
#   claim → processing, started_at             10
#   1. extract text (Docling)                  20
#   2. chunk (tiktoken)                        40
#   3. delete the user's previous artifacts    50   best-effort
#   4. embed + store new artifacts             70
#   5. profile analysis (LLM)                  85   best-effort
#   6. finalising                              95
#   7. completed + result + user document     100   one transaction
#
# IDEMPOTENCY (at-least-once delivery):
# - terminal job          → skip, no writes
# - live heartbeat        → another worker owns it, skip
# - pending / released / stale-heartbeat → claim and (re)start at stage 1
#
# CANCELLATION:
# A newer upload cancels this job with a status write only. Every
# checkpoint is a guarded write; the first one that finds the job no longer
# PROCESSING raises JobCancelledError. Artifacts this run already stored
# are then deleted (compensating cleanup) and the task returns normally:
# a cancelled job is never retried.
#
# RETRY STRATEGY:
# 3 attempts in total, exponential backoff (2s, 4s). A failed attempt with
# attempts left releases the job (still PROCESSING, heartbeat cleared) and
# asks Celery to redeliver; the final attempt writes FAILED. The job's
# retry_count is incremented on every re-claim, so it always equals the
# number of attempts consumed before the current one.
#
# IMPORTANT: Celery workers are SYNCHRONOUS. They use the sync engine via
# get_sync_session(), and the embedding and LLM clients are the sync SDK
# clients.
# =============================================================================

import logging
import threading
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta

from app.config import settings
from app.db.engine import get_sync_session
from app.db.models import JobStatus
from app.services import job_store
from app.services.errors import PermanentPipelineError, PipelineError
from app.services.job_store import JobNotFoundError
from app.services.pipeline import DefaultDocumentPipeline, DocumentPipeline
from app.services.user_documents import get_user_document, save_user_document
from app.workers.celery_app import celery_app
from app.workers.dispatch import PROCESS_UPLOAD_TASK, enqueue_upload_job

logger = logging.getLogger(__name__)

PROGRESS_CLAIMED = 10
PROGRESS_EXTRACTED = 20
PROGRESS_CHUNKED = 40
PROGRESS_PREVIOUS_CLEARED = 50
PROGRESS_STORED = 70
PROGRESS_ANALYZED = 85
PROGRESS_FINALISING = 95

HEARTBEAT_LOST_MESSAGE = "Worker heartbeat lost"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class JobCancelledError(Exception):
    """The job left PROCESSING (superseded) while this worker was running it."""


class JobAttemptFailed(Exception):
    """
    One processing attempt failed; the error is already recorded on the job.

    retryable=True: the job was released and the message should be redelivered.
    retryable=False: the job is FAILED (final attempt or permanent error).
    """

    def __init__(self, message: str, retryable: bool = False, attempt: int = 1) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.attempt = attempt


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _stale_before() -> datetime:
    return datetime.now(UTC) - timedelta(seconds=settings.job_heartbeat_timeout_seconds)


def _backoff_seconds(attempt: int) -> int:
    """Delay before the attempt after `attempt`: 2s, 4s, 8s, ..."""
    return settings.queue_backoff_seconds * 2 ** (attempt - 1)


def _checkpoint(job_id: str, progress: int) -> None:
    """Persist progress in its own transaction; raise if the job was cancelled."""
    with get_sync_session() as session:
        still_processing = job_store.checkpoint(session, job_id, progress)
    if not still_processing:
        raise JobCancelledError(job_id)
    logger.info("[%s] progress=%d", job_id, progress)


def _is_retryable(exc: Exception, attempt: int) -> bool:
    if attempt >= settings.queue_max_attempts:
        return False
    if isinstance(exc, PermanentPipelineError):
        return settings.queue_retry_permanent_failures
    return True


@contextmanager
def _heartbeat(job_id: str) -> Iterator[None]:
    """
    Refresh heartbeat_at every job_heartbeat_interval_seconds while the
    block runs. The thread stops by itself once the job leaves PROCESSING.
    """
    interval = settings.job_heartbeat_interval_seconds
    if interval <= 0:
        yield
        return

    stop = threading.Event()

    def beat() -> None:
        while not stop.wait(interval):
            try:
                with get_sync_session() as session:
                    alive = job_store.touch_heartbeat(session, job_id)
            except Exception:
                logger.warning("[%s] Heartbeat write failed", job_id, exc_info=True)
                continue
            if not alive:
                return

    thread = threading.Thread(target=beat, name=f"heartbeat-{job_id}", daemon=True)
    thread.start()
    try:
        yield
    finally:
        stop.set()
        thread.join(timeout=5)


def _delete_quietly(pipeline: DocumentPipeline, job_id: str, ids: list[str], what: str) -> None:
    """Best-effort artifact deletion: failures are logged, never raised."""
    if not ids:
        return
    try:
        pipeline.delete_artifacts(ids)
        logger.info("[%s] Deleted %d %s artifact(s)", job_id, len(ids), what)
    except Exception:
        logger.warning(
            "[%s] Could not delete %d %s artifact(s)", job_id, len(ids), what, exc_info=True,
        )


def _previous_artifact_ids(job_id: str, user_id: str) -> list[str]:
    """
    Artifact ids of the user's current document, read just before deleting.

    The document is read first and the status checked second: if the job is
    still PROCESSING after the read, no newer upload can have completed, so
    the ids never belong to the job that superseded this one.
    """
    with get_sync_session() as session:
        doc = get_user_document(session, user_id)
        ids = list(doc.chunk_ids) if doc and doc.job_id != job_id else []
        if not job_store.is_processing(session, job_id):
            raise JobCancelledError(job_id)
    return ids


def _analyze_quietly(pipeline: DocumentPipeline, job_id: str, text: str) -> dict | None:
    try:
        analysis = pipeline.analyze_profile(text)
    except Exception:
        logger.warning("[%s] Profile analysis failed; completing without it", job_id, exc_info=True)
        return None
    if analysis is None:
        logger.info("[%s] No profile analysis available", job_id)
        return None
    return analysis.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


def execute_upload_job(job_id: str, pipeline: DocumentPipeline | None = None) -> dict:
    """
    Run one processing attempt for a job.

    Returns:
        {"job_id", "outcome": "skipped" | "completed" | "cancelled", ...}

    Raises:
        JobAttemptFailed: a stage failed. The job is either released for a
            retry (exc.retryable) or marked FAILED.
    """
    pipeline = pipeline or DefaultDocumentPipeline()

    # --- Load and claim ---
    with get_sync_session() as session:
        try:
            job = job_store.get_job(session, job_id)
        except JobNotFoundError:
            logger.warning("[%s] Job not found; dropping message", job_id)
            return {"job_id": job_id, "outcome": "skipped", "reason": "not_found"}

        if job_store.is_terminal(job):
            logger.info("[%s] Already %s; duplicate delivery skipped", job_id, job.status.value)
            return {"job_id": job_id, "outcome": "skipped", "reason": job.status.value}

        job = job_store.claim_job(session, job_id, _stale_before())
        if job is None:
            logger.info("[%s] Owned by another worker; duplicate delivery skipped", job_id)
            return {"job_id": job_id, "outcome": "skipped", "reason": "in_progress"}

        user_id = job.user_id
        file_info = dict(job.file_info)
        attempt = job.retry_count + 1
        payload = job_store.load_payload(session, job_id)

    logger.info(
        "[%s] Attempt %d/%d: user=%s, file=%s (%s, %d bytes)",
        job_id, attempt, settings.queue_max_attempts, user_id,
        file_info.get("file_name"), file_info.get("file_type"), len(payload),
    )

    stored_ids: list[str] = []
    try:
        with _heartbeat(job_id):
            _checkpoint(job_id, PROGRESS_CLAIMED)

            # --- Stage 1: extract text ---
            document = pipeline.extract_text(
                payload, file_info.get("file_type", ""), file_info.get("file_name", ""),
            )
            _checkpoint(job_id, PROGRESS_EXTRACTED)

            # --- Stage 2: chunk ---
            chunks = pipeline.chunk(document)
            if not chunks:
                raise PermanentPipelineError("No text chunks produced from document")
            _checkpoint(job_id, PROGRESS_CHUNKED)

            # --- Stage 3: delete the previous document's artifacts ---
            previous_ids = _previous_artifact_ids(job_id, user_id)
            _delete_quietly(pipeline, job_id, previous_ids, "superseded")
            _checkpoint(job_id, PROGRESS_PREVIOUS_CLEARED)

            # --- Stage 4: store new artifacts ---
            stored_ids = pipeline.store_artifacts(chunks, user_id, job_id)
            if len(stored_ids) != len(chunks):
                raise PipelineError(
                    f"Stored {len(stored_ids)} artifacts for {len(chunks)} chunks"
                )
            _checkpoint(job_id, PROGRESS_STORED)

            # --- Stage 5: profile analysis ---
            analysis = _analyze_quietly(pipeline, job_id, document.text)
            _checkpoint(job_id, PROGRESS_ANALYZED)

            # --- Stage 6/7: persist ---
            _checkpoint(job_id, PROGRESS_FINALISING)
            result = {
                "ids": stored_ids,
                "total_chunks": len(stored_ids),
                "analysis": analysis,
            }
            with get_sync_session() as session:
                if not job_store.complete_job(session, job_id, result):
                    raise JobCancelledError(job_id)
                save_user_document(session, user_id, job_id, file_info, stored_ids, analysis)

    except JobCancelledError:
        logger.info("[%s] Cancelled by a newer upload; stopping", job_id)
        _delete_quietly(pipeline, job_id, stored_ids, "orphaned")
        return {"job_id": job_id, "outcome": "cancelled"}

    except Exception as exc:
        logger.exception("[%s] Attempt %d failed: %s", job_id, attempt, exc)
        _delete_quietly(pipeline, job_id, stored_ids, "partial")

        retryable = _is_retryable(exc, attempt)
        message = str(exc)[:1000] or type(exc).__name__
        with get_sync_session() as session:
            if retryable:
                recorded = job_store.release_job(session, job_id)
            else:
                recorded = job_store.fail_job(
                    session, job_id, message, trace=traceback.format_exc(),
                )
        if not recorded:
            logger.info("[%s] Job left PROCESSING during the failed attempt", job_id)
            return {"job_id": job_id, "outcome": "cancelled"}

        raise JobAttemptFailed(message, retryable=retryable, attempt=attempt) from exc

    logger.info("[%s] Completed with %d artifact(s)", job_id, len(stored_ids))
    return {"job_id": job_id, "outcome": "completed", "total_chunks": len(stored_ids)}


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------


@celery_app.task(
    bind=True,
    name=PROCESS_UPLOAD_TASK,
    # Throttle dequeues per worker to protect the embedding / LLM APIs
    rate_limit=settings.worker_rate_limit,
    max_retries=settings.queue_max_attempts - 1,
)
def process_upload_job(self, job_id: str, user_id: str | None = None) -> dict:
    """
    Process one uploaded CV.

    Args:
        self: Celery task instance (bound task).
        job_id: UploadJob id; everything else is read from the job row.
        user_id: Owner, carried for log correlation only.
    """
    logger.info(
        "Received job %s (user=%s, task_id=%s, delivery=%d)",
        job_id, user_id, self.request.id, self.request.retries + 1,
    )
    try:
        return execute_upload_job(job_id)
    except JobAttemptFailed as exc:
        if not exc.retryable:
            raise
        countdown = _backoff_seconds(exc.attempt)
        logger.info("[%s] Retrying in %ds", job_id, countdown)
        raise self.retry(exc=exc, countdown=countdown)


@celery_app.task(name="reap_stale_jobs")
def reap_stale_jobs() -> dict:
    """
    Recover jobs whose worker died or whose message was lost.

    Stale jobs with attempts left are re-enqueued; the rest are failed with
    "Worker heartbeat lost". Every write is guarded on the job still being
    stale, so a worker that just claimed the job is never overridden.
    """
    cutoff = _stale_before()
    requeue: list[tuple[str, str]] = []
    failed: list[str] = []

    with get_sync_session() as session:
        for job in job_store.find_stale_jobs(session, cutoff):
            attempts_left = (
                job.status == JobStatus.PENDING
                or job.retry_count + 1 < settings.queue_max_attempts
            )
            if attempts_left:
                if job_store.requeue_stale_job(session, job.id, cutoff):
                    requeue.append((job.id, job.user_id))
            elif job_store.fail_job(session, job.id, HEARTBEAT_LOST_MESSAGE, stale_before=cutoff):
                failed.append(job.id)

    # Enqueue only after the requeue marks are committed
    for job_id, user_id in requeue:
        enqueue_upload_job(job_id, user_id)

    if requeue or failed:
        logger.warning(
            "Reaper: requeued %d job(s), failed %d job(s)", len(requeue), len(failed),
        )
    return {"requeued": [job_id for job_id, _ in requeue], "failed": failed}
