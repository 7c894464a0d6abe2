# =============================================================================
# Dispatch — Handing a Job Reference to the Queue
# =============================================================================
#
# The message is {job_id, user_id} and nothing else. Sent by task name so
# the API process does not import the worker's pipeline stack (Docling,
# tiktoken) just to enqueue.
# =============================================================================

import logging

from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

PROCESS_UPLOAD_TASK = "process_upload_job"


def enqueue_upload_job(job_id: str, user_id: str, countdown: float | None = None) -> str:
    """Publish a processing message for `job_id`. Returns the Celery task id."""
    result = celery_app.send_task(
        PROCESS_UPLOAD_TASK,
        kwargs={"job_id": job_id, "user_id": user_id},
        countdown=countdown,
    )
    logger.info("Enqueued job %s for user %s (task_id=%s)", job_id, user_id, result.id)
    return result.id
