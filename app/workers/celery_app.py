# =============================================================================
# Celery Application Configuration — the Dispatch Queue
# =============================================================================
#
# Celery + Redis carry one small message per upload: {job_id, user_id}.
# The job itself (payload, status, progress) lives in PostgreSQL; the
# message is only a pointer, so losing or duplicating it never loses or
# corrupts state.
#
# ARCHITECTURE:
# ┌──────────┐     ┌───────┐     ┌──────────────┐     ┌────────────┐
# │ FastAPI  │────▶│ Redis │────▶│ Celery Worker│────▶│ PostgreSQL │
# │ (accept) │     │(broker)│    │ (2 slots)    │     │ (job store)│
# └──────────┘     └───────┘     └──────────────┘     └────────────┘
#                      ▲                │
#                      └── celery beat: reap_stale_jobs every minute
#
# DELIVERY GUARANTEES:
# - at-least-once: acks_late + reject_on_worker_lost re-queue a message
#   whose worker died. The task body is idempotent (see tasks.py).
# - retries: 3 attempts in total, exponential backoff 2s, 4s.
# - retention: results expire after 24h; they are for operators only,
#   clients read status from the job store.
# =============================================================================

from celery import Celery

from app.config import settings

celery_app = Celery(
    "app.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    # JSON only: the message is two strings, never the file bytes.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Ack after the task returns, and re-queue if the worker process dies.
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # One message per slot at a time; CV processing is long-running.
    worker_prefetch_multiplier=1,

    # --- Worker Pool ---
    # Two concurrent slots per worker. Each slot is a prefork process, so a
    # stalled LLM call blocks only its own slot.
    worker_concurrency=settings.worker_concurrency,

    # --- Timeouts ---
    # Hard ceiling on one attempt. A killed attempt is picked up by the
    # reaper once its heartbeat goes stale.
    task_soft_time_limit=300,
    task_time_limit=600,

    # --- Results ---
    result_expires=settings.queue_result_expires_seconds,

    # --- Periodic Tasks ---
    beat_schedule={
        "reap-stale-upload-jobs": {
            "task": "reap_stale_jobs",
            "schedule": float(settings.job_reaper_interval_seconds),
        },
    },

    include=["app.workers.tasks"],
)
