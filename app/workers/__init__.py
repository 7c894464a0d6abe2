# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery application configuration and beat schedule
#   - dispatch.py: enqueue helper used by the API (send_task by name)
#   - tasks.py: upload processing task and the stale-job reaper
#
# Parsing, embedding and LLM calls take seconds each, so the API only
# records the job and returns its id; clients poll for status.
# =============================================================================
