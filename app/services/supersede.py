# =============================================================================
# Supersede Controller — One Active Upload per User
# =============================================================================
#
# A new upload cancels every pending/processing job of the same user before
# the new job is created. Cancellation is a status write only: a worker that
# is mid-run is not interrupted, it notices at its next guarded write
# (checkpoint() → False) and stops.
#
# Each cancel is a compare-and-set, so a job that completes between the
# listing and the cancel keeps its `completed` status.
# =============================================================================

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.services import job_store

logger = logging.getLogger(__name__)

SUPERSEDED_REASON = "Cancelled due to new CV upload"


def supersede_active_jobs(
    session: Session,
    user_id: str,
    reason: str = SUPERSEDED_REASON,
) -> list[str]:
    """
    Cancel the user's non-terminal jobs. Does not commit.

    Returns:
        Ids of the jobs this call actually cancelled.
    """
    cancelled = job_store.cancel_active_jobs(session, user_id, reason)
    if cancelled:
        logger.info("Superseded %d job(s) for user %s", len(cancelled), user_id)
    return cancelled
