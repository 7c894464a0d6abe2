# =============================================================================
# User Documents — the Current CV per User
# =============================================================================
#
# One row per user, replaced wholesale by each completed job. Its
# `chunk_ids` are the "superseded artifacts" the next job deletes before
# storing its own.
# =============================================================================

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from app.db.models import UserDocument

logger = logging.getLogger(__name__)


def get_user_document(session: Session, user_id: str) -> UserDocument | None:
    return session.get(UserDocument, user_id, populate_existing=True)


def save_user_document(
    session: Session,
    user_id: str,
    job_id: str,
    file_info: dict,
    chunk_ids: list[str],
    analysis: dict | None,
) -> UserDocument:
    """Insert or overwrite the user's current document. Does not commit."""
    doc = session.get(UserDocument, user_id)
    if doc is None:
        doc = UserDocument(user_id=user_id)
        session.add(doc)

    doc.job_id = job_id
    doc.file_name = file_info.get("file_name", "")
    doc.file_type = file_info.get("file_type", "")
    doc.chunk_ids = list(chunk_ids)
    doc.total_chunks = len(chunk_ids)
    doc.analysis = analysis
    doc.uploaded_at = datetime.now(UTC)

    session.flush()
    logger.info(
        "Saved current document for user %s (job %s, %d chunks)",
        user_id, job_id, len(chunk_ids),
    )
    return doc
