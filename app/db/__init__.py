# =============================================================================
# Database Package
# =============================================================================
# Provides SQLAlchemy engines, session management, and ORM models.
#
# Key exports:
#   - get_async_session: FastAPI dependency for database sessions
#   - get_sync_session: context manager for Celery workers
#   - UploadJob, UserDocument, Chunk: ORM models
# =============================================================================
