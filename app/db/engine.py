# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Two engines share one schema:
#
#   async engine (asyncpg)   → FastAPI accept path and status queries
#   sync engine  (psycopg2)  → Celery workers and the reaper
#
# The job store itself is written once against a sync `Session`. The API
# reaches it through `AsyncSession.run_sync()`, which hands the store a sync
# facade bound to the same connection without blocking the event loop.
#
# COMMIT POLICY:
# 1. Dependency-injected (get_async_session via Depends): auto-commits when
#    the handler returns. The accept path commits mid-handler because the
#    supersede cancellation must be durable before the new job is created.
#
# 2. get_sync_session(): commit on clean exit, rollback on exception. Worker
#    writes use one short session per checkpoint so every progress value is
#    visible to pollers immediately.
# =============================================================================

from collections.abc import AsyncGenerator, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# expire_on_commit=False: the accept path reads job attributes after commit
# to build its response; expiring them would trigger lazy loads outside
# the async greenlet context.
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=10,
)

async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Sync Engine — For Celery Workers (Lazy Initialization)
# ---------------------------------------------------------------------------
# Created on first use so the API process never needs psycopg2.
# pool_pre_ping: worker processes live for hours between jobs; stale pooled
# connections are detected before a checkpoint write instead of failing it.
# ---------------------------------------------------------------------------

_sync_engine = None
_sync_session_factory = None


def _get_sync_engine():
    """Lazily create and cache the sync SQLAlchemy engine."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(
            settings.database_url_sync,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )
    return _sync_engine


def _get_sync_session_factory():
    """Lazily create and cache the sync session factory."""
    global _sync_session_factory
    if _sync_session_factory is None:
        _sync_session_factory = sessionmaker(
            bind=_get_sync_engine(),
            class_=Session,
            expire_on_commit=False,
        )
    return _sync_session_factory


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """
    Context manager that provides a sync database session for Celery workers.

    Usage:
        with get_sync_session() as session:
            job_store.checkpoint(session, job_id, 40)
            # Auto-commits on exit, auto-rollbacks on exception
    """
    factory = _get_sync_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    The session commits when the handler returns and rolls back if it raises.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """
    Create the pgvector extension and any missing tables.

    Idempotent; called once at API startup. Schema changes to existing
    tables are not handled here.
    """
    from app.db.models import Base

    async with async_engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
