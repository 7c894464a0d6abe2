# =============================================================================
# Shared Test Fixtures
# =============================================================================
#
# The job store runs against in-memory SQLite (one shared connection via
# StaticPool). Only the job tables are created; `chunks` needs pgvector.
#
# `worker_sessions` points the worker's get_sync_session() at the same
# database, so execute_upload_job() and reap_stale_jobs() run end to end
# without PostgreSQL, Redis or a Celery worker.
# =============================================================================

from collections.abc import Iterator
from contextlib import contextmanager

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import settings
from app.db.models import Base, UploadJob, UserDocument
from app.services.chunker import ChunkResult
from app.services.parser import ParsedDocument, ParsedElement


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(
        engine, tables=[UploadJob.__table__, UserDocument.__table__],
    )
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def session(session_factory) -> Iterator[Session]:
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


def _scoped_sessions(factory):
    @contextmanager
    def _sync_session():
        s = factory()
        try:
            yield s
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    return _sync_session


@pytest.fixture
def worker_sessions(session_factory, monkeypatch):
    """Route the worker's short-lived sessions to the test database."""
    sync_session = _scoped_sessions(session_factory)
    monkeypatch.setattr("app.workers.tasks.get_sync_session", sync_session)
    # No background heartbeat thread here; see threaded_worker_sessions
    monkeypatch.setattr(settings, "job_heartbeat_interval_seconds", 0)
    return sync_session


@pytest.fixture
def threaded_worker_sessions(tmp_path, monkeypatch):
    """
    Worker sessions on a file-backed SQLite database, one connection per
    thread, with a fast heartbeat. For tests that run the heartbeat thread.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'jobs.db'}",
        connect_args={"check_same_thread": False, "timeout": 5},
    )
    Base.metadata.create_all(
        engine, tables=[UploadJob.__table__, UserDocument.__table__],
    )
    sync_session = _scoped_sessions(sessionmaker(bind=engine, expire_on_commit=False))
    monkeypatch.setattr("app.workers.tasks.get_sync_session", sync_session)
    monkeypatch.setattr(settings, "job_heartbeat_interval_seconds", 0.05)
    yield sync_session
    engine.dispose()


# ---------------------------------------------------------------------------
# Fake Document Pipeline
# ---------------------------------------------------------------------------


class FakePipeline:
    """
    In-memory DocumentPipeline.

    `fail_store_times`: how many store_artifacts() calls raise before one
    succeeds. `hooks` maps a method name to a callable run before it, so a
    test can cancel the job at an exact stage.
    """

    def __init__(
        self,
        chunk_count: int = 3,
        fail_store_times: int = 0,
        analysis=None,
        text: str = "Jane Doe\nSenior Python Engineer",
    ) -> None:
        self.chunk_count = chunk_count
        self.fail_store_times = fail_store_times
        self.analysis = analysis
        self.text = text
        self.stored: dict[str, str] = {}
        self.deleted: list[str] = []
        self.calls: list[str] = []
        self.hooks: dict = {}
        self._run = 0

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        hook = self.hooks.get(name)
        if hook is not None:
            hook()

    def extract_text(self, data: bytes, file_type: str, file_name: str) -> ParsedDocument:
        self._enter("extract_text")
        return ParsedDocument(
            elements=[ParsedElement(text=self.text, page_number=1, element_type="text")],
            page_count=1,
            filename=file_name,
        )

    def chunk(self, document: ParsedDocument) -> list[ChunkResult]:
        self._enter("chunk")
        return [
            ChunkResult(content=f"chunk {i}", chunk_index=i, token_count=2)
            for i in range(self.chunk_count)
        ]

    def delete_artifacts(self, ids: list[str]) -> None:
        self._enter("delete_artifacts")
        for artifact_id in ids:
            self.deleted.append(artifact_id)
            self.stored.pop(artifact_id, None)

    def store_artifacts(self, chunks: list[ChunkResult], user_tag: str, job_id: str) -> list[str]:
        self._enter("store_artifacts")
        self._run += 1
        if self.fail_store_times > 0:
            self.fail_store_times -= 1
            raise ConnectionError("embedding API unavailable")
        ids = [f"user_{user_tag}_{self._run}_{c.chunk_index}" for c in chunks]
        for artifact_id, c in zip(ids, chunks, strict=True):
            self.stored[artifact_id] = c.content
        return ids

    def analyze_profile(self, text: str):
        self._enter("analyze_profile")
        return self.analysis


@pytest.fixture
def fake_pipeline() -> FakePipeline:
    return FakePipeline()


@pytest.fixture
def make_pipeline():
    return FakePipeline


@pytest.fixture
def file_info() -> dict:
    return {
        "file_name": "cv.pdf",
        "file_type": "pdf",
        "mime_type": "application/pdf",
        "file_size": 204_800,
    }
