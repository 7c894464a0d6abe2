# =============================================================================
# Artifact Store — Pluggable Vector Backend
# =============================================================================
#
# Stores embedded CV chunks ("artifacts") and deletes them again when a
# newer upload supersedes them or a cancelled run must be cleaned up.
#
# DESIGN DECISION: Protocol (structural typing) over ABC. Tests can pass any
# object with add_chunks()/delete_chunks() without inheriting from anything.
#
# DESIGN DECISION: Caller-supplied string ids. The pipeline generates
# `user_{user_id}_{ms}_{i}` ids up front, so both backends return the same
# ids and the worker can record them on the job and the user document
# before (and independently of) which backend holds them.
#
# Both implementations are sync: the only caller is the Celery worker.
#
# ARCHITECTURE:
#   ArtifactStore (Protocol)
#   ├── PgVectorStore     — `chunks` table, pgvector embedding column
#   └── ChromaVectorStore — ChromaDB collection (in-process or HTTP)
# =============================================================================

from __future__ import annotations

import logging
from typing import Protocol

import chromadb
from sqlalchemy import delete

from app.config import settings
from app.db.engine import get_sync_session
from app.db.models import Chunk

logger = logging.getLogger(__name__)


class ArtifactStore(Protocol):
    """Write-side interface the worker needs from a vector backend."""

    def add_chunks(
        self,
        ids: list[str],
        user_id: str,
        contents: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict],
    ) -> list[str]:
        """Store chunks under the given ids. Returns the stored ids in order."""
        ...

    def delete_chunks(self, ids: list[str]) -> int:
        """Delete chunks by id. Unknown ids are ignored. Returns ids requested."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------


class PgVectorStore:
    """pgvector-backed artifact store using the `chunks` table."""

    def add_chunks(
        self,
        ids: list[str],
        user_id: str,
        contents: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict],
    ) -> list[str]:
        with get_sync_session() as session:
            for chunk_id, content, embedding, meta in zip(
                ids, contents, embeddings, metadatas, strict=True
            ):
                session.add(Chunk(
                    id=chunk_id,
                    user_id=user_id,
                    job_id=meta.get("job_id"),
                    content=content,
                    chunk_index=meta.get("chunk_index", 0),
                    token_count=meta.get("token_count", 0),
                    embedding=embedding,
                    metadata_=meta,
                ))

        logger.info("Stored %d chunks for user %s in pgvector", len(ids), user_id)
        return list(ids)

    def delete_chunks(self, ids: list[str]) -> int:
        if not ids:
            return 0
        with get_sync_session() as session:
            session.execute(delete(Chunk).where(Chunk.id.in_(ids)))
        logger.info("Deleted %d chunks from pgvector", len(ids))
        return len(ids)


# ---------------------------------------------------------------------------
# Implementation 2: ChromaDB
# ---------------------------------------------------------------------------


class ChromaVectorStore:
    """
    ChromaDB-backed artifact store.

    One collection for all users; `user_id` is kept in chunk metadata so
    downstream retrieval can filter with a `where` clause.
    """

    def __init__(self, collection_name: str | None = None) -> None:
        if settings.chroma_url:
            self._client = chromadb.HttpClient(host=settings.chroma_url)
        else:
            self._client = chromadb.Client()

        self._collection = self._client.get_or_create_collection(
            name=collection_name or settings.chroma_collection,
            metadata={"hnsw:space": "cosine"},
        )

    def add_chunks(
        self,
        ids: list[str],
        user_id: str,
        contents: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict],
    ) -> list[str]:
        sanitised = [
            _sanitise_chroma_metadata({**meta, "user_id": user_id})
            for meta in metadatas
        ]
        # upsert: a redelivered run that reuses ids must not fail on duplicates
        self._collection.upsert(
            ids=list(ids),
            documents=contents,
            embeddings=embeddings,
            metadatas=sanitised,
        )
        logger.info("Stored %d chunks for user %s in ChromaDB", len(ids), user_id)
        return list(ids)

    def delete_chunks(self, ids: list[str]) -> int:
        if not ids:
            return 0
        self._collection.delete(ids=list(ids))
        logger.info("Deleted %d chunks from ChromaDB", len(ids))
        return len(ids)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def get_vector_store(
    override_type: str | None = None,
) -> PgVectorStore | ChromaVectorStore:
    """Return the configured artifact store backend ("pgvector" or "chroma")."""
    store_type = override_type or settings.vectorstore_type

    if store_type == "chroma":
        return ChromaVectorStore()
    return PgVectorStore()


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    ChromaDB metadata values must be str, int, float, or bool.

    list → comma-separated string, None → dropped, other → str().
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised
