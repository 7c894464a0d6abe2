# =============================================================================
# Document Pipeline Adapter — the Worker's Collaborator Contract
# =============================================================================
#
# The worker orchestrates stages; this adapter does the actual work of each
# stage. Keeping it behind a Protocol means the worker's state handling
# (claim, checkpoints, cancellation, retries) is tested with a fake pipeline,
# without Docling, OpenAI or a vector database.
#
#   extract_text(bytes, type)     → ParsedDocument (.text is the plain text)
#   chunk(document)               → list[ChunkResult]
#   delete_artifacts(ids)         → None        (best-effort, caller swallows)
#   store_artifacts(chunks, user) → list[str]   (one id per chunk, in order)
#   analyze_profile(text)         → ProfileAnalysis | None (None = no analysis)
# =============================================================================

from __future__ import annotations

import logging
import time
from typing import Protocol

from app.models.profile import ProfileAnalysis
from app.services.chunker import ChunkResult, chunk_document
from app.services.embedder import embed_batch
from app.services.errors import PipelineError
from app.services.parser import ParsedDocument, parse_document
from app.services.profile_analysis import analyze_profile
from app.services.vectorstore import ArtifactStore, get_vector_store

logger = logging.getLogger(__name__)


class DocumentPipeline(Protocol):
    """Collaborator contract consumed by the upload worker."""

    def extract_text(self, data: bytes, file_type: str, file_name: str) -> ParsedDocument:
        ...

    def chunk(self, document: ParsedDocument) -> list[ChunkResult]:
        ...

    def delete_artifacts(self, ids: list[str]) -> None:
        ...

    def store_artifacts(self, chunks: list[ChunkResult], user_tag: str, job_id: str) -> list[str]:
        ...

    def analyze_profile(self, text: str) -> ProfileAnalysis | None:
        ...


def make_artifact_ids(user_tag: str, count: int, timestamp_ms: int | None = None) -> list[str]:
    """`user_{user}_{ms}_{i}`: unique per run, grouped per user."""
    ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    return [f"user_{user_tag}_{ts}_{i}" for i in range(count)]


class DefaultDocumentPipeline:
    """Docling → tiktoken → OpenAI embeddings → vector store, plus LLM analysis."""

    def __init__(self, store: ArtifactStore | None = None) -> None:
        self._store = store

    @property
    def store(self) -> ArtifactStore:
        if self._store is None:
            self._store = get_vector_store()
        return self._store

    def extract_text(self, data: bytes, file_type: str, file_name: str) -> ParsedDocument:
        return parse_document(data, file_name, file_type)

    def chunk(self, document: ParsedDocument) -> list[ChunkResult]:
        return chunk_document(document)

    def delete_artifacts(self, ids: list[str]) -> None:
        if ids:
            self.store.delete_chunks(ids)

    def store_artifacts(self, chunks: list[ChunkResult], user_tag: str, job_id: str) -> list[str]:
        if not chunks:
            return []

        contents = [c.content for c in chunks]
        embeddings = embed_batch(contents)
        if len(embeddings) != len(chunks):
            raise PipelineError(
                f"Embedding count mismatch: {len(embeddings)} for {len(chunks)} chunks"
            )

        ids = make_artifact_ids(user_tag, len(chunks))
        metadatas = [
            {
                "job_id": job_id,
                "doc_type": "cv",
                "chunk_index": c.chunk_index,
                "token_count": c.token_count,
                "page_number": c.page_number,
                **c.metadata,
            }
            for c in chunks
        ]
        return self.store.add_chunks(
            ids=ids,
            user_id=user_tag,
            contents=contents,
            embeddings=embeddings,
            metadatas=metadatas,
        )

    def analyze_profile(self, text: str) -> ProfileAnalysis | None:
        return analyze_profile(text)
