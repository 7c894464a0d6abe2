# =============================================================================
# Embedding Service — Batch Vector Generation
# =============================================================================
#
# Turns CV chunks into embedding vectors through any OpenAI-compatible
# embeddings endpoint (base_url is configurable).
#
# Sync: the only caller is the Celery worker's "store artifacts" stage.
# No retry logic here. A failed call fails the stage and the task's
# retry/backoff decides whether the job runs again.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence

from openai import OpenAI

from app.config import settings

logger = logging.getLogger(__name__)

_client: OpenAI | None = None


def _get_client() -> OpenAI:
    """Lazily initialize and cache the embedding client."""
    global _client
    if _client is None:
        resolved_key = settings.openai_api_key or settings.llm_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        if settings.embedding_base_url:
            client_kwargs["base_url"] = settings.embedding_base_url

        _client = OpenAI(**client_kwargs)
        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            settings.embedding_model,
            settings.embedding_base_url or "https://api.openai.com/v1",
        )
    return _client


def embed_batch(
    texts: Sequence[str],
    batch_size: int | None = None,
) -> list[list[float]]:
    """
    Embed texts in sub-batches, preserving input order.

    Raises:
        ValueError: no API key configured.
        openai.APIError: the provider call failed (transient → job retry).
    """
    if not texts:
        return []

    client = _get_client()
    size = batch_size or settings.embedding_batch_size
    vectors: list[list[float]] = [[] for _ in texts]

    for start in range(0, len(texts), size):
        batch = list(texts[start : start + size])
        kwargs: dict = {"model": settings.embedding_model, "input": batch}
        if settings.embedding_dimensions:
            kwargs["dimensions"] = settings.embedding_dimensions

        response = client.embeddings.create(**kwargs)

        # The API returns items in input order; `index` makes it explicit
        for item in response.data:
            vectors[start + item.index] = item.embedding

    logger.info(
        "Generated %d embeddings (model=%s, batches=%d)",
        len(texts),
        settings.embedding_model,
        (len(texts) + size - 1) // size,
    )
    return vectors
