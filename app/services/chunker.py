# =============================================================================
# Token-Based Text Chunker — tiktoken
# =============================================================================
#
# Splits a parsed CV into overlapping token windows. Each chunk becomes one
# stored artifact, so the number of chunks returned here is exactly the
# number of artifact ids a completed job reports.
#
# Token windows (not characters) keep every chunk inside the embedding
# model's input limit; cl100k_base is the tokenizer of text-embedding-3-*.
#
# ALGORITHM:
# 1. Join elements with "\n\n", remembering each element's char span
# 2. Encode the full text once
# 3. Slide a chunk_size window forward by (chunk_size - chunk_overlap)
# 4. Decode each window; attach page/section metadata of the elements
#    the window overlaps
# =============================================================================

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, field

import tiktoken

from app.config import settings
from app.services.parser import ParsedDocument

logger = logging.getLogger(__name__)

_SEPARATOR = "\n\n"


@dataclass
class ChunkResult:
    """A chunk ready for embedding and storage."""

    content: str
    chunk_index: int  # 0-indexed position within the document
    token_count: int
    page_number: int = 0
    metadata: dict = field(default_factory=dict)


_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Lazily initialize and cache the tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def chunk_document(
    parsed_doc: ParsedDocument,
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
) -> list[ChunkResult]:
    """
    Split a parsed document into token chunks with page/section metadata.

    Whitespace-only elements are ignored. Returns [] for an empty document.
    """
    size = chunk_size or settings.chunk_size
    overlap = settings.chunk_overlap if chunk_overlap is None else chunk_overlap
    if overlap >= size:
        raise ValueError(f"chunk_overlap ({overlap}) must be smaller than chunk_size ({size})")

    elements = [e for e in parsed_doc.elements if e.text.strip()]
    if not elements:
        logger.warning("No elements to chunk in '%s'", parsed_doc.filename)
        return []

    # Start offset of every element in the joined text
    starts: list[int] = []
    parts: list[str] = []
    offset = 0
    for element in elements:
        starts.append(offset)
        parts.append(element.text)
        offset += len(element.text) + len(_SEPARATOR)
    full_text = _SEPARATOR.join(parts)

    encoder = _get_encoder()
    tokens = encoder.encode(full_text)
    if not tokens:
        return []

    # Char offset where each token starts (+ sentinel)
    token_offsets = [0]
    for token in tokens:
        token_offsets.append(token_offsets[-1] + len(encoder.decode([token])))

    chunks: list[ChunkResult] = []
    step = size - overlap

    for start in range(0, len(tokens), step):
        end = min(start + size, len(tokens))
        window = tokens[start:end]
        text = encoder.decode(window).strip()

        if text:
            first = max(bisect.bisect_right(starts, token_offsets[start]) - 1, 0)
            last = max(bisect.bisect_right(starts, max(token_offsets[end] - 1, 0)) - 1, first)
            covered = elements[first : last + 1]

            chunks.append(ChunkResult(
                content=text,
                chunk_index=len(chunks),
                token_count=len(window),
                page_number=covered[0].page_number,
                metadata={
                    "section_title": next(
                        (e.section_title for e in covered if e.section_title), None
                    ),
                    "source_pages": sorted({e.page_number for e in covered if e.page_number > 0}),
                    "contains_table": any(e.element_type == "table" for e in covered),
                },
            ))

        if end >= len(tokens):
            break

    logger.info(
        "Chunked '%s' into %d chunks (%d tokens, size=%d, overlap=%d)",
        parsed_doc.filename, len(chunks), len(tokens), size, overlap,
    )
    return chunks
