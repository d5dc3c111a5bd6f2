from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import ValidationError
from .models import KnowledgeBaseSettings

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


@dataclass
class TextChunk:
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def chunk_text(
    content: str,
    metadata: Optional[Dict[str, Any]] = None,
    *,
    chunk_size: int = 1000,
    chunk_overlap: int = 200,
) -> List[TextChunk]:
    """
    Split text into ordered, overlapping chunks along paragraph boundaries.

    Paragraphs are accumulated until the next one would push the buffer past
    ``chunk_size`` characters. The buffer is then emitted and the next one is
    seeded with the tail of the emitted chunk so neighbouring chunks share
    context. A paragraph longer than ``chunk_size`` is never split and ends up
    as one oversized chunk.
    """
    if chunk_size <= 0:
        raise ValidationError("chunk_size must be positive")
    if chunk_overlap < 0:
        raise ValidationError("chunk_overlap must not be negative")
    if chunk_overlap >= chunk_size:
        raise ValidationError("chunk_overlap must be smaller than chunk_size")

    base_metadata = dict(metadata or {})
    chunks: list[TextChunk] = []
    buffer = ""
    buffer_start = 0
    buffer_end = 0

    def emit(text: str, start: int, end: int) -> None:
        chunks.append(
            TextChunk(
                content=text,
                metadata={
                    **base_metadata,
                    "chunk_index": len(chunks),
                    "start_char": start,
                    "end_char": end,
                },
            )
        )

    for paragraph, start, end in _split_paragraphs(content or ""):
        if buffer and len(buffer) + len(paragraph) > chunk_size:
            emitted = buffer.strip()
            emit(emitted, buffer_start, buffer_end)

            tail = overlap_tail(emitted, chunk_overlap).strip()
            buffer = f"{tail}\n\n{paragraph}" if tail else paragraph
            buffer_start = max(0, buffer_end - len(tail)) if tail else start
        else:
            if not buffer:
                buffer_start = start
            buffer = f"{buffer}\n\n{paragraph}" if buffer else paragraph
        buffer_end = end

    if buffer.strip():
        emit(buffer.strip(), buffer_start, buffer_end)

    return chunks


def overlap_tail(text: str, overlap_size: int) -> str:
    """
    Return the end of ``text`` carried into the next chunk.

    Prefers starting right after the last sentence break when that break sits
    in the second half of the tail.
    """
    if overlap_size <= 0:
        return ""
    if len(text) <= overlap_size:
        return text
    tail = text[-overlap_size:]
    last_sentence = tail.rfind(". ")
    if last_sentence > overlap_size * 0.5:
        return tail[last_sentence + 2 :]
    return tail


def _split_paragraphs(text: str) -> List[Tuple[str, int, int]]:
    """Return non-blank paragraphs with their (start, end) offsets in ``text``."""
    spans: list[tuple[int, int]] = []
    cursor = 0
    for match in _PARAGRAPH_BREAK.finditer(text):
        spans.append((cursor, match.start()))
        cursor = match.end()
    spans.append((cursor, len(text)))

    paragraphs: list[tuple[str, int, int]] = []
    for start, end in spans:
        raw = text[start:end]
        stripped = raw.strip()
        if not stripped:
            continue
        leading = len(raw) - len(raw.lstrip())
        paragraphs.append((stripped, start + leading, start + leading + len(stripped)))
    return paragraphs


class Chunker:
    """Chunker bound to the chunking settings of one knowledge base."""

    def __init__(self, chunk_size: int = 1000, chunk_overlap: int = 200) -> None:
        if chunk_size <= 0:
            raise ValidationError("chunk_size must be positive")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValidationError(
                f"chunk_overlap ({chunk_overlap}) must be in [0, chunk_size={chunk_size})"
            )
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    @classmethod
    def for_settings(cls, settings: KnowledgeBaseSettings) -> "Chunker":
        return cls(chunk_size=settings.chunk_size, chunk_overlap=settings.chunk_overlap)

    def chunk(self, content: str, metadata: Optional[Dict[str, Any]] = None) -> List[TextChunk]:
        return chunk_text(
            content,
            metadata,
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )


__all__ = ["Chunker", "TextChunk", "chunk_text", "overlap_tail"]
