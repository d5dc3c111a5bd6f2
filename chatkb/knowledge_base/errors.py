"""
Exception hierarchy raised by the knowledge base engine.

Every error derives from ``ChatKBError`` so callers can catch the whole family
at an interface boundary (the CLI does this). Wrapping errors keep the
original exception as ``__cause__``.
"""

from __future__ import annotations

from typing import Optional


class ChatKBError(Exception):
    """Base class for knowledge base errors."""


class ValidationError(ChatKBError):
    """Invalid settings or ingestion input."""


class EmbeddingError(ChatKBError):
    """Embedding provider failure, dimension mismatch or count mismatch."""


class StorageError(ChatKBError):
    """Vector store insert, delete, search or connectivity failure."""

    def __init__(self, message: str, *, batch_index: Optional[int] = None) -> None:
        super().__init__(message)
        self.batch_index = batch_index


class NotFoundError(ChatKBError):
    """The requested knowledge base does not exist or is inactive."""


class SynthesisError(ChatKBError):
    """The language model call failed while composing an answer."""


class DocumentProcessingError(ChatKBError):
    """A source file could not be turned into text; carries the file path."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"Failed to process {path}: {message}")
        self.path = path


class IngestionError(ChatKBError):
    """A document could not be ingested; tagged with the document id."""

    def __init__(self, document_id: str, stage: str, message: str) -> None:
        super().__init__(f"Failed to ingest document {document_id!r} during {stage}: {message}")
        self.document_id = document_id
        self.stage = stage


class QueryError(ChatKBError):
    """A query failed; carries the query text and the failing stage."""

    def __init__(self, query: str, stage: str, message: str) -> None:
        super().__init__(f"Query {query!r} failed during {stage}: {message}")
        self.query = query
        self.stage = stage


__all__ = [
    "ChatKBError",
    "ValidationError",
    "EmbeddingError",
    "StorageError",
    "NotFoundError",
    "SynthesisError",
    "DocumentProcessingError",
    "IngestionError",
    "QueryError",
]
