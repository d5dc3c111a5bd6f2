from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from .errors import ValidationError

Relevance = Literal["high", "medium", "low"]
RetrievalMethod = Literal["similarity", "mmr", "hybrid"]
RETRIEVAL_METHODS: Tuple[str, ...] = ("similarity", "mmr", "hybrid")

NO_RESULTS_ANSWER = (
    "I couldn't find relevant information in the knowledge base to answer your question."
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp written by ``datetime.isoformat``."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class RelevancePolicy:
    """Score cut-offs for the high / medium / low relevance buckets."""

    high: float = 0.85
    medium: float = 0.75

    def __post_init__(self) -> None:
        if not 0.0 <= self.medium <= self.high <= 1.0:
            raise ValidationError(
                f"relevance thresholds must satisfy 0 <= medium <= high <= 1, "
                f"got medium={self.medium} high={self.high}"
            )

    @classmethod
    def query_level(cls) -> "RelevancePolicy":
        """The looser cut-off used when labelling answers for a query."""
        return cls(high=0.85, medium=0.70)

    def classify(self, score: float) -> Relevance:
        if score >= self.high:
            return "high"
        if score >= self.medium:
            return "medium"
        return "low"


@dataclass
class KnowledgeBaseSettings:
    chunk_size: int = 1000
    chunk_overlap: int = 200
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    retrieval_method: RetrievalMethod = "mmr"
    relevance: RelevancePolicy = field(default_factory=RelevancePolicy)

    def validate(self) -> None:
        if self.chunk_size <= 0:
            raise ValidationError("chunk_size must be positive")
        if self.chunk_overlap < 0:
            raise ValidationError("chunk_overlap must not be negative")
        if self.chunk_overlap >= self.chunk_size:
            raise ValidationError(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller than "
                f"chunk_size ({self.chunk_size})"
            )
        if self.embedding_dimensions <= 0:
            raise ValidationError("embedding_dimensions must be positive")
        if self.retrieval_method not in RETRIEVAL_METHODS:
            raise ValidationError(
                f"retrieval_method must be one of {RETRIEVAL_METHODS}, "
                f"got {self.retrieval_method!r}"
            )


@dataclass
class KnowledgeBaseStatistics:
    total_documents: int = 0
    total_chunks: int = 0
    average_chunk_size: float = 0.0
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_documents": self.total_documents,
            "total_chunks": self.total_chunks,
            "average_chunk_size": round(self.average_chunk_size, 2),
            "last_updated": self.last_updated.isoformat(),
        }


@dataclass
class KnowledgeBase:
    id: str
    organization_id: str
    name: str
    description: str
    settings: KnowledgeBaseSettings
    statistics: KnowledgeBaseStatistics = field(default_factory=KnowledgeBaseStatistics)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def collection_name(self) -> str:
        return f"kb_{self.id}"

    def to_record(self) -> Dict[str, Any]:
        """Flatten into a row of the knowledge-base table."""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "description": self.description,
            "embedding_model": self.settings.embedding_model,
            "embedding_dimensions": self.settings.embedding_dimensions,
            "chunk_size": self.settings.chunk_size,
            "chunk_overlap": self.settings.chunk_overlap,
            "retrieval_method": self.settings.retrieval_method,
            "relevance_high": self.settings.relevance.high,
            "relevance_medium": self.settings.relevance.medium,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "KnowledgeBase":
        defaults = KnowledgeBaseSettings()
        settings = KnowledgeBaseSettings(
            chunk_size=int(record.get("chunk_size", defaults.chunk_size)),
            chunk_overlap=int(record.get("chunk_overlap", defaults.chunk_overlap)),
            embedding_model=record.get("embedding_model", defaults.embedding_model),
            embedding_dimensions=int(
                record.get("embedding_dimensions", defaults.embedding_dimensions)
            ),
            retrieval_method=record.get("retrieval_method", defaults.retrieval_method),
            relevance=RelevancePolicy(
                high=float(record.get("relevance_high", defaults.relevance.high)),
                medium=float(record.get("relevance_medium", defaults.relevance.medium)),
            ),
        )
        created_at = parse_timestamp(record.get("created_at")) or utcnow()
        return cls(
            id=record["id"],
            organization_id=record["organization_id"],
            name=record["name"],
            description=record.get("description") or "",
            settings=settings,
            is_active=bool(record.get("is_active", True)),
            created_at=created_at,
            updated_at=parse_timestamp(record.get("updated_at")) or created_at,
        )


@dataclass
class Document:
    """A caller-supplied document; only lives for the duration of ingestion."""

    id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValidationError("document id is required")
        if not isinstance(self.content, str):
            raise ValidationError(f"document {self.id!r} content must be a string")
        if not isinstance(self.metadata, dict):
            raise ValidationError(f"document {self.id!r} metadata must be a mapping")


def chunk_id_for(document_id: str, chunk_index: int) -> str:
    return f"{document_id}_chunk_{chunk_index}"


@dataclass
class DocumentChunk:
    id: str
    document_id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[List[float]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def chunk_index(self) -> int:
        return int(self.metadata.get("chunk_index", 0))

    @property
    def source(self) -> str:
        return str(self.metadata.get("source") or self.document_id)

    def to_dict(self, *, include_embedding: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "document_id": self.document_id,
            "content": self.content,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if include_embedding:
            payload["embedding"] = self.embedding
        return payload


@dataclass
class RetrievalResult:
    chunk: DocumentChunk
    score: float
    relevance: Relevance = "low"

    def to_dict(self, *, include_embedding: bool = False) -> Dict[str, Any]:
        return {
            "chunk": self.chunk.to_dict(include_embedding=include_embedding),
            "score": self.score,
            "relevance": self.relevance,
        }


@dataclass
class QueryFilters:
    document_ids: Optional[List[str]] = None
    sources: Optional[List[str]] = None
    date_range: Optional[Tuple[datetime, datetime]] = None

    def is_empty(self) -> bool:
        return not self.document_ids and not self.sources and self.date_range is None


@dataclass
class RAGQuery:
    query: str
    top_k: int = 5
    threshold: float = 0.7
    filters: Optional[QueryFilters] = None
    include_metadata: bool = True


@dataclass
class SynthesizedAnswer:
    content: str
    confidence: float
    tokens_used: int


@dataclass
class RAGResponse:
    query: str
    answer: str
    sources: List[RetrievalResult]
    confidence: float
    processing_time: float
    tokens_used: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "answer": self.answer,
            "sources": [source.to_dict() for source in self.sources],
            "confidence": self.confidence,
            "processing_time": self.processing_time,
            "tokens_used": self.tokens_used,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class ModelInfo:
    model: str
    dimensions: int
    max_tokens: int


class IngestionStatus(str, Enum):
    PENDING = "pending"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    STORING = "storing"
    STORED = "stored"
    FAILED = "failed"


@dataclass
class DocumentIngestion:
    """Progress record for one document passing through ``add_documents``."""

    document_id: str
    status: IngestionStatus = IngestionStatus.PENDING
    chunks_stored: int = 0
    error: Optional[str] = None


__all__ = [
    "Relevance",
    "RetrievalMethod",
    "RETRIEVAL_METHODS",
    "NO_RESULTS_ANSWER",
    "RelevancePolicy",
    "KnowledgeBaseSettings",
    "KnowledgeBaseStatistics",
    "KnowledgeBase",
    "Document",
    "DocumentChunk",
    "RetrievalResult",
    "QueryFilters",
    "RAGQuery",
    "SynthesizedAnswer",
    "RAGResponse",
    "ModelInfo",
    "IngestionStatus",
    "DocumentIngestion",
    "chunk_id_for",
    "parse_timestamp",
    "utcnow",
]
