"""
Knowledge base engine: chunking, embedding, vector storage, retrieval and
grounded answer synthesis.
"""

from .chunker import Chunker, TextChunk, chunk_text  # noqa: F401
from .embedder import (  # noqa: F401
    EmbeddingClient,
    HashingEmbedder,
    OpenAIEmbedder,
    SentenceTransformerEmbedder,
    create_embedder,
)
from .errors import (  # noqa: F401
    ChatKBError,
    DocumentProcessingError,
    EmbeddingError,
    IngestionError,
    NotFoundError,
    QueryError,
    StorageError,
    SynthesisError,
    ValidationError,
)
from .manager import KnowledgeBaseManager, create_manager  # noqa: F401
from .models import (  # noqa: F401
    Document,
    DocumentChunk,
    KnowledgeBase,
    KnowledgeBaseSettings,
    QueryFilters,
    RAGQuery,
    RAGResponse,
    RelevancePolicy,
    RetrievalResult,
)
from .qa import AnswerSynthesizer  # noqa: F401
from .ranking import cosine_similarity, mmr_rerank  # noqa: F401
from .retriever import Retriever  # noqa: F401
from .vectorstore import VectorStore  # noqa: F401

__all__ = [
    "AnswerSynthesizer",
    "ChatKBError",
    "Chunker",
    "Document",
    "DocumentChunk",
    "DocumentProcessingError",
    "EmbeddingClient",
    "EmbeddingError",
    "HashingEmbedder",
    "IngestionError",
    "KnowledgeBase",
    "KnowledgeBaseManager",
    "KnowledgeBaseSettings",
    "NotFoundError",
    "OpenAIEmbedder",
    "QueryError",
    "QueryFilters",
    "RAGQuery",
    "RAGResponse",
    "RelevancePolicy",
    "RetrievalResult",
    "Retriever",
    "SentenceTransformerEmbedder",
    "StorageError",
    "SynthesisError",
    "TextChunk",
    "ValidationError",
    "VectorStore",
    "chunk_text",
    "cosine_similarity",
    "create_embedder",
    "create_manager",
    "mmr_rerank",
]
