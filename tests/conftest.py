from __future__ import annotations

from types import SimpleNamespace
from typing import Dict, List, Optional, Sequence
from unittest.mock import MagicMock

import pytest

from chatkb.config import Settings
from chatkb.knowledge_base import (
    AnswerSynthesizer,
    DocumentChunk,
    HashingEmbedder,
    KnowledgeBaseManager,
    KnowledgeBaseSettings,
    VectorStore,
)
from chatkb.knowledge_base.embedder import EmbeddingClient


class FixedEmbedder(EmbeddingClient):
    """Maps known texts to hand-picked vectors."""

    provider = "hashing"

    def __init__(
        self,
        vectors: Optional[Dict[str, List[float]]] = None,
        *,
        default: Optional[List[float]] = None,
        model_name: str = "fixed-3",
        dimensions: int = 3,
    ) -> None:
        super().__init__(model_name, dimensions=dimensions, max_tokens=8191)
        self.vectors = dict(vectors or {})
        self.default = default or [0.0, 0.0, 1.0]
        self.calls: List[List[str]] = []

    def _embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return [self.vectors.get(text, self.default) for text in texts]


def make_completion(content: str = "Grounded answer [1]", total_tokens: int = 42) -> SimpleNamespace:
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(
            prompt_tokens=total_tokens - 10,
            completion_tokens=10,
            total_tokens=total_tokens,
        ),
    )


def make_chunk(
    document_id: str,
    index: int,
    content: str,
    embedding: Optional[Sequence[float]] = None,
    **metadata,
) -> DocumentChunk:
    return DocumentChunk(
        id=f"{document_id}_chunk_{index}",
        document_id=document_id,
        content=content,
        metadata={"source": f"{document_id}.md", "chunk_index": index, **metadata},
        embedding=list(embedding) if embedding is not None else None,
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(openai_api_key=None, files_root=tmp_path, kb_path=tmp_path / "store")


@pytest.fixture
def store(tmp_path) -> VectorStore:
    return VectorStore(tmp_path / "store", insert_batch_size=10)


@pytest.fixture
def fixed_kb(store) -> str:
    """A knowledge base holding 3-dimensional vectors."""
    return store.create_knowledge_base(
        "org-1",
        "Vectors",
        "",
        KnowledgeBaseSettings(embedding_model="fixed-3", embedding_dimensions=3),
    )


@pytest.fixture
def chat_client() -> MagicMock:
    client = MagicMock()
    client.chat.completions.create.return_value = make_completion()
    return client


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def manager(store, embedder, chat_client) -> KnowledgeBaseManager:
    return KnowledgeBaseManager(store, embedder, AnswerSynthesizer(chat_client))


@pytest.fixture
def kb_id(manager) -> str:
    return manager.create_knowledge_base("org-1", "Handbook", "Team handbook")
