from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Any, Iterable, List, Mapping, Optional, Union

from ..config import Settings, get_settings
from ..services.llm_client import create_chat_client
from .chunker import Chunker
from .embedder import EmbeddingClient, create_embedder
from .errors import IngestionError, NotFoundError, QueryError, ValidationError
from .models import (
    Document,
    DocumentChunk,
    DocumentIngestion,
    IngestionStatus,
    KnowledgeBase,
    KnowledgeBaseSettings,
    KnowledgeBaseStatistics,
    RAGQuery,
    RAGResponse,
    RetrievalResult,
    chunk_id_for,
    utcnow,
)
from .qa import AnswerSynthesizer
from .retriever import Retriever
from .vectorstore import VectorStore

logger = logging.getLogger("chatkb")

DocumentInput = Union[Document, Mapping[str, Any]]


class KnowledgeBaseManager:
    """
    Entry point of the engine: knowledge base administration, document
    ingestion and question answering over one vector store.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: EmbeddingClient,
        synthesizer: AnswerSynthesizer,
        *,
        retriever: Optional[Retriever] = None,
        settings: Optional[Settings] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.vector_store = vector_store
        self.embedder = embedder
        self.synthesizer = synthesizer
        self.retriever = retriever or Retriever(vector_store, embedder)
        self.settings = settings
        workers = max_workers if max_workers is not None else (settings.ingest_workers if settings else 1)
        self.max_workers = max(1, workers)

    # ------------------------------------------------------------------
    # Knowledge bases
    # ------------------------------------------------------------------
    def create_knowledge_base(
        self,
        organization_id: str,
        name: str,
        description: str = "",
        settings: Union[KnowledgeBaseSettings, Mapping[str, Any], None] = None,
    ) -> str:
        kb_settings = self._knowledge_base_settings(settings)
        return self.vector_store.create_knowledge_base(organization_id, name, description, kb_settings)

    def list_knowledge_bases(self, organization_id: str) -> List[KnowledgeBase]:
        return self.vector_store.list_knowledge_bases(organization_id)

    def get_knowledge_base(self, kb_id: str) -> KnowledgeBase:
        """Knowledge base with statistics recomputed from storage."""
        knowledge_base = self.vector_store.get_knowledge_base(kb_id, include_inactive=True)
        knowledge_base.statistics = self.vector_store.get_stats(kb_id)
        return knowledge_base

    def get_knowledge_base_stats(self, kb_id: str) -> KnowledgeBaseStatistics:
        return self.vector_store.get_stats(kb_id)

    def deactivate_knowledge_base(self, kb_id: str) -> None:
        self.vector_store.deactivate_knowledge_base(kb_id)

    def resolve_knowledge_base(self, organization_id: str, kb_id: Optional[str] = None) -> KnowledgeBase:
        """
        Return the requested knowledge base, or the newest active one of the
        organization when no id is given.
        """
        if kb_id:
            return self.vector_store.get_knowledge_base(kb_id)
        knowledge_bases = self.vector_store.list_knowledge_bases(organization_id)
        if not knowledge_bases:
            raise NotFoundError(f"No knowledge bases found for organization {organization_id}")
        logger.info("Auto-selected knowledge base %s for %s", knowledge_bases[0].id, organization_id)
        return knowledge_bases[0]

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------
    def add_documents(self, kb_id: str, documents: Iterable[DocumentInput]) -> List[DocumentIngestion]:
        """
        Chunk, embed and store each document. Re-adding a known document id
        overwrites its chunks and drops any left over past the new last index.

        A failure stops the failing document and raises ``IngestionError``
        tagged with its id. Chunks already written for that document stay in
        the store.
        """
        knowledge_base = self._require(kb_id)
        docs = [_coerce_document(document) for document in documents]
        for document in docs:
            document.validate()

        logger.info("Adding %s documents to knowledge base: %s", len(docs), kb_id)
        if self.max_workers == 1 or len(docs) <= 1:
            return [self._ingest(knowledge_base, document) for document in docs]

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(docs))) as pool:
            futures = [pool.submit(self._ingest, knowledge_base, document) for document in docs]
        return [future.result() for future in futures]

    def update_document(
        self,
        kb_id: str,
        document_id: str,
        content: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> DocumentIngestion:
        """Replace a document. Not atomic: callers must serialise updates per document."""
        self._require(kb_id)
        document = Document(id=document_id, content=content, metadata=dict(metadata or {}))
        document.validate()

        logger.info("Updating document: %s", document_id)
        self.vector_store.remove_document(kb_id, document_id)
        return self.add_documents(kb_id, [document])[0]

    def remove_document(self, kb_id: str, document_id: str) -> int:
        return self.vector_store.remove_document(kb_id, document_id)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------
    def similarity_search(
        self,
        kb_id: str,
        query: str,
        top_k: int = 5,
        threshold: float = 0.7,
    ) -> List[RetrievalResult]:
        """Plain nearest-neighbour search without filtering, MMR or an answer."""
        self._require(kb_id)
        query_embedding = self.embedder.generate_embedding(query)
        return self.vector_store.similarity_search(kb_id, query_embedding, top_k, threshold)

    def query(
        self,
        kb_id: str,
        rag_query: Union[RAGQuery, str],
        model: Optional[str] = None,
    ) -> RAGResponse:
        started = time.perf_counter()
        if isinstance(rag_query, str):
            rag_query = RAGQuery(query=rag_query)
        if not rag_query.query or not rag_query.query.strip():
            raise ValidationError("query text is required")

        knowledge_base = self._require(kb_id)
        model = model or self.synthesizer.default_model
        filters = rag_query.filters if rag_query.filters and not rag_query.filters.is_empty() else None
        logger.info('RAG query "%s" in KB: %s', rag_query.query, kb_id)

        try:
            results = self.retriever.retrieve(
                kb_id,
                rag_query.query,
                rag_query.top_k,
                rag_query.threshold,
                filters,
                policy=knowledge_base.settings.relevance,
                use_mmr=knowledge_base.settings.retrieval_method != "similarity",
            )
        except Exception as exc:
            logger.error("Retrieval for %r failed: %s", rag_query.query, exc)
            raise QueryError(rag_query.query, "retrieval", str(exc)) from exc

        try:
            answer = self.synthesizer.synthesize(rag_query.query, results, model)
        except Exception as exc:
            raise QueryError(rag_query.query, "synthesis", str(exc)) from exc

        if not rag_query.include_metadata:
            results = [replace(r, chunk=replace(r.chunk, metadata={})) for r in results]

        processing_time = (time.perf_counter() - started) * 1000
        logger.info("RAG query completed in %.0fms", processing_time)
        return RAGResponse(
            query=rag_query.query,
            answer=answer.content,
            sources=results,
            confidence=answer.confidence,
            processing_time=processing_time,
            tokens_used=answer.tokens_used,
            metadata={
                "model": model,
                "retrieval_method": "hybrid" if filters else "similarity",
                "chunks_retrieved": len(results),
            },
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _ingest(self, knowledge_base: KnowledgeBase, document: Document) -> DocumentIngestion:
        record = DocumentIngestion(document_id=document.id)
        try:
            record.status = IngestionStatus.CHUNKING
            pieces = Chunker.for_settings(knowledge_base.settings).chunk(document.content, document.metadata)

            record.status = IngestionStatus.EMBEDDING
            embeddings = self.embedder.generate_embeddings([piece.content for piece in pieces])

            now = utcnow()
            source = document.metadata.get("source") or document.id
            chunks = [
                DocumentChunk(
                    id=chunk_id_for(document.id, index),
                    document_id=document.id,
                    content=piece.content,
                    metadata={
                        **piece.metadata,
                        "source": source,
                        "chunk_index": index,
                        "tokens": self.embedder.estimate_tokens(piece.content),
                    },
                    embedding=embedding,
                    created_at=now,
                    updated_at=now,
                )
                for index, (piece, embedding) in enumerate(zip(pieces, embeddings))
            ]

            record.status = IngestionStatus.STORING
            record.chunks_stored = self.vector_store.add_chunks(knowledge_base.id, chunks)
            stale = self.vector_store.remove_document(knowledge_base.id, document.id, from_index=len(chunks))
            if stale:
                logger.info("Dropped %s stale chunks of document %s", stale, document.id)
        except Exception as exc:
            stage = record.status.value
            record.status = IngestionStatus.FAILED
            record.error = str(exc)
            logger.error("Error processing document %s during %s: %s", document.id, stage, exc)
            raise IngestionError(document.id, stage, str(exc)) from exc

        record.status = IngestionStatus.STORED
        logger.info("Successfully processed document %s: %s chunks", document.id, record.chunks_stored)
        return record

    def _require(self, kb_id: str) -> KnowledgeBase:
        knowledge_base = self.vector_store.get_knowledge_base(kb_id)
        model = self.embedder.model_name
        if knowledge_base.settings.embedding_model != model:
            raise ValidationError(
                f"Knowledge base {kb_id} uses embedding model "
                f"{knowledge_base.settings.embedding_model!r} but the engine is configured "
                f"with {model!r}; mixing vectors from different models is not allowed"
            )
        return knowledge_base

    def _knowledge_base_settings(
        self,
        settings: Union[KnowledgeBaseSettings, Mapping[str, Any], None],
    ) -> KnowledgeBaseSettings:
        info = self.embedder.get_model_info()
        if isinstance(settings, KnowledgeBaseSettings):
            kb_settings = settings
        else:
            overrides = dict(settings or {})
            defaults = self.settings
            kb_settings = KnowledgeBaseSettings(
                chunk_size=overrides.pop("chunk_size", defaults.chunk_size if defaults else 1000),
                chunk_overlap=overrides.pop("chunk_overlap", defaults.chunk_overlap if defaults else 200),
                embedding_model=overrides.pop("embedding_model", info.model),
                embedding_dimensions=overrides.pop("embedding_dimensions", info.dimensions),
                **overrides,
            )

        if kb_settings.embedding_model != info.model:
            raise ValidationError(
                f"Embedding model {kb_settings.embedding_model!r} does not match the "
                f"configured embedder {info.model!r}"
            )
        if kb_settings.embedding_dimensions != info.dimensions:
            raise ValidationError(
                f"Embedding dimensions {kb_settings.embedding_dimensions} do not match "
                f"model {info.model} ({info.dimensions})"
            )
        kb_settings.validate()
        return kb_settings


def _coerce_document(document: DocumentInput) -> Document:
    if isinstance(document, Document):
        return document
    if not isinstance(document, Mapping):
        raise ValidationError(f"Unsupported document payload: {type(document).__name__}")
    return Document(
        id=document.get("id", ""),
        content=document.get("content"),
        metadata=dict(document.get("metadata") or {}),
    )


def create_manager(
    settings: Optional[Settings] = None,
    *,
    embedder: Optional[EmbeddingClient] = None,
    chat_client: Any = None,
    vector_store: Optional[VectorStore] = None,
) -> KnowledgeBaseManager:
    """
    Wire a manager from configuration. Collaborators passed in are used as-is.
    """
    settings = settings or get_settings()
    embedder = embedder or create_embedder(settings)
    vector_store = vector_store or VectorStore(
        settings.kb_store_path,
        insert_batch_size=settings.insert_batch_size,
    )
    if chat_client is None and settings.openai_api_key:
        chat_client = create_chat_client(settings)

    synthesizer = AnswerSynthesizer(chat_client, default_model=settings.chat_model)
    retriever = Retriever(
        vector_store,
        embedder,
        fetch_multiplier=settings.mmr_fetch_multiplier,
        min_fetch_k=settings.mmr_min_fetch_k,
    )
    return KnowledgeBaseManager(
        vector_store,
        embedder,
        synthesizer,
        retriever=retriever,
        settings=settings,
        max_workers=settings.ingest_workers,
    )


__all__ = ["KnowledgeBaseManager", "create_manager"]
