from __future__ import annotations

import json
import logging
import math
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import chromadb
from chromadb.config import Settings as ChromaSettings

from .errors import EmbeddingError, NotFoundError, StorageError, ValidationError
from .models import (
    DocumentChunk,
    KnowledgeBase,
    KnowledgeBaseSettings,
    KnowledgeBaseStatistics,
    RetrievalResult,
    chunk_id_for,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger("chatkb")

REGISTRY_FILENAME = "knowledge_bases.json"
DEFAULT_INSERT_BATCH_SIZE = 10
COLLECTION_METADATA = {"hnsw:space": "cosine"}

# Chunk metadata stored as top-level Chroma fields; everything else the caller
# supplied is kept as JSON under EXTRA_METADATA_KEY.
RESERVED_METADATA_KEYS = (
    "source",
    "title",
    "page",
    "section",
    "chunk_index",
    "tokens",
    "start_char",
    "end_char",
)
EXTRA_METADATA_KEY = "extra_json"
_SCALAR_TYPES = (str, int, float, bool)


@dataclass(frozen=True)
class ChunkRow:
    """One row written to a knowledge base collection."""

    id: str
    document_id: str
    chunk_index: int
    content: str
    embedding: List[float]
    metadata: Dict[str, Any]

    @classmethod
    def from_chunk(cls, chunk: DocumentChunk) -> "ChunkRow":
        if chunk.embedding is None:
            raise EmbeddingError(f"Chunk {chunk.id} has no embedding")

        row_metadata: Dict[str, Any] = {
            "document_id": chunk.document_id,
            "chunk_index": chunk.chunk_index,
            "created_at": chunk.created_at.isoformat(),
            "updated_at": chunk.updated_at.isoformat(),
        }
        extra: Dict[str, Any] = {}
        for key, value in chunk.metadata.items():
            if value is None:
                continue
            if key in RESERVED_METADATA_KEYS and isinstance(value, _SCALAR_TYPES):
                row_metadata[key] = value
            else:
                extra[key] = value
        row_metadata.setdefault("source", chunk.source)
        if extra:
            row_metadata[EXTRA_METADATA_KEY] = json.dumps(extra, ensure_ascii=False, default=str)

        return cls(
            id=chunk.id,
            document_id=chunk.document_id,
            chunk_index=chunk.chunk_index,
            content=chunk.content,
            embedding=[float(x) for x in chunk.embedding],
            metadata=row_metadata,
        )


@dataclass(frozen=True)
class SimilarityRow:
    """
    A validated row of a nearest-neighbour search. Rows that do not carry a
    document id, a chunk index, text content and a finite distance are
    rejected with ``StorageError`` instead of being passed on.
    """

    document_id: str
    chunk_index: int
    content: str
    metadata: Dict[str, Any]
    similarity: float
    embedding: Optional[List[float]] = None

    @classmethod
    def from_record(
        cls,
        *,
        chunk_id: Any,
        document: Any,
        metadata: Any,
        distance: Any,
        embedding: Any = None,
    ) -> "SimilarityRow":
        if not isinstance(metadata, dict):
            raise StorageError(f"Malformed search row {chunk_id!r}: metadata is missing")
        document_id = metadata.get("document_id")
        chunk_index = metadata.get("chunk_index")
        if not isinstance(document_id, str) or not document_id:
            raise StorageError(f"Malformed search row {chunk_id!r}: document_id is missing")
        if isinstance(chunk_index, bool) or not isinstance(chunk_index, int) or chunk_index < 0:
            raise StorageError(f"Malformed search row {chunk_id!r}: invalid chunk_index")
        if not isinstance(document, str):
            raise StorageError(f"Malformed search row {chunk_id!r}: content is missing")
        try:
            distance_value = float(distance)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Malformed search row {chunk_id!r}: invalid distance") from exc
        if not math.isfinite(distance_value):
            raise StorageError(f"Malformed search row {chunk_id!r}: invalid distance")

        # Cosine distance is 1 - cosine similarity.
        similarity = min(max(1.0 - distance_value, 0.0), 1.0)
        vector = [float(x) for x in embedding] if embedding is not None else None
        return cls(
            document_id=document_id,
            chunk_index=chunk_index,
            content=document,
            metadata=metadata,
            similarity=similarity,
            embedding=vector,
        )

    def to_chunk(self) -> DocumentChunk:
        return row_to_chunk(self.document_id, self.content, self.metadata, self.embedding)


def row_to_chunk(
    document_id: str,
    content: str,
    metadata: Dict[str, Any],
    embedding: Optional[List[float]] = None,
) -> DocumentChunk:
    chunk_metadata: Dict[str, Any] = {}
    extra_raw = metadata.get(EXTRA_METADATA_KEY)
    if extra_raw:
        try:
            chunk_metadata.update(json.loads(extra_raw))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable metadata for document %s", document_id)
    for key in RESERVED_METADATA_KEYS:
        if key in metadata:
            chunk_metadata[key] = metadata[key]

    chunk_index = int(metadata.get("chunk_index", 0))
    created_at = parse_timestamp(metadata.get("created_at")) or utcnow()
    return DocumentChunk(
        id=chunk_id_for(document_id, chunk_index),
        document_id=document_id,
        content=content,
        metadata=chunk_metadata,
        embedding=embedding,
        created_at=created_at,
        updated_at=parse_timestamp(metadata.get("updated_at")) or created_at,
    )


class VectorStore:
    """
    ChromaDB-backed storage for knowledge bases and their chunk embeddings.

    Each knowledge base owns one collection in cosine space. Knowledge base
    rows live in a JSON registry next to the Chroma files.
    """

    def __init__(
        self,
        persist_dir: str | Path = "./kb_store",
        *,
        insert_batch_size: int = DEFAULT_INSERT_BATCH_SIZE,
        client: Any = None,
    ) -> None:
        if insert_batch_size <= 0:
            raise ValueError("insert_batch_size must be positive")

        self.persist_dir = Path(persist_dir)
        self.insert_batch_size = insert_batch_size
        self._registry_path = self.persist_dir / REGISTRY_FILENAME
        self._registry_lock = threading.Lock()
        try:
            self.persist_dir.mkdir(parents=True, exist_ok=True)
            self._client = client or chromadb.PersistentClient(
                path=str(self.persist_dir),
                settings=ChromaSettings(anonymized_telemetry=False),
            )
        except Exception as exc:
            raise StorageError(f"Cannot open vector store at {self.persist_dir}: {exc}") from exc

    # ------------------------------------------------------------------
    # Knowledge bases
    # ------------------------------------------------------------------
    def create_knowledge_base(
        self,
        organization_id: str,
        name: str,
        description: str,
        settings: KnowledgeBaseSettings,
    ) -> str:
        if not organization_id:
            raise ValidationError("organization_id is required")
        if not name or not name.strip():
            raise ValidationError("knowledge base name is required")
        settings.validate()

        knowledge_base = KnowledgeBase(
            id=uuid.uuid4().hex,
            organization_id=organization_id,
            name=name.strip(),
            description=description or "",
            settings=settings,
        )
        self._collection(knowledge_base)
        with self._registry_lock:
            rows = self._load_registry()
            rows.append(knowledge_base.to_record())
            self._save_registry(rows)

        logger.info(
            "Created knowledge base %s (%s) for organization %s",
            knowledge_base.id,
            knowledge_base.name,
            organization_id,
        )
        return knowledge_base.id

    def get_knowledge_base(self, kb_id: str, *, include_inactive: bool = False) -> KnowledgeBase:
        with self._registry_lock:
            rows = self._load_registry()
        for row in rows:
            if row.get("id") == kb_id:
                knowledge_base = KnowledgeBase.from_record(row)
                if not knowledge_base.is_active and not include_inactive:
                    raise NotFoundError(f"Knowledge base {kb_id} is inactive")
                return knowledge_base
        raise NotFoundError(f"Knowledge base {kb_id} not found")

    def list_knowledge_bases(
        self,
        organization_id: str,
        *,
        include_inactive: bool = False,
    ) -> List[KnowledgeBase]:
        with self._registry_lock:
            rows = self._load_registry()
        knowledge_bases = [
            KnowledgeBase.from_record(row)
            for row in rows
            if row.get("organization_id") == organization_id
        ]
        if not include_inactive:
            knowledge_bases = [kb for kb in knowledge_bases if kb.is_active]
        knowledge_bases.sort(key=lambda kb: kb.created_at, reverse=True)
        return knowledge_bases

    def deactivate_knowledge_base(self, kb_id: str) -> None:
        self._update_record(kb_id, is_active=False)
        logger.info("Deactivated knowledge base %s", kb_id)

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------
    def add_chunks(self, kb_id: str, chunks: Sequence[DocumentChunk]) -> int:
        """
        Upsert chunks in fixed-size batches. Batches are written in order and
        the first failing batch aborts the rest; rows are keyed by chunk id so
        writing the same chunks again is safe.
        """
        knowledge_base = self.get_knowledge_base(kb_id)
        if not chunks:
            return 0

        expected = knowledge_base.settings.embedding_dimensions
        rows = [ChunkRow.from_chunk(chunk) for chunk in chunks]
        for row in rows:
            if len(row.embedding) != expected:
                raise EmbeddingError(
                    f"Chunk {row.id} has {len(row.embedding)} dimensions, "
                    f"knowledge base {kb_id} expects {expected}"
                )

        collection = self._collection(knowledge_base)
        logger.info("Adding %s chunks to knowledge base: %s", len(rows), kb_id)
        for batch_index, start in enumerate(range(0, len(rows), self.insert_batch_size)):
            batch = rows[start : start + self.insert_batch_size]
            logger.debug("Inserting batch %s, items: %s", batch_index, len(batch))
            try:
                collection.upsert(
                    ids=[row.id for row in batch],
                    documents=[row.content for row in batch],
                    embeddings=[row.embedding for row in batch],
                    metadatas=[row.metadata for row in batch],
                )
            except Exception as exc:
                logger.error("Batch %s insert into %s failed: %s", batch_index, kb_id, exc)
                raise StorageError(
                    f"Batch {batch_index} insert into knowledge base {kb_id} failed: {exc}",
                    batch_index=batch_index,
                ) from exc

        self._update_record(kb_id, updated_at=utcnow().isoformat())
        return len(rows)

    def similarity_search(
        self,
        kb_id: str,
        query_embedding: Sequence[float],
        top_k: int = 5,
        threshold: float = 0.7,
    ) -> List[RetrievalResult]:
        """
        Return at most ``top_k`` chunks whose cosine similarity to the query
        is at least ``threshold``, most similar first.
        """
        knowledge_base = self.get_knowledge_base(kb_id)
        if top_k <= 0:
            return []

        expected = knowledge_base.settings.embedding_dimensions
        if len(query_embedding) != expected:
            raise EmbeddingError(
                f"Query embedding has {len(query_embedding)} dimensions, "
                f"knowledge base {kb_id} expects {expected}"
            )

        collection = self._collection(knowledge_base)
        try:
            stored = collection.count()
            if stored == 0:
                return []
            payload = collection.query(
                query_embeddings=[[float(x) for x in query_embedding]],
                n_results=min(top_k, stored),
                include=["documents", "metadatas", "distances", "embeddings"],
            )
        except Exception as exc:
            raise StorageError(f"Similarity search in knowledge base {kb_id} failed: {exc}") from exc

        rows = self._search_rows(payload)
        policy = knowledge_base.settings.relevance
        results = [
            RetrievalResult(
                chunk=row.to_chunk(),
                score=row.similarity,
                relevance=policy.classify(row.similarity),
            )
            for row in rows
            if row.similarity >= threshold
        ][:top_k]
        logger.debug("Found %s similar chunks in %s", len(results), kb_id)
        return results

    def remove_document(self, kb_id: str, document_id: str, *, from_index: int = 0) -> int:
        """
        Delete the chunks of a document and return how many were removed.
        With ``from_index`` only chunks at or past that chunk index go.
        """
        knowledge_base = self.get_knowledge_base(kb_id, include_inactive=True)
        collection = self._collection(knowledge_base)
        try:
            existing = collection.get(where={"document_id": document_id}, include=["metadatas"])
            ids = list(existing.get("ids") or [])
            if from_index > 0:
                metadatas = existing.get("metadatas") or [None] * len(ids)
                ids = [
                    chunk_id
                    for chunk_id, metadata in zip(ids, metadatas)
                    if int((metadata or {}).get("chunk_index", 0)) >= from_index
                ]
            if ids:
                collection.delete(ids=ids)
        except Exception as exc:
            raise StorageError(
                f"Removing document {document_id} from knowledge base {kb_id} failed: {exc}"
            ) from exc

        if ids:
            self._update_record(kb_id, updated_at=utcnow().isoformat())
        logger.info("Removed %s chunks for document: %s", len(ids), document_id)
        return len(ids)

    def get_document_chunks(self, kb_id: str, document_id: str) -> List[DocumentChunk]:
        """Stored chunks of one document ordered by chunk index."""
        knowledge_base = self.get_knowledge_base(kb_id, include_inactive=True)
        collection = self._collection(knowledge_base)
        try:
            records = collection.get(
                where={"document_id": document_id},
                include=["documents", "metadatas"],
            )
        except Exception as exc:
            raise StorageError(f"Reading document {document_id} failed: {exc}") from exc

        documents = records.get("documents") or []
        metadatas = records.get("metadatas") or []
        chunks = [
            row_to_chunk(document_id, documents[idx] or "", metadatas[idx] or {})
            for idx in range(len(records.get("ids") or []))
        ]
        chunks.sort(key=lambda chunk: chunk.chunk_index)
        return chunks

    def get_stats(self, kb_id: str) -> KnowledgeBaseStatistics:
        """Statistics counted from the stored rows at call time."""
        knowledge_base = self.get_knowledge_base(kb_id, include_inactive=True)
        collection = self._collection(knowledge_base)
        try:
            records = collection.get(include=["documents", "metadatas"])
        except Exception as exc:
            raise StorageError(f"Reading statistics for {kb_id} failed: {exc}") from exc

        documents = records.get("documents") or []
        metadatas = [meta or {} for meta in (records.get("metadatas") or [])]
        total_chunks = len(records.get("ids") or [])
        document_ids = {meta.get("document_id") for meta in metadatas if meta.get("document_id")}
        average = (
            sum(len(doc or "") for doc in documents) / total_chunks if total_chunks else 0.0
        )
        timestamps = [
            stamp
            for stamp in (parse_timestamp(meta.get("updated_at")) for meta in metadatas)
            if stamp is not None
        ]
        last_updated = max(timestamps) if timestamps else knowledge_base.updated_at

        return KnowledgeBaseStatistics(
            total_documents=len(document_ids),
            total_chunks=total_chunks,
            average_chunk_size=average,
            last_updated=last_updated,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _collection(self, knowledge_base: KnowledgeBase):
        try:
            return self._client.get_or_create_collection(
                name=knowledge_base.collection_name,
                metadata=COLLECTION_METADATA,
            )
        except Exception as exc:
            raise StorageError(
                f"Cannot open collection for knowledge base {knowledge_base.id}: {exc}"
            ) from exc

    @staticmethod
    def _search_rows(payload: Dict[str, Any]) -> List[SimilarityRow]:
        ids = _first_batch(payload, "ids")
        documents = _first_batch(payload, "documents")
        metadatas = _first_batch(payload, "metadatas")
        distances = _first_batch(payload, "distances")
        embeddings = _first_batch(payload, "embeddings")

        rows: list[SimilarityRow] = []
        for idx, chunk_id in enumerate(ids):
            rows.append(
                SimilarityRow.from_record(
                    chunk_id=chunk_id,
                    document=documents[idx] if idx < len(documents) else None,
                    metadata=metadatas[idx] if idx < len(metadatas) else None,
                    distance=distances[idx] if idx < len(distances) else None,
                    embedding=embeddings[idx] if idx < len(embeddings) else None,
                )
            )
        return rows

    def _update_record(self, kb_id: str, **changes: Any) -> None:
        with self._registry_lock:
            rows = self._load_registry()
            for row in rows:
                if row.get("id") == kb_id:
                    row.update(changes)
                    if "updated_at" not in changes:
                        row["updated_at"] = utcnow().isoformat()
                    break
            else:
                raise NotFoundError(f"Knowledge base {kb_id} not found")
            self._save_registry(rows)

    def _load_registry(self) -> List[Dict[str, Any]]:
        if not self._registry_path.exists():
            return []
        try:
            rows = json.loads(self._registry_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Cannot read knowledge base registry {self._registry_path}: {exc}") from exc
        if not isinstance(rows, list):
            raise StorageError(f"Knowledge base registry {self._registry_path} is malformed")
        return rows

    def _save_registry(self, rows: Iterable[Dict[str, Any]]) -> None:
        try:
            self._registry_path.write_text(
                json.dumps(list(rows), ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
        except OSError as exc:
            raise StorageError(f"Cannot write knowledge base registry {self._registry_path}: {exc}") from exc


def _first_batch(payload: Dict[str, Any], key: str) -> list:
    """First query batch of a Chroma result field; handles lists and numpy arrays."""
    value = payload.get(key)
    if value is None or len(value) == 0:
        return []
    batch = value[0]
    return [] if batch is None else list(batch)


__all__ = ["VectorStore", "ChunkRow", "SimilarityRow", "row_to_chunk"]
