from dataclasses import replace

import pytest

from chatkb.knowledge_base import (
    AnswerSynthesizer,
    Document,
    EmbeddingError,
    HashingEmbedder,
    IngestionError,
    KnowledgeBaseManager,
    NotFoundError,
    QueryError,
    QueryFilters,
    RAGQuery,
    StorageError,
    SynthesisError,
    ValidationError,
    create_manager,
)
from chatkb.knowledge_base.models import NO_RESULTS_ANSWER, IngestionStatus

from conftest import FixedEmbedder

PHOTOSYNTHESIS = "Photosynthesis converts light energy into chemical energy inside plant leaves."
VACATION = "Employees receive twenty five vacation days every calendar year."


def _docs():
    return [
        Document(id="biology", content=PHOTOSYNTHESIS, metadata={"source": "biology.md"}),
        Document(id="policy", content=VACATION, metadata={"source": "hr.md"}),
    ]


def test_create_knowledge_base_takes_embedder_defaults(manager, kb_id):
    kb = manager.get_knowledge_base(kb_id)

    assert kb.organization_id == "org-1"
    assert kb.settings.embedding_model == "hashing-64"
    assert kb.settings.embedding_dimensions == 64
    assert kb.settings.chunk_size == 1000
    assert kb.statistics.total_chunks == 0
    assert [item.id for item in manager.list_knowledge_bases("org-1")] == [kb_id]


def test_create_knowledge_base_validates_settings(manager):
    with pytest.raises(ValidationError):
        manager.create_knowledge_base("org-1", "Bad", settings={"chunk_size": 100, "chunk_overlap": 200})
    with pytest.raises(ValidationError):
        manager.create_knowledge_base("org-1", "Bad", settings={"embedding_model": "text-embedding-3-large"})
    with pytest.raises(ValidationError):
        manager.create_knowledge_base("org-1", "Bad", settings={"retrieval_method": "random"})


def test_add_documents_reports_each_document(manager, kb_id):
    records = manager.add_documents(kb_id, _docs())

    assert [r.document_id for r in records] == ["biology", "policy"]
    assert all(r.status is IngestionStatus.STORED for r in records)
    assert all(r.chunks_stored == 1 for r in records)

    chunks = manager.vector_store.get_document_chunks(kb_id, "biology")
    assert chunks[0].metadata["source"] == "biology.md"
    assert chunks[0].metadata["tokens"] == manager.embedder.estimate_tokens(PHOTOSYNTHESIS)


def test_add_documents_accepts_mappings(manager, kb_id):
    records = manager.add_documents(kb_id, [{"id": "plain", "content": "Plain text document."}])

    assert records[0].status is IngestionStatus.STORED
    chunk = manager.vector_store.get_document_chunks(kb_id, "plain")[0]
    assert chunk.metadata["source"] == "plain"


def test_readding_a_document_is_idempotent(manager, kb_id):
    manager.add_documents(kb_id, _docs())
    before = manager.get_knowledge_base_stats(kb_id).total_chunks

    manager.add_documents(kb_id, _docs())

    assert manager.get_knowledge_base_stats(kb_id).total_chunks == before


def test_remove_document_lowers_chunk_count(manager, kb_id):
    manager.add_documents(kb_id, _docs())

    assert manager.remove_document(kb_id, "policy") == 1

    stats = manager.get_knowledge_base_stats(kb_id)
    assert stats.total_chunks == 1
    assert stats.total_documents == 1


def test_update_document_replaces_chunks(manager, kb_id):
    manager.add_documents(kb_id, [Document(id="doc", content="\n\n".join(["x" * 900] * 3))])
    assert manager.get_knowledge_base_stats(kb_id).total_chunks == 3

    record = manager.update_document(kb_id, "doc", "A single short paragraph now.")

    assert record.chunks_stored == 1
    chunks = manager.vector_store.get_document_chunks(kb_id, "doc")
    assert [c.content for c in chunks] == ["A single short paragraph now."]


def test_failed_embedding_is_tagged_with_document(manager, kb_id, monkeypatch):
    def explode(texts):
        raise EmbeddingError("provider down")

    monkeypatch.setattr(manager.embedder, "generate_embeddings", explode)

    with pytest.raises(IngestionError) as info:
        manager.add_documents(kb_id, [Document(id="broken", content="Some text.")])

    assert info.value.document_id == "broken"
    assert info.value.stage == "embedding"
    assert isinstance(info.value.__cause__, EmbeddingError)


def test_invalid_document_is_rejected_before_ingestion(manager, kb_id):
    with pytest.raises(ValidationError):
        manager.add_documents(kb_id, [Document(id="", content="text")])
    assert manager.get_knowledge_base_stats(kb_id).total_chunks == 0


def test_worker_pool_keeps_document_order(store, embedder, chat_client):
    pooled = KnowledgeBaseManager(store, embedder, AnswerSynthesizer(chat_client), max_workers=3)
    kb_id = pooled.create_knowledge_base("org-1", "Pooled")
    documents = [Document(id=f"doc-{i}", content=f"Document number {i} body.") for i in range(4)]

    records = pooled.add_documents(kb_id, documents)

    assert [r.document_id for r in records] == ["doc-0", "doc-1", "doc-2", "doc-3"]
    assert pooled.get_knowledge_base_stats(kb_id).total_documents == 4


def test_query_without_matches_skips_the_model(manager, kb_id, chat_client):
    manager.add_documents(kb_id, _docs())

    response = manager.query(kb_id, "Quarterly revenue forecast spreadsheet")

    assert response.answer == NO_RESULTS_ANSWER
    assert response.confidence == 0
    assert response.sources == []
    assert response.tokens_used == 0
    assert response.metadata["chunks_retrieved"] == 0
    chat_client.chat.completions.create.assert_not_called()


def test_query_answers_from_matching_chunks(manager, kb_id, chat_client):
    manager.add_documents(kb_id, _docs())

    response = manager.query(kb_id, RAGQuery(query=PHOTOSYNTHESIS, top_k=3))

    assert response.answer == "Grounded answer [1]"
    assert [r.chunk.document_id for r in response.sources] == ["biology"]
    assert response.sources[0].relevance == "high"
    assert response.confidence == 95.0
    assert response.tokens_used == 42
    assert response.processing_time >= 0
    assert response.metadata == {
        "model": "gpt-4o-mini",
        "retrieval_method": "similarity",
        "chunks_retrieved": 1,
    }
    prompt = chat_client.chat.completions.create.call_args.kwargs["messages"][1]["content"]
    assert "Source: biology.md" in prompt


def test_filtered_query_is_reported_as_hybrid(manager, kb_id):
    manager.add_documents(kb_id, _docs())
    query = RAGQuery(query=PHOTOSYNTHESIS, filters=QueryFilters(sources=["hr.md"]))

    response = manager.query(kb_id, query, model="gpt-4o")

    assert response.metadata["retrieval_method"] == "hybrid"
    assert response.metadata["model"] == "gpt-4o"
    assert response.sources == []


def test_query_can_strip_metadata(manager, kb_id):
    manager.add_documents(kb_id, _docs())

    response = manager.query(kb_id, RAGQuery(query=PHOTOSYNTHESIS, include_metadata=False))

    assert response.sources
    assert all(r.chunk.metadata == {} for r in response.sources)


def test_blank_query_is_invalid(manager, kb_id):
    with pytest.raises(ValidationError):
        manager.query(kb_id, "   ")


def test_unknown_knowledge_base(manager):
    with pytest.raises(NotFoundError):
        manager.query("missing", "question")
    with pytest.raises(NotFoundError):
        manager.add_documents("missing", _docs())


def test_deactivated_knowledge_base_rejects_queries(manager, kb_id):
    manager.deactivate_knowledge_base(kb_id)

    with pytest.raises(NotFoundError):
        manager.query(kb_id, "question")
    assert manager.get_knowledge_base(kb_id).is_active is False


def test_retrieval_failure_is_tagged(manager, kb_id, monkeypatch):
    def broken(*args, **kwargs):
        raise StorageError("connection lost")

    monkeypatch.setattr(manager.retriever, "retrieve", broken)

    with pytest.raises(QueryError) as info:
        manager.query(kb_id, "question")

    assert info.value.stage == "retrieval"
    assert info.value.query == "question"


def test_synthesis_failure_is_tagged(manager, kb_id, chat_client):
    manager.add_documents(kb_id, _docs())
    chat_client.chat.completions.create.side_effect = RuntimeError("timeout")

    with pytest.raises(QueryError) as info:
        manager.query(kb_id, PHOTOSYNTHESIS)

    assert info.value.stage == "synthesis"
    assert isinstance(info.value.__cause__, SynthesisError)


def test_mismatched_embedding_model_is_refused(store, kb_id, chat_client):
    other = KnowledgeBaseManager(store, HashingEmbedder("hashing-32", dimensions=32), AnswerSynthesizer(chat_client))

    with pytest.raises(ValidationError):
        other.query(kb_id, "question")
    with pytest.raises(ValidationError):
        other.add_documents(kb_id, _docs())


def test_resolve_knowledge_base_picks_newest(manager, kb_id):
    assert manager.resolve_knowledge_base("org-1").id == kb_id
    assert manager.resolve_knowledge_base("org-1", kb_id).id == kb_id
    with pytest.raises(NotFoundError):
        manager.resolve_knowledge_base("org-without-kbs")


def test_similarity_search_has_no_answer(manager, kb_id, chat_client):
    manager.add_documents(kb_id, _docs())

    results = manager.similarity_search(kb_id, VACATION, top_k=1, threshold=0.5)

    assert [r.chunk.document_id for r in results] == ["policy"]
    chat_client.chat.completions.create.assert_not_called()


def test_create_manager_wires_collaborators(settings, chat_client):
    manager = create_manager(settings, embedder=HashingEmbedder(), chat_client=chat_client)

    assert manager.vector_store.persist_dir == settings.kb_store_path
    assert manager.synthesizer.default_model == settings.chat_model
    assert manager.max_workers == 1


def test_query_on_empty_knowledge_base(manager, kb_id, chat_client):
    response = manager.query(kb_id, RAGQuery(query="Anything stored?", threshold=0.0))

    assert response.confidence == 0
    assert response.sources == []
    chat_client.chat.completions.create.assert_not_called()


def test_threshold_above_every_score_gives_the_no_results_answer(store, chat_client):
    # Every stored chunk sits at exactly 0.7 cosine similarity to the question.
    embedder = FixedEmbedder(
        {
            "question": [1.0, 0.0, 0.0],
            "First fact.": [0.7, 0.714142842854285, 0.0],
            "Second fact.": [0.7, 0.0, 0.714142842854285],
        }
    )
    fixed = KnowledgeBaseManager(store, embedder, AnswerSynthesizer(chat_client))
    kb_id = fixed.create_knowledge_base("org-1", "Fixed")
    fixed.add_documents(kb_id, [Document(id="one", content="First fact."), Document(id="two", content="Second fact.")])

    loose = fixed.similarity_search(kb_id, "question", top_k=5, threshold=0.5)
    response = fixed.query(kb_id, RAGQuery(query="question", threshold=0.9))

    assert [round(r.score, 3) for r in loose] == [0.7, 0.7]
    assert response.answer == NO_RESULTS_ANSWER
    assert response.confidence == 0
    chat_client.chat.completions.create.assert_not_called()


def test_remove_document_drops_exactly_its_chunks(manager, kb_id):
    long_document = Document(id="long", content="\n\n".join([f"{i} " + "y" * 700 for i in range(4)]))
    manager.add_documents(kb_id, [long_document] + _docs())
    before = manager.get_knowledge_base_stats(kb_id).total_chunks
    owned = len(manager.vector_store.get_document_chunks(kb_id, "long"))

    removed = manager.remove_document(kb_id, "long")

    assert owned == 4
    assert removed == owned
    assert manager.get_knowledge_base_stats(kb_id).total_chunks == before - owned


def test_readding_shorter_content_drops_trailing_chunks(manager, kb_id):
    manager.add_documents(kb_id, [Document(id="doc", content="\n\n".join(["x" * 900] * 3))])

    record = manager.add_documents(kb_id, [Document(id="doc", content="short now")])[0]

    chunks = manager.vector_store.get_document_chunks(kb_id, "doc")
    assert record.chunks_stored == 1
    assert [c.content for c in chunks] == ["short now"]
    assert manager.get_knowledge_base_stats(kb_id).total_chunks == 1


def test_create_manager_sizes_the_candidate_pool_from_settings(settings, chat_client):
    tuned = replace(settings, mmr_fetch_multiplier=3, mmr_min_fetch_k=7)

    manager = create_manager(tuned, embedder=HashingEmbedder(), chat_client=chat_client)

    assert manager.retriever.fetch_k(1) == 7
    assert manager.retriever.fetch_k(5) == 15
