from __future__ import annotations

import logging
from typing import List, Optional

from .embedder import EmbeddingClient
from .models import QueryFilters, RelevancePolicy, RetrievalResult
from .ranking import DEFAULT_MMR_LAMBDA, apply_filters, classify_results, mmr_rerank
from .vectorstore import VectorStore

logger = logging.getLogger("chatkb")

DEFAULT_FETCH_MULTIPLIER = 4
DEFAULT_MIN_FETCH_K = 20


class Retriever:
    """
    Embed the query, search the store, filter, label and diversify results.
    Holds no state between calls.

    With MMR enabled the store is asked for a wider candidate pool
    (``fetch_k``) so that near-duplicates can be swapped for more diverse
    chunks before the list is cut down to ``top_k``.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: EmbeddingClient,
        *,
        mmr_lambda: float = DEFAULT_MMR_LAMBDA,
        fetch_multiplier: int = DEFAULT_FETCH_MULTIPLIER,
        min_fetch_k: int = DEFAULT_MIN_FETCH_K,
    ) -> None:
        if not 0.0 <= mmr_lambda <= 1.0:
            raise ValueError("mmr_lambda must be between 0 and 1")
        if fetch_multiplier < 1 or min_fetch_k < 1:
            raise ValueError("fetch_multiplier and min_fetch_k must be positive")
        self.vector_store = vector_store
        self.embedder = embedder
        self.mmr_lambda = mmr_lambda
        self.fetch_multiplier = fetch_multiplier
        self.min_fetch_k = min_fetch_k

    def fetch_k(self, top_k: int, *, use_mmr: bool = True, filtered: bool = False) -> int:
        """Number of candidates to pull from the store for a ``top_k`` request."""
        if not use_mmr and not filtered:
            return top_k
        return max(top_k * self.fetch_multiplier, self.min_fetch_k)

    def retrieve(
        self,
        kb_id: str,
        query: str,
        top_k: int = 5,
        threshold: float = 0.7,
        filters: Optional[QueryFilters] = None,
        *,
        policy: Optional[RelevancePolicy] = None,
        use_mmr: bool = True,
    ) -> List[RetrievalResult]:
        if not query.strip() or top_k <= 0:
            return []

        filtered = filters is not None and not filters.is_empty()
        pool_size = self.fetch_k(top_k, use_mmr=use_mmr, filtered=filtered)

        query_embedding = self.embedder.generate_embedding(query)
        results = self.vector_store.similarity_search(kb_id, query_embedding, pool_size, threshold)
        candidates = len(results)

        results = apply_filters(results, filters)
        results = classify_results(results, policy or RelevancePolicy())

        if use_mmr and len(results) > 1:
            results = mmr_rerank(results, top_k, lambda_mult=self.mmr_lambda)

        results = results[:top_k]
        logger.info(
            "Retrieved %s chunks from %s (%s candidates before filtering)",
            len(results),
            kb_id,
            candidates,
        )
        return results


__all__ = ["Retriever"]
