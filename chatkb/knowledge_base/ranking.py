from __future__ import annotations

from datetime import timezone
from typing import List, Optional, Sequence

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity as pairwise_cosine

from .models import QueryFilters, RelevancePolicy, RetrievalResult

DEFAULT_MMR_LAMBDA = 0.7


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """dot(a, b) / (|a| |b|); 0.0 for empty, mismatched or zero-norm vectors."""
    if a is None or b is None or len(a) == 0 or len(a) != len(b):
        return 0.0
    left = np.asarray(a, dtype=np.float64)
    right = np.asarray(b, dtype=np.float64)
    norm = float(np.linalg.norm(left) * np.linalg.norm(right))
    if norm == 0.0:
        return 0.0
    return float(np.dot(left, right) / norm)


def apply_filters(
    results: Sequence[RetrievalResult],
    filters: Optional[QueryFilters],
) -> List[RetrievalResult]:
    """Keep results that satisfy every supplied filter."""
    if filters is None or filters.is_empty():
        return list(results)

    document_ids = set(filters.document_ids or [])
    sources = set(filters.sources or [])
    start = end = None
    if filters.date_range is not None:
        start, end = (_as_aware(value) for value in filters.date_range)

    kept: list[RetrievalResult] = []
    for result in results:
        chunk = result.chunk
        if document_ids and chunk.document_id not in document_ids:
            continue
        if sources and chunk.metadata.get("source") not in sources:
            continue
        if start is not None and not start <= _as_aware(chunk.created_at) <= end:
            continue
        kept.append(result)
    return kept


def classify_results(
    results: Sequence[RetrievalResult],
    policy: RelevancePolicy,
) -> List[RetrievalResult]:
    for result in results:
        result.relevance = policy.classify(result.score)
    return list(results)


def mmr_rerank(
    results: Sequence[RetrievalResult],
    top_k: int,
    *,
    lambda_mult: float = DEFAULT_MMR_LAMBDA,
) -> List[RetrievalResult]:
    """
    Maximal Marginal Relevance re-ranking.

    Starts from the highest scoring result, then repeatedly picks the
    candidate maximising ``lambda * score - (1 - lambda) * redundancy`` where
    redundancy is the highest cosine similarity to anything already picked.
    Results without a usable embedding count as non-redundant.
    """
    if top_k <= 0:
        return []

    candidates = _dedupe(results)
    if len(candidates) <= 1:
        return candidates[:top_k]

    similarity = _redundancy_matrix(candidates)
    scores = np.array([result.score for result in candidates], dtype=np.float64)

    first = int(np.argmax(scores))
    selected = [first]
    remaining = [idx for idx in range(len(candidates)) if idx != first]

    while remaining and len(selected) < top_k:
        redundancy = similarity[np.ix_(remaining, selected)].max(axis=1)
        mmr_scores = lambda_mult * scores[remaining] - (1 - lambda_mult) * redundancy
        best = remaining[int(np.argmax(mmr_scores))]
        selected.append(best)
        remaining.remove(best)

    return [candidates[idx] for idx in selected]


def _dedupe(results: Sequence[RetrievalResult]) -> List[RetrievalResult]:
    best: dict[str, RetrievalResult] = {}
    for result in results:
        current = best.get(result.chunk.id)
        if current is None or result.score > current.score:
            best[result.chunk.id] = result
    return list(best.values())


def _redundancy_matrix(candidates: Sequence[RetrievalResult]) -> np.ndarray:
    dimensions = max((len(c.chunk.embedding or []) for c in candidates), default=0)
    if dimensions == 0:
        return np.zeros((len(candidates), len(candidates)))

    vectors = np.zeros((len(candidates), dimensions), dtype=np.float64)
    for row, candidate in enumerate(candidates):
        embedding = candidate.chunk.embedding
        # Missing or mismatched embeddings stay as zero rows, i.e. similarity 0.
        if embedding is not None and len(embedding) == dimensions:
            vectors[row] = embedding
    return pairwise_cosine(vectors)


def _as_aware(value):
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


__all__ = [
    "DEFAULT_MMR_LAMBDA",
    "apply_filters",
    "classify_results",
    "cosine_similarity",
    "mmr_rerank",
]
