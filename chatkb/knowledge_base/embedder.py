from __future__ import annotations

import hashlib
import logging
import math
import re
from abc import ABC, abstractmethod
from typing import Any, List, Literal, Optional, Sequence

import numpy as np

from ..config import Settings
from .errors import EmbeddingError, ValidationError
from .models import ModelInfo

logger = logging.getLogger("chatkb")

SupportedProvider = Literal["openai", "huggingface", "hashing"]

OPENAI_MODEL_DIMENSIONS = {
    "text-embedding-ada-002": 1536,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
}
OPENAI_MAX_TOKENS = 8191
CHARS_PER_TOKEN = 4
# Characters kept per token when truncating; lower than CHARS_PER_TOKEN on purpose.
TRUNCATION_CHARS_PER_TOKEN = 3.5


class EmbeddingClient(ABC):
    """
    Converts text into fixed-size vectors. Subclasses only implement
    ``_embed``; truncation, count checks and dimension checks live here so
    every backend behaves the same.
    """

    provider: SupportedProvider

    def __init__(self, model_name: str, *, dimensions: int, max_tokens: int) -> None:
        self.model_name = model_name
        self.dimensions = dimensions
        self.max_tokens = max_tokens

    @abstractmethod
    def _embed(self, texts: List[str]) -> List[List[float]]:
        """Call the backend once for the whole batch."""

    def generate_embedding(self, text: str) -> List[float]:
        """
        Embed a single text snippet.
        """
        return self.generate_embeddings([text])[0]

    def generate_embeddings(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embed a batch of texts with one backend call, preserving input order.

        Raises:
            EmbeddingError: if the backend fails, returns a different number of
                vectors than inputs, or returns vectors of the wrong size.
        """
        if not texts:
            return []

        truncated = [self.truncate_text(text) for text in texts]
        logger.debug("Generating %s embeddings with %s", len(truncated), self.model_name)
        try:
            vectors = self._embed(truncated)
        except EmbeddingError:
            raise
        except Exception as exc:
            raise EmbeddingError(
                f"{self.provider} embedding request for model {self.model_name} failed: {exc}"
            ) from exc

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Mismatch between input and output embedding count: "
                f"sent {len(texts)}, received {len(vectors)}"
            )
        for position, vector in enumerate(vectors):
            if len(vector) != self.dimensions:
                raise EmbeddingError(
                    f"Embedding {position} has {len(vector)} dimensions, "
                    f"expected {self.dimensions} for model {self.model_name}"
                )
        return vectors

    def estimate_tokens(self, text: str) -> int:
        """Rough token count: about four characters per token."""
        return math.ceil(len(text) / CHARS_PER_TOKEN)

    def truncate_text(self, text: str) -> str:
        """Cut text that would exceed ``max_tokens``, preferring a word boundary."""
        if self.estimate_tokens(text) <= self.max_tokens:
            return text

        max_chars = math.floor(self.max_tokens * TRUNCATION_CHARS_PER_TOKEN)
        truncated = text[:max_chars]
        last_space = truncated.rfind(" ")
        if last_space > max_chars * 0.9:
            truncated = truncated[:last_space]

        logger.debug("Truncated text from %s to %s characters", len(text), len(truncated))
        return truncated

    def get_model_info(self) -> ModelInfo:
        return ModelInfo(
            model=self.model_name,
            dimensions=self.dimensions,
            max_tokens=self.max_tokens,
        )


class OpenAIEmbedder(EmbeddingClient):
    """Embeddings from the OpenAI API; the production default."""

    provider: SupportedProvider = "openai"

    def __init__(
        self,
        model_name: str = "text-embedding-3-small",
        *,
        client: Any = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        dimensions: Optional[int] = None,
        max_tokens: int = OPENAI_MAX_TOKENS,
    ) -> None:
        if dimensions is None:
            dimensions = OPENAI_MODEL_DIMENSIONS.get(model_name)
        if dimensions is None:
            raise ValidationError(
                f"Unknown OpenAI embedding model {model_name!r}; pass dimensions explicitly"
            )
        super().__init__(model_name, dimensions=dimensions, max_tokens=max_tokens)

        if client is None:
            from openai import OpenAI  # Lazy import to keep CLI startup fast

            client = OpenAI(api_key=api_key, base_url=base_url)
        self._client = client

    def _embed(self, texts: List[str]) -> List[List[float]]:
        response = self._client.embeddings.create(
            model=self.model_name,
            input=texts,
        )
        data = response.data or []
        return [list(record.embedding) for record in data]


class SentenceTransformerEmbedder(EmbeddingClient):
    """
    Local HuggingFace SentenceTransformer models (e.g., BGE).
    """

    provider: SupportedProvider = "huggingface"

    def __init__(self, model_name: str, *, normalize: bool = True) -> None:
        try:
            from sentence_transformers import SentenceTransformer  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise ImportError(
                "sentence-transformers is required for HuggingFace embeddings. "
                "Install it with `pip install chatkb[huggingface]`."
            ) from exc

        self._encoder = SentenceTransformer(model_name)
        self.normalize = normalize
        dimensions = int(self._encoder.get_sentence_embedding_dimension())
        max_tokens = int(getattr(self._encoder, "max_seq_length", None) or 512)
        super().__init__(model_name, dimensions=dimensions, max_tokens=max_tokens)

    def _embed(self, texts: List[str]) -> List[List[float]]:
        # SentenceTransformer returns numpy arrays by default; convert to Python lists.
        embeddings = self._encoder.encode(texts, normalize_embeddings=self.normalize)
        if hasattr(embeddings, "tolist"):
            return embeddings.tolist()
        return [list(map(float, emb)) for emb in embeddings]


class HashingEmbedder(EmbeddingClient):
    """
    Deterministic bag-of-words embeddings for tests and offline demos.

    Each word is hashed into one signed bucket and the vector is L2
    normalised, so texts sharing vocabulary get high cosine similarity.
    Never selected unless asked for explicitly.
    """

    provider: SupportedProvider = "hashing"

    def __init__(
        self,
        model_name: str = "hashing-64",
        *,
        dimensions: int = 64,
        max_tokens: int = OPENAI_MAX_TOKENS,
    ) -> None:
        super().__init__(model_name, dimensions=dimensions, max_tokens=max_tokens)

    def _embed(self, texts: List[str]) -> List[List[float]]:
        return [self._vectorize(text) for text in texts]

    def _vectorize(self, text: str) -> List[float]:
        vector = np.zeros(self.dimensions, dtype=np.float64)
        for token in re.findall(r"\w+", text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dimensions
            vector[bucket] += 1.0 if digest[4] % 2 == 0 else -1.0

        norm = np.linalg.norm(vector)
        if norm == 0:
            # Text without words still needs a valid direction for cosine search.
            vector[0] = 1.0
            norm = 1.0
        return (vector / norm).tolist()


def infer_provider(model_name: str) -> SupportedProvider:
    lowered = model_name.lower()
    if lowered.startswith("hashing"):
        return "hashing"
    if lowered.startswith(("bge", "gte", "sentence-transformers", "m3e", "mpnet")):
        return "huggingface"
    return "openai"


def create_embedder(
    settings: Settings,
    model_name: Optional[str] = None,
    *,
    provider: Optional[SupportedProvider] = None,
) -> EmbeddingClient:
    """
    Build the embedding client configured for this deployment.
    """
    model_name = model_name or settings.embedding_model
    provider = provider or settings.embedding_provider or infer_provider(model_name)  # type: ignore[assignment]

    if provider == "openai":
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY environment variable is not set")
        return OpenAIEmbedder(
            model_name,
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
        )
    if provider == "huggingface":
        return SentenceTransformerEmbedder(model_name)
    if provider == "hashing":
        return HashingEmbedder(model_name)
    raise ValueError(f"Unsupported embedding provider: {provider}")


__all__ = [
    "EmbeddingClient",
    "OpenAIEmbedder",
    "SentenceTransformerEmbedder",
    "HashingEmbedder",
    "create_embedder",
    "infer_provider",
]
