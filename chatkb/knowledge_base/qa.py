from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

from ..services.llm_client import complete_chat, total_tokens
from .errors import SynthesisError
from .models import NO_RESULTS_ANSWER, RetrievalResult, SynthesizedAnswer

logger = logging.getLogger("chatkb")

DEFAULT_QA_MODEL = "gpt-4o-mini"
MAX_CONFIDENCE = 95.0

SYSTEM_PROMPT = (
    "You are a helpful assistant that answers questions based on provided context. "
    "Be accurate and cite your sources by their [number] when possible."
)

USER_PROMPT_TEMPLATE = """Based on the following context, please answer the question. Use only the information in the context. If the context doesn't contain enough information to answer the question, please say so plainly.

Context:
{context}

Question: {query}

Answer:"""


class AnswerSynthesizer:
    """
    Compose a grounded answer from retrieved chunks with one chat completion.
    """

    def __init__(
        self,
        client: Any,
        *,
        default_model: str = DEFAULT_QA_MODEL,
        temperature: float = 0.1,
        max_tokens: int = 1000,
    ) -> None:
        self._client = client
        self.default_model = default_model
        self.temperature = temperature
        self.max_tokens = max_tokens

    def synthesize(
        self,
        query: str,
        results: Sequence[RetrievalResult],
        model: Optional[str] = None,
    ) -> SynthesizedAnswer:
        # Nothing retrieved: answer without spending a model call.
        if not results:
            return SynthesizedAnswer(content=NO_RESULTS_ANSWER, confidence=0.0, tokens_used=0)

        model = model or self.default_model
        if self._client is None:
            raise SynthesisError("No chat client configured; set OPENAI_API_KEY")

        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": USER_PROMPT_TEMPLATE.format(
                    context=build_context(results),
                    query=query,
                ),
            },
        ]
        try:
            response = complete_chat(
                self._client,
                model,
                messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
            content = _message_content(response)
        except Exception as exc:
            logger.error("Answer generation with %s failed: %s", model, exc)
            raise SynthesisError(f"Language model {model} failed: {exc}") from exc

        return SynthesizedAnswer(
            content=content,
            confidence=confidence_from_scores(results),
            tokens_used=total_tokens(response),
        )


def build_context(results: Sequence[RetrievalResult]) -> str:
    blocks: List[str] = []
    for idx, result in enumerate(results, start=1):
        chunk = result.chunk
        blocks.append(f"[{idx}] Source: {chunk.source}\nContent: {chunk.content}".strip())
    return "\n\n---\n\n".join(blocks)


def confidence_from_scores(results: Sequence[RetrievalResult]) -> float:
    """Mean retrieval score as a percentage, capped at 95."""
    if not results:
        return 0.0
    average = sum(result.score for result in results) / len(results)
    return min(average * 100, MAX_CONFIDENCE)


def _message_content(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return "No answer generated"
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    return content.strip() if content else "No answer generated"


__all__ = ["AnswerSynthesizer", "build_context", "confidence_from_scores"]
