from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from openai import OpenAI

from ..config import Settings

logger = logging.getLogger("chatkb")


def create_chat_client(settings: Settings) -> OpenAI:
    """
    Create an OpenAI-compatible chat client. ``OPENAI_BASE_URL`` points it at
    compatible providers such as DeepSeek.
    """
    if not settings.openai_api_key:
        raise ValueError("OPENAI_API_KEY environment variable is not set")

    return OpenAI(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
    )


def complete_chat(
    client: Any,
    model: str,
    messages: list[Dict[str, str]],
    *,
    temperature: float = 0.1,
    max_tokens: Optional[int] = None,
) -> Any:
    """
    Issue a single chat completion and log its token usage. Errors propagate
    to the caller; there is no retry.
    """
    request: Dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "stream": False,
    }
    if max_tokens is not None:
        request["max_tokens"] = max_tokens

    response = client.chat.completions.create(**request)
    _log_usage(response, model)
    return response


def total_tokens(response: Any) -> int:
    usage = getattr(response, "usage", None)
    if not usage:
        return 0
    return int(getattr(usage, "total_tokens", 0) or 0)


def _log_usage(response: Any, model: str) -> None:
    """
    Log the token usage reported by the provider.
    """
    usage = getattr(response, "usage", None)
    if not usage:
        logger.debug("No usage reported for %s completion", model)
        return

    logger.info(
        "Chat usage for %s: prompt_tokens=%s, completion_tokens=%s, total_tokens=%s",
        model,
        getattr(usage, "prompt_tokens", None) or 0,
        getattr(usage, "completion_tokens", None) or 0,
        getattr(usage, "total_tokens", None) or 0,
    )


__all__ = ["create_chat_client", "complete_chat", "total_tokens"]
