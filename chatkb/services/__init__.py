"""
Service-layer integrations (external APIs).
"""

from .llm_client import complete_chat, create_chat_client, total_tokens  # noqa: F401

__all__ = ["complete_chat", "create_chat_client", "total_tokens"]
