"""
ChatKB package bootstrap.

Expose high-level helpers so callers can import from `chatkb` without
needing to traverse the entire package hierarchy.
"""

from .config.settings import get_settings, Settings  # noqa: F401
from .knowledge_base import KnowledgeBaseManager, create_manager  # noqa: F401

__all__ = ["KnowledgeBaseManager", "Settings", "create_manager", "get_settings"]
