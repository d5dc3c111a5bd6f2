"""
Utility helpers kept intentionally small and stateless.
"""

from .files import (  # noqa: F401
    collect_document_files,
    get_file_type,
    read_document,
    read_documents,
    validate_file,
)
from .text import count_words, preview, strip_markdown  # noqa: F401

__all__ = [
    "collect_document_files",
    "count_words",
    "get_file_type",
    "preview",
    "read_document",
    "read_documents",
    "strip_markdown",
    "validate_file",
]
