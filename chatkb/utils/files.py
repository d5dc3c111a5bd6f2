from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import docx
from pypdf import PdfReader

from ..knowledge_base.errors import DocumentProcessingError, ValidationError
from ..knowledge_base.models import Document
from .text import count_words, split_front_matter, strip_markdown, title_from_filename, title_from_markdown

logger = logging.getLogger("chatkb")

MAX_FILE_SIZE = 50 * 1024 * 1024
SUPPORTED_FILE_TYPES = ("pdf", "docx", "txt", "md")
_SUFFIX_TYPES = {
    ".pdf": "pdf",
    ".docx": "docx",
    ".txt": "txt",
    ".md": "md",
    ".markdown": "md",
}
SUPPORTED_SUFFIXES = tuple(_SUFFIX_TYPES)


def get_file_type(path: str | Path) -> str:
    """Normalised type of a file from its suffix, ``unknown`` when unsupported."""
    return _SUFFIX_TYPES.get(Path(path).suffix.lower(), "unknown")


def validate_file(path: str | Path, *, max_size: int = MAX_FILE_SIZE) -> str:
    """
    Check that a file exists, is not larger than ``max_size`` bytes and has a
    supported type. Returns the file type.

    Raises:
        FileNotFoundError: if the path is not a file.
        ValidationError: if the file is too large or of an unsupported type.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Document source not found: {path}")

    size = path.stat().st_size
    if size > max_size:
        raise ValidationError(
            f"File size ({round(size / 1024 / 1024)}MB) exceeds maximum allowed size "
            f"({round(max_size / 1024 / 1024)}MB)"
        )

    file_type = get_file_type(path)
    if file_type not in SUPPORTED_FILE_TYPES:
        suffix = path.suffix.lstrip(".").lower() or "unknown"
        raise ValidationError(
            f"File type '{suffix}' is not supported. Allowed types: {', '.join(SUPPORTED_FILE_TYPES)}"
        )
    return file_type


def document_id_for(path: str | Path) -> str:
    """
    Stable document id for a file: readable stem plus a hash of its absolute
    path, so re-ingesting the same file overwrites its chunks.
    """
    resolved = Path(path).resolve()
    stem = re.sub(r"[^A-Za-z0-9._-]+", "_", resolved.stem).strip("_") or "document"
    digest = hashlib.sha1(str(resolved).encode("utf-8")).hexdigest()[:8]
    return f"{stem}-{digest}"


def extract_pdf_text(path: Path, *, max_pages: Optional[int] = None) -> Tuple[str, int]:
    """Text of each page under a ``--- Page N ---`` marker, plus the page count."""
    reader = PdfReader(str(path))
    page_count = len(reader.pages)
    limit = min(max_pages, page_count) if max_pages else page_count

    sections = []
    for number in range(limit):
        page_text = reader.pages[number].extract_text() or ""
        sections.append(f"--- Page {number + 1} ---\n{page_text.strip()}")
    return "\n\n".join(sections).strip(), page_count


def extract_docx_text(path: Path) -> str:
    """Non-empty paragraphs of a Word document, one per block."""
    document = docx.Document(str(path))
    paragraphs = [para.text.strip() for para in document.paragraphs if para.text.strip()]
    return "\n\n".join(paragraphs)


def read_document(
    file_path: str | Path,
    *,
    document_id: Optional[str] = None,
    max_pages: Optional[int] = None,
    max_size: int = MAX_FILE_SIZE,
) -> Document:
    """
    Load a PDF, Word, markdown or text file into a Document.

    Markdown loses its syntax and front matter; its title is the first H1,
    then the front-matter ``title``, then the file name. Other types take
    their title from the file name.

    Raises:
        FileNotFoundError: if the file does not exist.
        ValidationError: if the file fails ``validate_file``.
        DocumentProcessingError: if text extraction fails.
    """
    path = Path(file_path)
    file_type = validate_file(path, max_size=max_size)
    logger.info("Processing %s file: %s", file_type, path.name)

    metadata: Dict[str, Any] = {"source": path.name, "path": str(path.resolve())}
    try:
        if file_type == "pdf":
            content, metadata["page_count"] = extract_pdf_text(path, max_pages=max_pages)
            title = None
        elif file_type == "docx":
            content = extract_docx_text(path)
            title = None
        else:
            raw = path.read_text(encoding="utf-8")
            if file_type == "md":
                title = title_from_markdown(raw)
                _, body = split_front_matter(raw)
                content = strip_markdown(body)
            else:
                content, title = raw, None
    except Exception as exc:
        logger.error("Error processing %s file %s: %s", file_type, path, exc)
        raise DocumentProcessingError(str(path), str(exc)) from exc

    if not content.strip():
        raise DocumentProcessingError(str(path), "no extractable text")

    metadata.update(
        title=title or title_from_filename(path.name),
        file_type=file_type,
        word_count=count_words(content),
        extracted_at=datetime.now(timezone.utc).isoformat(),
    )
    return Document(id=document_id or document_id_for(path), content=content, metadata=metadata)


def read_documents(
    paths: Iterable[str | Path],
    *,
    max_pages: Optional[int] = None,
    max_size: int = MAX_FILE_SIZE,
) -> Tuple[List[Document], List[Tuple[Path, str]]]:
    """
    Load many files, continuing past the ones that fail.

    Returns the loaded documents and a ``(path, reason)`` entry per failure.
    """
    documents: List[Document] = []
    failures: List[Tuple[Path, str]] = []
    items = [Path(item) for item in paths]
    logger.info("Processing %s files", len(items))

    for path in items:
        try:
            documents.append(read_document(path, max_pages=max_pages, max_size=max_size))
        except (FileNotFoundError, ValidationError, DocumentProcessingError) as exc:
            failures.append((path, str(exc)))

    if failures:
        logger.warning("Some files failed to process: %s", [f"{p.name}: {reason}" for p, reason in failures])
    return documents, failures


def collect_document_files(inputs: Iterable[str | Path]) -> List[Path]:
    """
    Expand files and directories into document files, without duplicates and
    in a stable order. Directories only contribute supported file types.
    """
    collected: list[Path] = []
    seen: set[str] = set()
    for item in inputs:
        path = Path(item).expanduser()
        if path.is_dir():
            candidates = sorted(
                candidate
                for candidate in path.rglob("*")
                if candidate.is_file() and candidate.suffix.lower() in SUPPORTED_SUFFIXES
            )
        elif path.is_file():
            candidates = [path]
        else:
            raise FileNotFoundError(f"Document source not found: {path}")

        for candidate in candidates:
            resolved = str(candidate.resolve())
            if resolved in seen:
                continue
            seen.add(resolved)
            collected.append(candidate)
    return collected


__all__ = [
    "MAX_FILE_SIZE",
    "SUPPORTED_FILE_TYPES",
    "collect_document_files",
    "document_id_for",
    "extract_docx_text",
    "extract_pdf_text",
    "get_file_type",
    "read_document",
    "read_documents",
    "validate_file",
]
