from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

_FRONT_MATTER = re.compile(r"\A---[ \t]*\n(.*?)\n---[ \t]*(?:\n|\Z)", re.DOTALL)
_FRONT_MATTER_TITLE = re.compile(r"^title:\s*(.+)$", re.MULTILINE)
_H1 = re.compile(r"^#\s+(.+)$", re.MULTILINE)

# Applied in order; images go before links so "![alt](src)" keeps only "alt".
_MARKDOWN_RULES = (
    (re.compile(r"```.*?```", re.DOTALL), ""),
    (re.compile(r"`([^`]+)`"), r"\1"),
    (re.compile(r"^#{1,6}\s+", re.MULTILINE), ""),
    (re.compile(r"\*\*([^*]+)\*\*"), r"\1"),
    (re.compile(r"\*([^*\n]+)\*"), r"\1"),
    (re.compile(r"(?<!\w)__([^_]+)__(?!\w)"), r"\1"),
    (re.compile(r"(?<!\w)_([^_\n]+)_(?!\w)"), r"\1"),
    (re.compile(r"!\[([^\]]*)\]\([^)]+\)"), r"\1"),
    (re.compile(r"\[([^\]]+)\]\([^)]+\)"), r"\1"),
    (re.compile(r"^---+\s*$", re.MULTILINE), ""),
    (re.compile(r"^[ \t]*[-*+]\s+", re.MULTILINE), ""),
    (re.compile(r"^[ \t]*\d+\.\s+", re.MULTILINE), ""),
    (re.compile(r"\n\s*\n"), "\n\n"),
)


def preview(text: str, *, limit: int = 80) -> str:
    """
    Collapse whitespace and cut the text to ``limit`` characters for display.
    """
    clean = " ".join(text.split())
    if len(clean) <= limit:
        return clean
    return clean[: limit - 3] + "..."


def count_words(text: str) -> int:
    return len(text.split())


def split_front_matter(content: str) -> tuple[dict[str, str], str]:
    """
    Separate a leading ``---`` block from markdown content.

    Only flat ``key: value`` lines are read; anything else in the block is
    ignored.
    """
    match = _FRONT_MATTER.match(content)
    if not match:
        return {}, content
    fields: dict[str, str] = {}
    for line in match.group(1).splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip():
            fields[key.strip()] = value.strip().strip("'\"")
    return fields, content[match.end():]


def title_from_markdown(content: str) -> Optional[str]:
    """First H1 heading, falling back to a front-matter ``title``."""
    heading = _H1.search(content)
    if heading:
        return heading.group(1).strip()
    match = _FRONT_MATTER.match(content)
    if match:
        title = _FRONT_MATTER_TITLE.search(match.group(1))
        if title:
            return title.group(1).strip().replace('"', "").replace("'", "")
    return None


def title_from_filename(filename: str | Path) -> str:
    """``quarterly_sales-report.pdf`` becomes ``Quarterly Sales Report``."""
    words = re.sub(r"[-_]", " ", Path(filename).stem)
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), words)


def strip_markdown(text: str) -> str:
    """Drop markdown syntax and keep the readable text and paragraph breaks."""
    for pattern, replacement in _MARKDOWN_RULES:
        text = pattern.sub(replacement, text)
    return text.strip()


__all__ = [
    "count_words",
    "preview",
    "split_front_matter",
    "strip_markdown",
    "title_from_filename",
    "title_from_markdown",
]
