from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_FILES_DIR = BASE_DIR.parent / "files"
DEFAULT_ORGANIZATION_ID = "default-org"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_CHAT_MODEL = "gpt-4o-mini"


@dataclass(frozen=True)
class Settings:
    """Application configuration bundled in a single object."""

    openai_api_key: Optional[str]
    files_root: Path
    openai_base_url: Optional[str] = None
    kb_path: Optional[Path] = None
    organization_id: str = DEFAULT_ORGANIZATION_ID
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    embedding_provider: Optional[str] = None
    chat_model: str = DEFAULT_CHAT_MODEL
    chunk_size: int = 1000
    chunk_overlap: int = 200
    top_k: int = 5
    threshold: float = 0.7
    insert_batch_size: int = 10
    ingest_workers: int = 1
    mmr_fetch_multiplier: int = 4
    mmr_min_fetch_k: int = 20
    log_level: str = "INFO"

    @property
    def kb_store_path(self) -> Path:
        return self.kb_path or self.files_root / "kb_store"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Load and cache configuration from environment variables.

    Raises:
        ValueError: if a numeric variable cannot be parsed.
    """
    load_dotenv()

    files_root = Path(os.getenv("CHATKB_FILES_ROOT", DEFAULT_FILES_DIR)).expanduser()
    kb_path = os.getenv("CHATKB_KB_PATH")

    return Settings(
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
        files_root=files_root,
        kb_path=Path(kb_path).expanduser() if kb_path else None,
        organization_id=os.getenv("CHATKB_ORGANIZATION_ID", DEFAULT_ORGANIZATION_ID),
        embedding_model=os.getenv("CHATKB_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL),
        embedding_provider=os.getenv("CHATKB_EMBEDDING_PROVIDER") or None,
        chat_model=os.getenv("CHATKB_CHAT_MODEL", DEFAULT_CHAT_MODEL),
        chunk_size=_env_int("CHATKB_CHUNK_SIZE", 1000),
        chunk_overlap=_env_int("CHATKB_CHUNK_OVERLAP", 200),
        top_k=_env_int("CHATKB_TOP_K", 5),
        threshold=_env_float("CHATKB_THRESHOLD", 0.7),
        insert_batch_size=_env_int("CHATKB_INSERT_BATCH_SIZE", 10),
        ingest_workers=_env_int("CHATKB_INGEST_WORKERS", 1),
        mmr_fetch_multiplier=_env_int("CHATKB_MMR_FETCH_MULTIPLIER", 4),
        mmr_min_fetch_k=_env_int("CHATKB_MMR_MIN_FETCH_K", 20),
        log_level=os.getenv("CHATKB_LOG_LEVEL", "INFO").upper(),
    )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


__all__ = ["Settings", "get_settings"]
