"""Environment-driven configuration for local-memory-mcp."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DB_PATH = "~/.local-memory/lancedb-memory"
DEFAULT_CACHE_DIR = "~/.cache/local-memory/models"


def expand_home(path: str) -> Path:
    """Expand a leading ``~`` to the current user's home directory."""
    if path == "~":
        return Path.home()
    if path.startswith("~/"):
        return Path.home() / path[2:]
    return Path(path)


@dataclass(frozen=True, slots=True)
class Config:
    """Server configuration with sensible defaults."""

    db_path: Path = expand_home(DEFAULT_DB_PATH)
    cache_dir: Path = expand_home(DEFAULT_CACHE_DIR)
    openai_api_key: str | None = None
    openai_model: str | None = None
    debug: bool = False
    table_name: str = "memories"
    dedup_threshold: float = 0.95
    index_dedup_threshold: float = 0.98
    default_limit: int = 5
    max_limit: int = 50
    default_min_score: float = 0.3
    forget_threshold: float = 0.8
    delete_cap: int = 100
    recent_limit: int = 20


def load_config(env: Mapping[str, str] = os.environ) -> Config:
    """Build a Config from environment variables."""
    return Config(
        db_path=expand_home(env.get("LOCAL_MEMORY_DB_PATH") or DEFAULT_DB_PATH),
        cache_dir=expand_home(env.get("LOCAL_MEMORY_CACHE_DIR") or DEFAULT_CACHE_DIR),
        openai_api_key=env.get("OPENAI_API_KEY") or None,
        openai_model=env.get("OPENAI_EMBEDDING_MODEL") or None,
        debug=env.get("LOCAL_MEMORY_DEBUG", "").lower() == "true",
    )


CONFIG = load_config()
