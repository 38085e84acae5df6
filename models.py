"""Shared data models for local-memory-mcp."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from lancedb.pydantic import LanceModel


class MemoryRow(LanceModel):
    """Memory table schema for LanceDB.

    IMPORTANT: Any changes to this schema require migration of existing data.
    The embedding is stored as JSON text so that a dataset written with one
    dimension can be detected when opened with another.
    """

    id: str  # uuid4 string, never reused
    content: str
    embedding: str  # JSON array of floats
    tags: str  # JSON array as string
    category: str | None = None
    source: str = ""
    created_at: int  # epoch milliseconds


class MetadataRow(LanceModel):
    """Store-level key/value metadata (capture_count, profile)."""

    name: str
    data: str


@dataclass(slots=True)
class MemoryRecord:
    id: str
    content: str
    embedding: list[float]
    tags: list[str] = field(default_factory=list)
    category: str | None = None
    source: str = ""
    created_at: int = 0

    def summary(self) -> dict[str, Any]:
        """Record fields without the embedding, for tool output."""
        return {
            "id": self.id,
            "content": self.content,
            "created_at": self.created_at,
            "source": self.source,
            "tags": self.tags,
            "category": self.category,
        }


@dataclass(slots=True)
class StoreResult:
    record: MemoryRecord
    is_duplicate: bool
    updated_id: str | None = None


@dataclass(slots=True)
class SearchResult:
    record: MemoryRecord
    score: float


@dataclass(frozen=True, slots=True)
class StoreStats:
    total_memories: int
    capture_count: int
    dimension: int

    def as_dict(self) -> dict[str, int]:
        return {
            "totalMemories": self.total_memories,
            "captureCount": self.capture_count,
            "dimension": self.dimension,
        }
