"""
Memory Store - local LanceDB vector memory with exact cosine search.

Records live in a flat ``memories`` table with the embedding kept as JSON
text. Similarity search is brute force: every stored embedding is decoded
and compared against the query, O(N*D) per call. There is no ANN index; for
datasets beyond a few tens of thousands of memories this is the scaling
limit, and an index would have to sit behind the same ``search`` contract.
"""

from __future__ import annotations

import math
import threading
import uuid
from collections.abc import Iterable, Sequence
from datetime import timedelta
from pathlib import Path
from typing import Any

import lancedb
import numpy as np
import pyarrow as pa

from models import MemoryRecord, MemoryRow, MetadataRow, SearchResult, StoreResult, StoreStats
from utils import (
    cosine_similarity,
    decode_tags,
    decode_vector,
    encode_tags,
    encode_vector,
    escape_filter_value,
    log,
    now_ms,
)

METADATA_TABLE = "metadata"
CAPTURE_COUNT_KEY = "capture_count"
PROFILE_KEY = "profile"
DIMENSION_PROBE_ROWS = 8


class MemoryStoreError(Exception):
    """Base class for memory store failures."""


class DimensionMismatchError(MemoryStoreError):
    """Existing dataset was written with a different embedding dimension."""

    def __init__(self, found: int, expected: int):
        self.found = found
        self.expected = expected
        super().__init__(
            f"Database dimension mismatch: Database contains {found}-dim embeddings, "
            f"but configured provider uses {expected}-dim embeddings. "
            "To fix this, either:\n"
            f"  1. Switch the embedding provider to one producing {found}-dim embeddings "
            "(set OPENAI_API_KEY for OpenAI 1536-dim, or unset it for the local 384-dim model)\n"
            "  2. Use a new database path with LOCAL_MEMORY_DB_PATH\n"
            f"  3. Delete the existing database and re-embed everything with {expected}-dim embeddings"
        )


class InvalidEmbeddingError(MemoryStoreError, ValueError):
    """An embedding passed to the store does not satisfy the dimension contract."""


class DatasetNotFoundError(MemoryStoreError):
    """Read-only open of a path that holds no memory dataset."""


class MemoryStore:
    """Persistent vector memory backed by a LanceDB dataset.

    The configured ``dimension`` is checked against existing data once, at
    open. All writes go through a single lock so the dedup search and the
    following insert or update are not interleaved with other writers in the
    same process.

    Every read checks out the latest committed version, so writes made by
    other processes (the MCP server, a profile writer) are visible at once.
    With ``create=False`` the dataset must already exist and nothing is
    written at open.
    """

    def __init__(
        self,
        db_path: Path | str,
        dimension: int,
        table_name: str = "memories",
        *,
        create: bool = True,
    ):
        if dimension <= 0:
            raise ValueError(f"dimension must be positive, got {dimension}")
        self._dimension = dimension
        self._db_path = Path(db_path)
        self._table_name = table_name
        self._write_lock = threading.RLock()

        if create:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        elif not self._db_path.is_dir():
            raise DatasetNotFoundError(f"No memory dataset at {self._db_path}")
        self._db: lancedb.DBConnection | None = lancedb.connect(
            str(self._db_path), read_consistency_interval=timedelta(0)
        )
        if create:
            self._table = self._open_or_create(table_name, MemoryRow)
            self._metadata = self._open_or_create(METADATA_TABLE, MetadataRow)
            if self._get_meta(CAPTURE_COUNT_KEY) is None:
                self._metadata.add([MetadataRow(name=CAPTURE_COUNT_KEY, data="0").model_dump()])
        else:
            self._table = self._open_existing(table_name)
            self._metadata = self._open_existing(METADATA_TABLE)
        self._validate_dimension()
        log(f"Opened memory store at {self._db_path} ({dimension}-dim)", "DEBUG")

    # -------------------------------------------------------------------------
    # Open / lifecycle
    # -------------------------------------------------------------------------

    def _open_or_create(self, name: str, schema: type) -> lancedb.table.Table:
        return self._connection().create_table(name, schema=schema, exist_ok=True)

    def _open_existing(self, name: str) -> lancedb.table.Table:
        try:
            return self._connection().open_table(name)
        except (ValueError, FileNotFoundError) as e:
            raise DatasetNotFoundError(f"No '{name}' table in {self._db_path}") from e

    def _validate_dimension(self) -> None:
        """Compare the first decodable stored embedding against the configured dimension."""
        probe = self._table.head(DIMENSION_PROBE_ROWS).to_pylist()
        for row in probe:
            try:
                found = decode_vector(row["embedding"]).size
            except (ValueError, TypeError) as e:
                log(f"Skipping undecodable embedding during dimension check (id={row['id']}): {e}", "WARNING")
                continue
            if found != self._dimension:
                raise DimensionMismatchError(found, self._dimension)
            return

    def _connection(self) -> lancedb.DBConnection:
        if self._db is None:
            raise MemoryStoreError("Memory store is closed")
        return self._db

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def path(self) -> Path:
        return self._db_path

    @property
    def closed(self) -> bool:
        return self._db is None

    def close(self) -> None:
        """Release the dataset; further operations raise MemoryStoreError."""
        with self._write_lock:
            self._table = None
            self._metadata = None
            self._db = None

    def __enter__(self) -> MemoryStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _memories(self) -> lancedb.table.Table:
        self._connection()
        return self._table

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    def _get_meta(self, name: str) -> str | None:
        rows = self._metadata.to_arrow().to_pylist()
        for row in rows:
            if row["name"] == name:
                return row["data"]
        return None

    def get_profile(self) -> str | None:
        """Profile blob written by an external process, returned verbatim."""
        self._connection()
        return self._get_meta(PROFILE_KEY)

    def increment_capture_count(self) -> int:
        """Bump the persisted capture counter and return the new value."""
        with self._write_lock:
            self._connection()
            count = int(self._get_meta(CAPTURE_COUNT_KEY) or 0) + 1
            self._metadata.update(
                where=f"name = '{CAPTURE_COUNT_KEY}'",
                values={"data": str(count)},
            )
            return count

    # -------------------------------------------------------------------------
    # Store
    # -------------------------------------------------------------------------

    def _check_embedding(self, embedding: Sequence[float]) -> list[float]:
        values = [float(v) for v in embedding]
        if len(values) != self._dimension:
            raise InvalidEmbeddingError(
                f"Embedding has {len(values)} dimensions, store expects {self._dimension}"
            )
        if not all(math.isfinite(v) for v in values):
            raise InvalidEmbeddingError("Embedding contains non-finite values")
        return values

    def store(
        self,
        content: str,
        embedding: Sequence[float],
        *,
        tags: Iterable[str] | None = None,
        category: str | None = None,
        source: str = "",
        dedupe_threshold: float = 0.95,
    ) -> StoreResult:
        """Insert a memory, or overwrite the closest existing one above ``dedupe_threshold``.

        Args:
            content: Memory text, already trimmed by the caller.
            embedding: Vector of exactly ``dimension`` floats.
            tags: Optional tags, order preserved.
            category: Optional classifier; None is kept distinct from "".
            source: Provenance label.
            dedupe_threshold: Minimum cosine score for a stored memory to be
                treated as the same memory and updated in place.

        Raises:
            InvalidEmbeddingError: if the embedding violates the dimension contract.
        """
        if not content:
            raise ValueError("content is required")
        values = self._check_embedding(embedding)
        tag_list = [str(t) for t in (tags or [])]
        source = source or ""

        with self._write_lock:
            table = self._memories()
            matches = self.search(values, limit=1, min_score=dedupe_threshold)
            created_at = now_ms()

            if matches:
                existing_id = matches[0].record.id
                table.update(
                    where=f"id = '{escape_filter_value(existing_id)}'",
                    values={
                        "content": content,
                        "embedding": encode_vector(values),
                        "tags": encode_tags(tag_list),
                        "category": category,
                        "source": source,
                        "created_at": created_at,
                    },
                )
                record = MemoryRecord(existing_id, content, values, tag_list, category, source, created_at)
                log(f"Updated near-duplicate memory {existing_id[:8]}...", "DEBUG")
                return StoreResult(record=record, is_duplicate=True, updated_id=existing_id)

            record = MemoryRecord(str(uuid.uuid4()), content, values, tag_list, category, source, created_at)
            table.add([self._to_row(record).model_dump()])
            log(f"Stored memory {record.id[:8]}...", "DEBUG")
            return StoreResult(record=record, is_duplicate=False)

    @staticmethod
    def _to_row(record: MemoryRecord) -> MemoryRow:
        return MemoryRow(
            id=record.id,
            content=record.content,
            embedding=encode_vector(record.embedding),
            tags=encode_tags(record.tags),
            category=record.category,
            source=record.source,
            created_at=record.created_at,
        )

    @staticmethod
    def _to_record(row: dict[str, Any], embedding: np.ndarray | None = None) -> MemoryRecord:
        return MemoryRecord(
            id=row["id"],
            content=row["content"],
            embedding=embedding.tolist() if embedding is not None else [],
            tags=decode_tags(row.get("tags")),
            category=row.get("category"),
            source=row.get("source") or "",
            created_at=row["created_at"],
        )

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    def search(
        self,
        query_embedding: Sequence[float],
        limit: int = 5,
        min_score: float = 0.3,
    ) -> list[SearchResult]:
        """Exact cosine search over every stored memory.

        Results are ordered by score descending; equal scores keep storage
        order. Rows whose embedding cannot be decoded are skipped with a
        warning.
        """
        query = np.asarray(self._check_embedding(query_embedding), dtype=np.float64)
        if limit <= 0:
            return []

        results: list[SearchResult] = []
        for row in self._memories().to_arrow().to_pylist():
            try:
                embedding = decode_vector(row["embedding"])
                if embedding.size != self._dimension:
                    raise ValueError(f"expected {self._dimension} values, found {embedding.size}")
            except (ValueError, TypeError) as e:
                log(f"Skipping memory entry with invalid embedding (id={row['id']}): {e}", "WARNING")
                continue

            score = cosine_similarity(query, embedding)
            if score >= min_score:
                results.append(SearchResult(record=self._to_record(row, embedding), score=score))

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def delete(self, memory_id: str) -> int:
        """Delete a memory by id. Unknown ids are a no-op; returns rows removed."""
        with self._write_lock:
            table = self._memories()
            before = table.count_rows()
            table.delete(f"id = '{escape_filter_value(memory_id)}'")
            return before - table.count_rows()

    def delete_by_query(
        self,
        query_embedding: Sequence[float],
        threshold: float = 0.8,
        max_matches: int = 100,
    ) -> int:
        """Delete every memory scoring at least ``threshold`` against the query."""
        with self._write_lock:
            matches = self.search(query_embedding, limit=max_matches, min_score=threshold)
            deleted = 0
            for match in matches:
                deleted += self.delete(match.record.id)
            return deleted

    # -------------------------------------------------------------------------
    # Recall / stats
    # -------------------------------------------------------------------------

    def _recent_rows(self, limit: int) -> pa.Table:
        arrow_table = self._memories().to_arrow()
        if limit <= 0 or arrow_table.num_rows == 0:
            return arrow_table.slice(0, 0)
        return arrow_table.sort_by([("created_at", "descending")]).slice(0, limit)

    def recent(self, limit: int = 20) -> list[MemoryRecord]:
        """Most recently created memories, newest first (embeddings omitted)."""
        return [self._to_record(row) for row in self._recent_rows(limit).to_pylist()]

    def get_all_content(self, limit: int = 20) -> list[str]:
        """Content of the ``limit`` most recently created memories, newest first."""
        return self._recent_rows(limit).column("content").to_pylist()

    def stats(self) -> StoreStats:
        self._connection()
        return StoreStats(
            total_memories=self._memories().count_rows(),
            capture_count=int(self._get_meta(CAPTURE_COUNT_KEY) or 0),
            dimension=self._dimension,
        )
