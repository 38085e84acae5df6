#!/usr/bin/env python3
"""
Local Memory MCP Server - LanceDB Vector Memory

Provides persistent local memory with exact semantic search using:
- FastMCP for clean, idiomatic MCP server patterns
- LanceDB as the embedded on-disk store (flat memories table)
- Brute-force cosine similarity with near-duplicate merging on store
- sentence-transformers bge-small-en-v1.5 embeddings (384-dim), or OpenAI
  text-embedding-3-small (1536-dim) when OPENAI_API_KEY is set
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys
import threading
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from config import CONFIG
from embeddings import EmbeddingProvider, create_embeddings
from indexer import index_directory
from memory_store import MemoryStore, MemoryStoreError
from utils import log

# =============================================================================
# Lazy Singletons (provider + store)
# =============================================================================

_lock = threading.RLock()  # RLock allows reentrant calls (get_store -> get_embeddings)

_embeddings: EmbeddingProvider | None = None
_store: MemoryStore | None = None


def get_embeddings() -> EmbeddingProvider:
    """Get or create the embedding provider for this process (thread-safe)."""
    global _embeddings
    if _embeddings is None:
        with _lock:
            if _embeddings is None:  # Double-check after acquiring lock
                _embeddings = create_embeddings(CONFIG)
    return _embeddings


def get_store() -> MemoryStore:
    """Get or open the memory store, validating its dimension (thread-safe)."""
    global _store
    if _store is None:
        with _lock:
            if _store is None:  # Double-check after acquiring lock
                _store = MemoryStore(
                    CONFIG.db_path,
                    get_embeddings().dimension,
                    table_name=CONFIG.table_name,
                )
    return _store


def close_store() -> None:
    """Release the store. Safe to call more than once."""
    global _store
    with _lock:
        if _store is not None:
            _store.close()
            _store = None
            log("Memory store closed", "DEBUG")


def _json(result: Any) -> str:
    return json.dumps(result, indent=2)


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "local-memory",
    instructions=(
        "Persistent local vector memory backed by LanceDB. Use memory_store to save, "
        "memory_search to recall, and memory_index to ingest a codebase."
    ),
)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def memory_store(
    content: str,
    tags: list[str] | None = None,
    category: str | None = None,
    source: str = "",
) -> str:
    """Store a memory (content) with optional tags and category.

    A memory that is nearly identical to an existing one replaces it instead
    of creating a second record.

    Args:
        content: The memory text to store.
        tags: Optional tags.
        category: Optional category (e.g., decision, preference, project).
        source: Optional source label.
    """
    content = content.strip()
    if not content:
        return "Error: content is required"

    embedding = await get_embeddings().embed(content)
    store = get_store()
    stored = store.store(
        content,
        embedding,
        tags=tags or [],
        category=category,
        source=source or "",
        dedupe_threshold=CONFIG.dedup_threshold,
    )
    store.increment_capture_count()

    return _json(
        {
            "id": stored.record.id,
            "isDuplicate": stored.is_duplicate,
            "updatedId": stored.updated_id,
            "created_at": stored.record.created_at,
            "tags": stored.record.tags,
            "category": stored.record.category,
            "source": stored.record.source,
        }
    )


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_search(
    query: str,
    limit: int = CONFIG.default_limit,
    min_score: float = CONFIG.default_min_score,
) -> str:
    """Semantic search across memories.

    Args:
        query: Search query.
        limit: Max results (default 5, max 50).
        min_score: Minimum cosine similarity score (default 0.3).
    """
    query = query.strip()
    if not query:
        return "Error: query is required"
    if limit <= 0:
        return f"Error: limit must be positive, got {limit}"
    if limit > CONFIG.max_limit:
        return f"Error: limit cannot exceed {CONFIG.max_limit}, got {limit}"

    embedding = await get_embeddings().embed(query)
    results = get_store().search(embedding, limit=limit, min_score=min_score)

    return _json(
        {
            "query": query,
            "results": [{**r.record.summary(), "score": r.score} for r in results],
        }
    )


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def memory_forget(
    memory_id: str | None = None,
    query: str | None = None,
    threshold: float = CONFIG.forget_threshold,
) -> str:
    """Delete memories by exact id OR by semantic query.

    Args:
        memory_id: Memory ID (UUID) to delete.
        query: Semantic query to match for deletion.
        threshold: Similarity threshold (default 0.8) when deleting by query.
    """
    store = get_store()

    if memory_id:
        deleted = store.delete(memory_id)
        return _json({"deleted": deleted, "mode": "id", "id": memory_id})

    query = (query or "").strip()
    if query:
        embedding = await get_embeddings().embed(query)
        deleted = store.delete_by_query(embedding, threshold=threshold, max_matches=CONFIG.delete_cap)
        return _json({"deleted": deleted, "mode": "query", "query": query, "threshold": threshold})

    return "Error: Provide either memory_id or query"


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_profile() -> str:
    """Get the stored user profile summary (if any)."""
    return _json({"profile": get_store().get_profile()})


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_stats() -> str:
    """Get memory database statistics."""
    return _json(get_store().stats().as_dict())


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_index(
    directory: str,
    max_files: int = 500,
    max_bytes_per_file: int = 200_000,
    category: str = "project-context",
    tags: list[str] | None = None,
) -> str:
    """Index a project directory by storing file contents as memories (local only).

    Skips common large/irrelevant folders (node_modules, .git, dist, build, ...).

    Args:
        directory: Directory path to index.
        max_files: Safety cap on number of files indexed (default 500).
        max_bytes_per_file: Max bytes per file (default 200000).
        category: Category to store under (default project-context).
        tags: Extra tags applied to each indexed file.
    """
    if not directory.strip():
        return "Error: directory is required"
    root = Path(directory).expanduser()
    if not root.is_dir():
        return f"Error: {directory} is not a directory"
    if max_files <= 0:
        return f"Error: max_files must be positive, got {max_files}"

    summary = await index_directory(
        get_store(),
        get_embeddings(),
        root,
        max_files=max_files,
        max_bytes_per_file=max_bytes_per_file,
        category=category,
        tags=tags,
        dedupe_threshold=CONFIG.index_dedup_threshold,
    )
    return _json(summary)


# =============================================================================
# Resources
# =============================================================================


@mcp.resource(
    "memory://profile",
    name="profile",
    description="User profile summary (if available).",
    mime_type="application/json",
)
def profile_resource() -> str:
    return _json({"profile": get_store().get_profile()})


@mcp.resource(
    "memory://recent",
    name="recent",
    description="Recent memory contents (last 20).",
    mime_type="text/markdown",
)
def recent_resource() -> str:
    items = get_store().get_all_content(CONFIG.recent_limit)
    sections = [f"## {i}\n\n{content}" for i, content in enumerate(items, 1)]
    return "\n\n".join(["# Recent memories", "", *sections])


@mcp.resource(
    "memory://stats",
    name="stats",
    description="Memory database statistics.",
    mime_type="application/json",
)
def stats_resource() -> str:
    return _json(get_store().stats().as_dict())


# =============================================================================
# Server Entry Point
# =============================================================================


def init_store() -> MemoryStore:
    """Select the provider and open the store before serving any request."""
    store = get_store()
    stats = store.stats()
    log(
        f"Memory store ready at {store.path}: {stats.total_memories} memories, "
        f"{stats.dimension}-dim embeddings"
    )
    return store


async def run_server() -> None:
    """Run the MCP server, closing the store on the way out."""
    init_store()
    try:
        await mcp.run_stdio_async()
    finally:
        close_store()


def _handle_sigterm(signum: int, frame: object) -> None:
    raise SystemExit(0)


def main() -> None:
    """Entry point."""
    signal.signal(signal.SIGTERM, _handle_sigterm)
    try:
        asyncio.run(run_server())
    except KeyboardInterrupt:
        pass
    except MemoryStoreError as e:
        log(str(e), "ERROR")
        sys.exit(1)
    finally:
        close_store()


if __name__ == "__main__":
    main()
