"""Bulk ingestion of a project directory into the memory store."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from typing import Any

from embeddings import EmbeddingError, EmbeddingProvider
from memory_store import MemoryStore
from utils import log

IGNORED_DIRS = frozenset({"node_modules", ".git", "dist", "build", ".next", "out", "coverage"})
INDEXED_EXTENSIONS = frozenset(
    {
        ".md", ".txt", ".ts", ".tsx", ".js", ".jsx", ".json", ".yml", ".yaml", ".py",
        ".go", ".rs", ".java", ".kt", ".swift", ".rb", ".php", ".toml", ".ini",
    }
)
MAX_BODY_CHARS = 20_000


def walk_files(
    root: Path,
    ignore: Iterable[str] = IGNORED_DIRS,
    onerror: Callable[[Path, OSError], None] | None = None,
) -> Iterator[Path]:
    """Yield regular files under ``root`` depth-first, skipping ignored directory names.

    Symbolic links are never followed or yielded. A directory that cannot be
    listed is reported to ``onerror`` (or re-raised if there is none) and the
    walk moves on to its siblings.
    """
    ignored = frozenset(ignore)
    try:
        entries = sorted(root.iterdir())
    except OSError as e:
        if onerror is None:
            raise
        onerror(root, e)
        return
    for entry in entries:
        if entry.name in ignored or entry.is_symlink():
            continue
        if entry.is_dir():
            yield from walk_files(entry, ignored, onerror)
        elif entry.is_file():
            yield entry


def should_index_file(path: Path) -> bool:
    if path.name.startswith("."):
        return False
    return path.suffix.lower() in INDEXED_EXTENSIONS


def file_memory_content(rel: str, raw: str) -> str:
    """Content stored for an indexed file: a path header plus the (bounded) body."""
    body = raw[:MAX_BODY_CHARS] + "\n\n[truncated]" if len(raw) > MAX_BODY_CHARS else raw
    return f"File: {rel}\n\n{body}"


async def index_directory(
    store: MemoryStore,
    embeddings: EmbeddingProvider,
    directory: str | Path,
    *,
    max_files: int = 500,
    max_bytes_per_file: int = 200_000,
    category: str = "project-context",
    tags: list[str] | None = None,
    dedupe_threshold: float = 0.98,
) -> dict[str, Any]:
    """Store every indexable file under ``directory`` as a memory.

    Files that cannot be read or embedded, and directories that cannot be
    listed, are counted in ``errors`` and the walk continues. Symlinks are
    skipped.
    """
    root = Path(directory).expanduser().resolve()
    extra_tags = list(tags or [])
    indexed = skipped = errors = 0

    def unreadable_dir(path: Path, exc: OSError) -> None:
        nonlocal errors
        log(f"Failed to list {path}: {exc}", "WARNING")
        errors += 1

    for path in walk_files(root, onerror=unreadable_dir):
        if indexed >= max_files:
            break
        if not should_index_file(path):
            skipped += 1
            continue

        rel = path.relative_to(root).as_posix()
        try:
            if path.stat().st_size > max_bytes_per_file:
                skipped += 1
                continue
            raw = path.read_text(encoding="utf-8", errors="replace")
            content = file_memory_content(rel, raw)
            embedding = await embeddings.embed(content)
            store.store(
                content,
                embedding,
                source=f"index:{root}",
                category=category,
                tags=["indexed", f"path:{rel}", *extra_tags],
                dedupe_threshold=dedupe_threshold,
            )
            indexed += 1
        except (OSError, EmbeddingError) as e:
            log(f"Failed to index {rel}: {e}", "WARNING")
            errors += 1

    log(f"Indexed {indexed} files from {root} (skipped {skipped}, errors {errors})")
    return {
        "directory": str(root),
        "indexed": indexed,
        "skipped": skipped,
        "errors": errors,
        "maxFiles": max_files,
        "maxBytesPerFile": max_bytes_per_file,
        "category": category,
        "tags": extra_tags,
    }
