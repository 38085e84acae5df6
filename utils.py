"""Shared utility functions for local-memory-mcp."""

from __future__ import annotations

import json
import sys
import time
from collections.abc import Sequence

import numpy as np

from config import CONFIG

LOG_PREFIX = "[local-memory]"


def log(message: str, level: str = "INFO") -> None:
    """Write a log line to stderr (stdout carries the MCP transport)."""
    if level == "DEBUG" and not CONFIG.debug:
        return
    print(f"{LOG_PREFIX} {level}: {message}", file=sys.stderr)


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return time.time_ns() // 1_000_000


def escape_filter_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Cosine similarity of two equal-length vectors.

    Returns 0.0 when either vector has zero norm and exactly 1.0 for
    identical vectors. The result is clamped to [-1, 1].

    Raises:
        ValueError: if the vectors differ in length.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vector dimension mismatch: {va.size} vs {vb.size}")

    denom = float(np.sqrt(np.dot(va, va) * np.dot(vb, vb)))
    if denom == 0.0:
        return 0.0
    if np.array_equal(va, vb):
        return 1.0
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


def encode_vector(values: Sequence[float]) -> str:
    """Encode a vector as JSON text (float repr round-trips exactly)."""
    return json.dumps([float(v) for v in values])


def decode_vector(text: str) -> np.ndarray:
    """Decode a vector stored by encode_vector.

    Raises:
        ValueError: if the text is not a flat JSON array of numbers.
    """
    values = json.loads(text)
    if not isinstance(values, list):
        raise ValueError(f"expected a JSON array, got {type(values).__name__}")
    vector = np.asarray(values, dtype=np.float64)
    if vector.ndim != 1:
        raise ValueError(f"expected a flat array, got shape {vector.shape}")
    return vector


def encode_tags(tags: Sequence[str]) -> str:
    return json.dumps(list(tags))


def decode_tags(text: str | None) -> list[str]:
    return json.loads(text) if text else []
