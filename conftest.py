"""Shared pytest fixtures: isolated LanceDB datasets and a deterministic embedding provider."""

from __future__ import annotations

import hashlib
import math

import pytest

from embeddings import EmbeddingError
from memory_store import MemoryStore

DIM = 16


def unit(*weights: float, dim: int = DIM) -> list[float]:
    """Vector with the given leading components, zero-padded to ``dim``."""
    return list(weights) + [0.0] * (dim - len(weights))


def axis(i: int, dim: int = DIM) -> list[float]:
    """Standard basis vector e_i."""
    vector = [0.0] * dim
    vector[i] = 1.0
    return vector


class FakeEmbeddings:
    """Deterministic provider: fixed vectors for known texts, hashed vectors otherwise."""

    def __init__(self, vectors: dict[str, list[float]] | None = None, dimension: int = DIM):
        self.dimension = dimension
        self.vectors = dict(vectors or {})
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.sha256(text.encode()).digest()
        values = [(b - 128) / 128.0 for b in digest[: self.dimension]]
        norm = math.sqrt(sum(v * v for v in values)) or 1.0
        return [v / norm for v in values]


class FailingEmbeddings:
    dimension = DIM

    async def embed(self, text: str) -> list[float]:
        raise EmbeddingError("OpenAI embedding failed: connection refused")


@pytest.fixture
def db_path(tmp_path):
    # Parent directories do not exist yet
    return tmp_path / "data" / "nested" / "memories-db"


@pytest.fixture
def store(db_path):
    memory_store = MemoryStore(db_path, DIM)
    yield memory_store
    memory_store.close()


@pytest.fixture
def fake_embeddings():
    return FakeEmbeddings()
