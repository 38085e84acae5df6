"""
Embedding providers.

Two interchangeable variants behind one capability (``dimension`` plus
``async embed``):

- LocalEmbeddings: sentence-transformers bge-small-en-v1.5, 384-dim, runs
  in-process after the first model download.
- OpenAIEmbeddings: OpenAI embeddings API, 1536-dim, requires OPENAI_API_KEY.

The provider is chosen once per process by ``create_embeddings``. There is no
fallback from one variant to the other: switching dimension mid-session would
mix embedding sizes in one dataset.
"""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from config import Config
from utils import log

if TYPE_CHECKING:
    from openai import AsyncOpenAI
    from sentence_transformers import SentenceTransformer

LOCAL_MODEL = "BAAI/bge-small-en-v1.5"
LOCAL_DIMENSION = 384
OPENAI_DEFAULT_MODEL = "text-embedding-3-small"
OPENAI_DIMENSION = 1536


class EmbeddingError(RuntimeError):
    """The configured embedding provider could not produce a vector."""


@runtime_checkable
class EmbeddingProvider(Protocol):
    dimension: int

    async def embed(self, text: str) -> list[float]: ...


# =============================================================================
# Local (sentence-transformers)
# =============================================================================


class SentenceTransformerLoader:
    """Lazily constructed, process-lifetime owner of a SentenceTransformer model."""

    def __init__(self, model_name: str = LOCAL_MODEL, cache_dir: Path | None = None):
        self.model_name = model_name
        self.cache_dir = cache_dir
        self._model: SentenceTransformer | None = None
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._model is not None

    def get(self) -> SentenceTransformer:
        """Load the model on first use (thread-safe)."""
        if self._model is None:
            with self._lock:
                if self._model is None:  # Double-check after acquiring lock
                    self._model = self._load()
        return self._model

    def _load(self) -> SentenceTransformer:
        log(f"Loading embedding model {self.model_name}...", "DEBUG")
        if self.cache_dir is not None:
            log(f"Model cache directory: {self.cache_dir}", "DEBUG")
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        try:
            from sentence_transformers import SentenceTransformer

            model = SentenceTransformer(
                self.model_name,
                cache_folder=str(self.cache_dir) if self.cache_dir is not None else None,
            )
        except Exception as e:
            raise EmbeddingError(
                f"Failed to load embedding model: {e}. "
                "This may be due to network restrictions or missing model files. "
                "Run once with network access to download the model, or set OPENAI_API_KEY."
            ) from e
        log("Embedding model loaded", "DEBUG")
        return model


class LocalEmbeddings:
    """In-process embeddings from a SentenceTransformer model (384-dim)."""

    dimension = LOCAL_DIMENSION

    def __init__(self, loader: SentenceTransformerLoader):
        self._loader = loader

    def _encode(self, text: str) -> list[float]:
        model = self._loader.get()
        embedding = model.encode(text, normalize_embeddings=True).tolist()
        if len(embedding) != self.dimension:
            raise EmbeddingError(
                f"Expected {self.dimension}-dim embedding but got {len(embedding)}-dim "
                f"from {self._loader.model_name}"
            )
        log(f"Generated {len(embedding)}-dim embedding for text of length {len(text)}", "DEBUG")
        return embedding

    async def embed(self, text: str) -> list[float]:
        return await asyncio.to_thread(self._encode, text)


# =============================================================================
# OpenAI
# =============================================================================


class OpenAIEmbeddings:
    """OpenAI embeddings API (1536-dim). Failures raise, never fall back."""

    dimension = OPENAI_DIMENSION

    def __init__(self, api_key: str, model: str | None = None):
        if not api_key:
            raise EmbeddingError("OpenAI embeddings require an API key")
        self._api_key = api_key
        self.model = model or OPENAI_DEFAULT_MODEL
        self._client: AsyncOpenAI | None = None
        log(f"Configured OpenAI embeddings with model {self.model}", "DEBUG")

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def embed(self, text: str) -> list[float]:
        try:
            response = await self._get_client().embeddings.create(model=self.model, input=text)
            embedding = list(response.data[0].embedding)
        except Exception as e:
            raise EmbeddingError(f"OpenAI embedding failed: {e}") from e

        if len(embedding) != self.dimension:
            raise EmbeddingError(
                f"Expected {self.dimension}-dim embedding but got {len(embedding)}-dim from OpenAI"
            )
        log(f"Generated {len(embedding)}-dim embedding for text of length {len(text)}", "DEBUG")
        return embedding


# =============================================================================
# Selection
# =============================================================================


def configured_dimension(config: Config) -> int:
    """Dimension the configured provider will produce, without loading it."""
    return OPENAI_DIMENSION if config.openai_api_key else LOCAL_DIMENSION


def create_embeddings(config: Config) -> EmbeddingProvider:
    """Pick the provider for this process: OpenAI when a key is set, else local."""
    if config.openai_api_key:
        log("Using OpenAI embedding provider", "DEBUG")
        return OpenAIEmbeddings(config.openai_api_key, config.openai_model)

    log("Using local sentence-transformers embedding provider", "DEBUG")
    return LocalEmbeddings(SentenceTransformerLoader(LOCAL_MODEL, config.cache_dir))
