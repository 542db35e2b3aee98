"""
Embedding pipeline
==================

Loads one embedding model per process and turns text into float32 vectors.
The loaded model, not a constant, decides the vector width; the rest of the
memory subsystem sizes its tables from :attr:`EmbeddingPipeline.dimension`.
"""

from __future__ import annotations

from typing import List, Protocol, Sequence

import numpy as np

from .errors import EmbeddingError, NotInitializedError
import logging

logger = logging.getLogger(__name__)

DEFAULT_VECTOR_DIMENSION = 384
_PROBE_TEXT = "dimension probe"


class EmbeddingBackend(Protocol):
    async def load(self) -> None: ...

    @property
    def dimension(self) -> int | None: ...

    async def embed(self, texts: List[str]) -> List[np.ndarray]: ...


class EmbeddingPipeline:
    """Batch and single-text embedding over an :class:`EmbeddingBackend`."""

    def __init__(
        self,
        backend: EmbeddingBackend,
        *,
        default_dimension: int = DEFAULT_VECTOR_DIMENSION,
    ) -> None:
        self._backend = backend
        self._default_dimension = default_dimension
        self._dimension = default_dimension
        self._ready = False

    @property
    def dimension(self) -> int:
        return self._dimension

    def is_ready(self) -> bool:
        return self._ready

    async def initialize(self) -> int:
        """
        Load the model and return its output dimension.

        Idempotent: once loaded, later calls return the cached dimension. On
        failure the pipeline stays uninitialized and :class:`EmbeddingError`
        is raised.
        """
        if self._ready:
            logger.info("Embedding pipeline already initialized (dim=%d)", self._dimension)
            return self._dimension

        try:
            await self._backend.load()
            dim = self._backend.dimension
            if not dim:
                dim = await self._probe_dimension()
        except Exception as exc:
            self._dimension = self._default_dimension
            logger.error("Failed to initialize embedding model: %s", exc)
            raise EmbeddingError(f"Embedding model initialization failed: {exc}") from exc

        self._dimension = int(dim)
        self._ready = True
        logger.info("Embedding model loaded (dim=%d)", self._dimension)
        return self._dimension

    async def _probe_dimension(self) -> int:
        logger.warning("Model did not report its dimension; probing with one embedding")
        vectors = await self._backend.embed([_PROBE_TEXT])
        if vectors and np.asarray(vectors[0]).size > 0:
            return int(np.asarray(vectors[0]).size)
        logger.warning(
            "Could not determine vector dimension from model; using default %d",
            self._default_dimension,
        )
        return self._default_dimension

    async def embed_texts(self, texts: Sequence[str]) -> List[np.ndarray]:
        """Return one vector per text, in order. Empty input skips the model."""
        if not self._ready:
            raise NotInitializedError("Embedding model not initialized. Call initialize() first.")
        if not texts:
            return []

        logger.debug("Embedding %d texts", len(texts))
        try:
            vectors = await self._backend.embed(list(texts))
        except Exception as exc:
            logger.error("Error generating embeddings: %s", exc)
            raise EmbeddingError(f"Failed to generate embeddings: {exc}") from exc

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Model returned {len(vectors)} embeddings for {len(texts)} texts"
            )
        return [np.asarray(v, dtype=np.float32) for v in vectors]

    async def embed_text(self, text: str) -> np.ndarray:
        return (await self.embed_texts([text]))[0]

    async def dispose(self) -> None:
        close = getattr(self._backend, "close", None)
        if close is not None:
            await close()
        self._ready = False
        logger.info("Embedding pipeline disposed")


def build_backend(settings=None) -> EmbeddingBackend:
    """Create the backend named by ``settings.EMB_PROVIDER``."""
    if settings is None:
        from avatar_memory.config import embeddings as settings

    if settings.EMB_PROVIDER == "ollama":
        from avatar_memory.clients.ollama import OllamaEmbedder

        return OllamaEmbedder(settings.EMB_MODEL_ID, host=settings.OLLAMA_URL)

    from avatar_memory.clients.oai import OpenAIEmbedder

    return OpenAIEmbedder(
        settings.EMB_MODEL_ID,
        api_key=settings.OPENAI_API_KEY,
        dimensions=settings.EMB_DIM or None,
    )


__all__ = ["EmbeddingPipeline", "EmbeddingBackend", "DEFAULT_VECTOR_DIMENSION", "build_backend"]
