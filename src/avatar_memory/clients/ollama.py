"""Embedding backend backed by a local Ollama server"""
from __future__ import annotations

from typing import Any, List

import numpy as np
from ollama import AsyncClient

import logging
logger = logging.getLogger(__name__)


def _embedding_length(model_info: Any) -> int | None:
    """Pull ``<arch>.embedding_length`` out of ``show()`` metadata."""
    if not model_info:
        return None
    items = model_info.items() if hasattr(model_info, "items") else []
    for key, value in items:
        if str(key).endswith(".embedding_length"):
            try:
                return int(value)
            except (TypeError, ValueError):
                return None
    return None


class OllamaEmbedder:
    """Embed batches of text with a model served by Ollama."""

    def __init__(self, model: str, *, host: str, client: AsyncClient | None = None) -> None:
        self.model = model
        self._host = host
        self._client = client
        self._dimension: int | None = None

    async def load(self) -> None:
        if self._client is None:
            self._client = AsyncClient(host=self._host)
        # Fails when the model has not been pulled
        info = await self._client.show(self.model)
        self._dimension = _embedding_length(getattr(info, "modelinfo", None))
        logger.info("Ollama embedder ready (model=%s, dim=%s)", self.model, self._dimension)

    @property
    def dimension(self) -> int | None:
        return self._dimension

    async def embed(self, texts: List[str]) -> List[np.ndarray]:
        if self._client is None:
            raise RuntimeError("Ollama embedder used before load()")
        resp = await self._client.embed(model=self.model, input=texts)
        return [np.asarray(vec, dtype=np.float32) for vec in resp.embeddings]

    async def close(self) -> None:
        self._client = None
