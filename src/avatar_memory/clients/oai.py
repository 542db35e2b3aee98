"""Embedding backend backed by the OpenAI API"""
from __future__ import annotations

from typing import List

import numpy as np
from openai import AsyncOpenAI

import logging
logger = logging.getLogger(__name__)

# Native output widths of the hosted embedding models
KNOWN_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class OpenAIEmbedder:
    """
    Embed batches of text with ``embeddings.create``.

    ``dimensions`` shortens the output of the ``text-embedding-3`` family; when
    it is unset the width comes from :data:`KNOWN_DIMENSIONS` and is ``None``
    for models we do not know about.
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        dimensions: int | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.model = model
        self._api_key = api_key
        self._dimensions = dimensions or None
        self._client = client

    async def load(self) -> None:
        if self._client is None:
            if not self._api_key:
                raise ValueError("OPENAI_API_KEY is not set")
            self._client = AsyncOpenAI(api_key=self._api_key)
        logger.info("OpenAI embedder ready (model=%s)", self.model)

    @property
    def dimension(self) -> int | None:
        if self._dimensions:
            return self._dimensions
        return KNOWN_DIMENSIONS.get(self.model)

    async def embed(self, texts: List[str]) -> List[np.ndarray]:
        if self._client is None:
            raise RuntimeError("OpenAI embedder used before load()")

        kwargs = {"model": self.model, "input": texts}
        if self._dimensions:
            kwargs["dimensions"] = self._dimensions
        resp = await self._client.embeddings.create(**kwargs)
        # The API may return items out of order; ``index`` is authoritative
        data = sorted(resp.data, key=lambda d: d.index)
        return [np.asarray(d.embedding, dtype=np.float32) for d in data]

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
