"""
Associative memory
==================

The public contract consumed by the conversational layer. Composes the
embedding pipeline, the storage engine, the write path, the read path and the
ranker. Build instances with :func:`build_memory` (or pass collaborators
explicitly); nothing here is a process-wide singleton.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Iterable, List, Optional

import numpy as np

from .embeddings import EmbeddingPipeline, build_backend
from .errors import MemoryInitializationError, NotInitializedError, TableNotFoundError
from .reader import MemoryReader
from .storage import MilvusStorage
from .types import MemoryQueryResultItem, PersistentItem, PersistentWriteResult, QueryOptions
from .writer import MemoryWriter, PersistentLike, SessionLike
import logging

logger = logging.getLogger(__name__)


class AssociativeMemory:
    """Two-tier (session + persistent) semantic memory."""

    def __init__(
        self,
        embeddings: EmbeddingPipeline,
        storage: MilvusStorage,
        *,
        settings=None,
    ) -> None:
        if settings is None:
            from avatar_memory.config import memory as settings

        self._settings = settings
        self._embeddings = embeddings
        self._storage = storage
        self._writer = MemoryWriter(
            storage,
            embeddings,
            dedup_distance=settings.DEDUP_DISTANCE,
            max_source_ids=settings.MAX_SOURCE_IDS,
        )
        self._reader = MemoryReader(
            storage,
            embeddings,
            relevance_threshold=settings.RELEVANCE_THRESHOLD,
            recency_max_bonus=settings.RECENCY_MAX_BONUS,
            recency_window=timedelta(days=settings.RECENCY_WINDOW_DAYS),
        )
        self._init_lock = asyncio.Lock()
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def is_ready(self) -> bool:
        return self._initialized and self._embeddings.is_ready() and self._storage.is_ready()

    async def initialize(self, session_id: str) -> None:
        """Load the model, open the store and ensure ``session_id`` has a table.

        Calling again only ensures the (possibly new) session table.
        """

        async with self._init_lock:
            if self._initialized:
                logger.info("AssociativeMemory already initialized")
                await self._storage.ensure_session_table(session_id)
                return

            try:
                dimension = await self._embeddings.initialize()
                await self._storage.initialize(dimension)
                await self._storage.ensure_session_table(session_id)
            except Exception as exc:
                self._initialized = False
                logger.error("AssociativeMemory initialization failed: %s", exc)
                raise MemoryInitializationError(
                    f"AssociativeMemory initialization failed: {exc}"
                ) from exc

            self._initialized = True
            logger.info("AssociativeMemory initialized (dim=%d)", dimension)

    def _check_initialized(self) -> None:
        if not self.is_ready():
            raise NotInitializedError("AssociativeMemory is not initialized. Call initialize() first.")

    async def dispose(self) -> None:
        await self._reader.drain()
        await self._storage.dispose()
        await self._embeddings.dispose()
        self._initialized = False
        logger.info("AssociativeMemory disposed")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add_session_items(self, session_id: str, items: Iterable[SessionLike]) -> None:
        self._check_initialized()
        await self._writer.add_session_items(session_id, items)

    async def add_persistent_items(self, items: Iterable[PersistentLike]) -> PersistentWriteResult:
        self._check_initialized()
        return await self._writer.add_persistent_items(items)

    async def commit_session_to_persistent(self, session_id: str) -> PersistentWriteResult:
        """Copy a session's facts into persistent memory, deduplicating as usual."""

        self._check_initialized()
        name = self._storage.session_table_name(session_id)
        try:
            rows = await self._storage.query(name, output_fields=["id", "text", "source", "timestamp"])
        except TableNotFoundError:
            logger.info("Session table %s not found; nothing to commit", name)
            return PersistentWriteResult()

        rows.sort(key=lambda r: r.get("timestamp") or 0)
        items = [PersistentItem(text=r["text"], source_ids=[r["source"]]) for r in rows]
        logger.info("Committing %d session items from %s to persistent memory", len(items), name)
        return await self._writer.add_persistent_items(items)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def query_memories(
        self,
        text: str,
        session_id: str,
        options: Optional[QueryOptions] = None,
    ) -> List[MemoryQueryResultItem]:
        self._check_initialized()
        if options is None:
            options = QueryOptions(
                session_limit=self._settings.SESSION_LIMIT,
                persistent_limit=self._settings.PERSISTENT_LIMIT,
            )
        return await self._reader.query_memories(text, session_id, options)

    async def clear_session_memory(self, session_id: str) -> None:
        self._check_initialized()
        await self._storage.drop_table(self._storage.session_table_name(session_id))

    # ------------------------------------------------------------------
    # Embedding passthroughs
    # ------------------------------------------------------------------

    @property
    def vector_dimension(self) -> int:
        return self._embeddings.dimension

    async def embed_texts(self, texts: List[str]) -> List[np.ndarray]:
        return await self._embeddings.embed_texts(texts)

    async def embed_text(self, text: str) -> np.ndarray:
        return await self._embeddings.embed_text(text)


def build_memory(
    *,
    embeddings: EmbeddingPipeline | None = None,
    storage: MilvusStorage | None = None,
    settings=None,
) -> AssociativeMemory:
    """Create an :class:`AssociativeMemory`, filling unspecified collaborators from config."""

    from avatar_memory import config

    settings = settings or config.memory
    if embeddings is None:
        embeddings = EmbeddingPipeline(
            build_backend(config.embeddings),
            default_dimension=config.embeddings.EMB_DEFAULT_DIM,
        )
    if storage is None:
        storage = MilvusStorage(settings=config.milvus, max_source_ids=settings.MAX_SOURCE_IDS)
    return AssociativeMemory(embeddings, storage, settings=settings)


__all__ = ["AssociativeMemory", "build_memory"]
