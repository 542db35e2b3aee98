"""Write path: session ingestion and deduplicating persistent ingestion."""

from __future__ import annotations

import asyncio
from typing import Iterable, List, Mapping, Union

from .embeddings import EmbeddingPipeline
from .errors import EmbeddingError, SchemaMismatchError
from .storage import PERSISTENT_TABLE_NAME, MilvusStorage
from .types import PersistentItem, PersistentWriteResult, SessionItem, now_ms
import logging

logger = logging.getLogger(__name__)

DEDUP_DISTANCE = 0.05

SessionLike = Union[SessionItem, Mapping[str, str]]
PersistentLike = Union[PersistentItem, Mapping[str, object]]


def _preview(text: str, n: int = 50) -> str:
    return text if len(text) <= n else f"{text[:n]}..."


def as_session_item(item: SessionLike) -> SessionItem:
    if isinstance(item, SessionItem):
        return item
    return SessionItem(text=str(item["text"]), source=str(item["source"]))


def as_persistent_item(item: PersistentLike) -> PersistentItem:
    if isinstance(item, PersistentItem):
        return item
    raw = item.get("source_ids", item.get("sourceIds", []))
    source_ids = [raw] if isinstance(raw, str) else [str(s) for s in raw]
    return PersistentItem(text=str(item["text"]), source_ids=source_ids)


class MemoryWriter:
    """
    Ingest facts into the session and persistent tiers.

    :param dedup_distance: A candidate whose nearest persistent neighbour is at
        or below this distance is treated as a near-duplicate and skipped.
    """

    def __init__(
        self,
        storage: MilvusStorage,
        embeddings: EmbeddingPipeline,
        *,
        dedup_distance: float = DEDUP_DISTANCE,
        max_source_ids: int = 64,
    ) -> None:
        self._storage = storage
        self._embeddings = embeddings
        self._dedup_distance = dedup_distance
        self._max_source_ids = max_source_ids
        self._persistent_lock = asyncio.Lock()

    async def add_session_items(self, session_id: str, items: Iterable[SessionLike]) -> int:
        """Embed ``items`` in one batch and bulk-insert them into the session table."""

        batch = [as_session_item(i) for i in items]
        if not batch:
            return 0

        vectors = await self._embeddings.embed_texts([i.text for i in batch])
        ts = now_ms()
        rows = [
            {"vector": vec, "text": item.text, "source": item.source, "timestamp": ts}
            for item, vec in zip(batch, vectors)
        ]

        table = await self._storage.ensure_session_table(session_id)
        count = await self._storage.insert(table, rows)
        logger.info("Added %d items to %s", count, table.name)
        return count

    async def add_persistent_items(self, items: Iterable[PersistentLike]) -> PersistentWriteResult:
        """
        Insert items one at a time, skipping near-duplicates.

        Each item is checked against the table as it stands after the previous
        item was written, so two similar facts in one call cannot both land.
        """

        batch = [as_persistent_item(i) for i in items]
        result = PersistentWriteResult()
        if not batch:
            return result

        logger.info("Adding %d items to persistent memory with duplicate checking", len(batch))
        async with self._persistent_lock:
            table = await self._storage.open_table(PERSISTENT_TABLE_NAME)
            for item in batch:
                if await self._add_persistent_item(table, item):
                    result.added += 1
                else:
                    result.skipped += 1

        logger.info(
            "Persistent memory update complete. Added: %d, Skipped (duplicates/errors): %d",
            result.added,
            result.skipped,
        )
        return result

    async def _add_persistent_item(self, table, item: PersistentItem) -> bool:
        try:
            vector = await self._embeddings.embed_text(item.text)
        except EmbeddingError as exc:
            logger.warning("Could not embed %r, skipping: %s", _preview(item.text), exc)
            return False

        try:
            nearest = await self._storage.search(table, vector, limit=1)
        except SchemaMismatchError as exc:
            logger.warning("Vector for %r does not fit the table, skipping: %s", _preview(item.text), exc)
            return False
        if nearest and nearest[0]["_distance"] <= self._dedup_distance:
            logger.info(
                "Skipping %r (distance %.4f): too similar to existing %r",
                _preview(item.text, 30),
                nearest[0]["_distance"],
                _preview(str(nearest[0].get("text", "")), 30),
            )
            return False

        source_ids = item.source_ids
        if len(source_ids) > self._max_source_ids:
            logger.warning(
                "Truncating %d source ids to %d for %r",
                len(source_ids),
                self._max_source_ids,
                _preview(item.text, 30),
            )
            source_ids = source_ids[: self._max_source_ids]

        ts = now_ms()
        row = {
            "vector": vector,
            "text": item.text,
            "source_ids": list(source_ids),
            "timestamp": ts,
            "last_accessed": ts,
        }
        try:
            await self._storage.insert(table, [row])
        except Exception as exc:
            logger.error("Error adding %r to persistent memory: %s", _preview(item.text), exc)
            return False
        logger.info("Added to persistent memory: %r", _preview(item.text))
        return True


__all__ = ["MemoryWriter", "DEDUP_DISTANCE", "as_session_item", "as_persistent_item"]
