"""Read path: dual-tier similarity search, normalization and ranking."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional, Set

from .embeddings import EmbeddingPipeline
from .errors import EmbeddingError, TableNotFoundError
from .ranker import RECENCY_MAX_BONUS, RECENCY_WINDOW, rank_and_filter
from .storage import PERSISTENT_TABLE_NAME, MilvusStorage
from .types import (
    FILTER_TYPES,
    MemoryQueryResultItem,
    QueryOptions,
    RankingOptions,
    from_ms,
    now_ms,
)
import logging

logger = logging.getLogger(__name__)

RELEVANCE_THRESHOLD = 0.75


def _to_date(value) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        logger.error("Invalid date filter %r; ignoring bound", value)
        return None


def _epoch_ms(d: date, t: time) -> int:
    return int(datetime.combine(d, t, tzinfo=timezone.utc).timestamp() * 1000)


def build_date_filter(start=None, end=None) -> str:
    """
    Return a ``timestamp`` filter expression for inclusive calendar dates.

    The end bound runs to 23:59:59.999 UTC of its day. Unparseable bounds are
    logged and dropped; an empty string means "no filter".
    """
    clauses: List[str] = []
    start_date = _to_date(start)
    end_date = _to_date(end)
    if start_date is not None:
        clauses.append(f"timestamp >= {_epoch_ms(start_date, time.min)}")
    if end_date is not None:
        clauses.append(f"timestamp <= {_epoch_ms(end_date, time(23, 59, 59, 999000))}")
    return " and ".join(clauses)


def normalize_rows(
    session_rows: List[Dict[str, Any]],
    persistent_rows: List[Dict[str, Any]],
) -> List[MemoryQueryResultItem]:
    """Project raw rows of both tiers into result items sorted by distance."""

    items = [
        MemoryQueryResultItem(
            text=str(r.get("text") or ""),
            source=str(r.get("source") or ""),
            score=float(r.get("_distance", float("inf"))),
            tier="session",
        )
        for r in session_rows
    ]
    items.extend(
        MemoryQueryResultItem(
            text=str(r.get("text") or ""),
            source=[str(s) for s in (r.get("source_ids") or [])],
            score=float(r.get("_distance", float("inf"))),
            tier="persistent",
            last_accessed=from_ms(r.get("last_accessed")),
        )
        for r in persistent_rows
    )
    items.sort(key=lambda i: i.score)
    return items


class MemoryReader:
    """
    Query both tiers and rank the merged results.

    Last-accessed updates for persistent hits run as background tasks; they
    are tracked so :meth:`drain` can wait for them on shutdown.
    """

    def __init__(
        self,
        storage: MilvusStorage,
        embeddings: EmbeddingPipeline,
        *,
        relevance_threshold: float = RELEVANCE_THRESHOLD,
        recency_max_bonus: float = RECENCY_MAX_BONUS,
        recency_window=RECENCY_WINDOW,
    ) -> None:
        self._storage = storage
        self._embeddings = embeddings
        self._relevance_threshold = relevance_threshold
        self._recency_max_bonus = recency_max_bonus
        self._recency_window = recency_window
        self._touches: Set[asyncio.Task] = set()

    async def query_memories(
        self,
        text: str,
        session_id: str,
        options: Optional[QueryOptions] = None,
    ) -> List[MemoryQueryResultItem]:
        options = options or QueryOptions()
        if options.filter_type not in FILTER_TYPES:
            raise ValueError(f"Unknown filter_type {options.filter_type!r}")

        try:
            vector = await self._embeddings.embed_text(text)
        except EmbeddingError as exc:
            logger.warning("Failed to generate query vector: %s", exc)
            return []

        where = build_date_filter(options.filter_date_start, options.filter_date_end)

        searches = []
        want_session = options.filter_type in ("all", "session") and options.session_limit > 0
        want_persistent = options.filter_type in ("all", "persistent") and options.persistent_limit > 0
        searches.append(
            self._search_session(session_id, vector, options.session_limit, where)
            if want_session
            else _nothing()
        )
        searches.append(
            self._search_persistent(vector, options.persistent_limit, where)
            if want_persistent
            else _nothing()
        )
        session_rows, persistent_rows = await asyncio.gather(*searches)

        merged = normalize_rows(session_rows, persistent_rows)
        ranked = rank_and_filter(
            merged,
            RankingOptions(relevance_threshold=self._relevance_threshold, deduplicate_by_text=True),
            window=self._recency_window,
            max_bonus=self._recency_max_bonus,
        )
        logger.info("Returning %d results after ranking/filtering", len(ranked))
        return ranked

    async def _search_session(self, session_id: str, vector, limit: int, where: str) -> List[dict]:
        name = self._storage.session_table_name(session_id)
        try:
            rows = await self._storage.search(name, vector, limit, where)
        except TableNotFoundError:
            logger.info("Session table %s not found for query", name)
            return []
        except Exception as exc:
            logger.error("Error querying session table %s: %s", name, exc)
            return []
        logger.debug("Found %d results in session memory", len(rows))
        return rows

    async def _search_persistent(self, vector, limit: int, where: str) -> List[dict]:
        try:
            rows = await self._storage.search(PERSISTENT_TABLE_NAME, vector, limit, where)
        except Exception as exc:
            logger.error("Error querying persistent table: %s", exc)
            return []
        if rows:
            self._schedule_touch([r["id"] for r in rows if r.get("id") is not None])
        logger.debug("Found %d results in persistent memory", len(rows))
        return rows

    def _schedule_touch(self, ids: List[str]) -> None:
        if not ids:
            return
        task = asyncio.create_task(self._touch(ids))
        self._touches.add(task)
        task.add_done_callback(self._touches.discard)

    async def _touch(self, ids: List[str]) -> None:
        quoted = ", ".join(f'"{i}"' for i in ids)
        try:
            count = await self._storage.update(
                PERSISTENT_TABLE_NAME, {"last_accessed": now_ms()}, f"id in [{quoted}]"
            )
            logger.debug("Updated last_accessed for %d persistent items", count)
        except Exception as exc:
            logger.warning("Error updating last_accessed in persistent memory: %s", exc)

    async def drain(self) -> None:
        """Wait for in-flight last-accessed updates."""
        if self._touches:
            await asyncio.gather(*list(self._touches), return_exceptions=True)


async def _nothing() -> List[dict]:
    return []


__all__ = ["MemoryReader", "build_date_filter", "normalize_rows", "RELEVANCE_THRESHOLD"]
