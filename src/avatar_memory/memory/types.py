"""Data types shared by the read path, the write path and the ranker."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import List, Literal, Optional, Union

MemoryTier = Literal["session", "persistent"]
MemoryFilterType = Literal["all", "session", "persistent"]

FILTER_TYPES = ("all", "session", "persistent")


@dataclass(slots=True)
class SessionItem:
    """A fact to remember for the lifetime of one conversation."""

    text: str
    source: str


@dataclass(slots=True)
class PersistentItem:
    """A durable fact, corroborated by one or more sources."""

    text: str
    source_ids: List[str]


@dataclass(slots=True)
class MemoryQueryResultItem:
    """Read-only projection of a stored row used for ranking and responses.

    ``score`` is a distance: lower means more similar.
    """

    text: str
    source: Union[str, List[str]]
    score: float
    tier: MemoryTier
    last_accessed: Optional[datetime] = None


@dataclass(slots=True)
class RankingOptions:
    relevance_threshold: Optional[float] = None
    deduplicate_by_text: bool = False


@dataclass(slots=True)
class QueryOptions:
    """Per-query limits and scalar filters.

    Date bounds are inclusive calendar dates (``YYYY-MM-DD`` strings or
    :class:`datetime.date`); the end bound covers the whole day.
    """

    session_limit: int = 5
    persistent_limit: int = 5
    filter_type: MemoryFilterType = "all"
    filter_date_start: Union[str, date, None] = None
    filter_date_end: Union[str, date, None] = None


@dataclass(slots=True)
class PersistentWriteResult:
    added: int = 0
    skipped: int = 0


def now_ms() -> int:
    """Current UTC time as epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def from_ms(value: int | float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)


__all__ = [
    "MemoryTier",
    "MemoryFilterType",
    "FILTER_TYPES",
    "SessionItem",
    "PersistentItem",
    "MemoryQueryResultItem",
    "RankingOptions",
    "QueryOptions",
    "PersistentWriteResult",
    "now_ms",
    "from_ms",
]
