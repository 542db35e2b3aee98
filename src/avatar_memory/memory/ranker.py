"""
Ranking for merged memory results.

:func:`rank_and_filter` is pure: it never mutates its input and takes the
current time as an argument so callers (and tests) control recency.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Iterable, List

from .types import MemoryQueryResultItem, RankingOptions
import logging

logger = logging.getLogger(__name__)

RECENCY_WINDOW = timedelta(days=365)
RECENCY_MAX_BONUS = 0.05


def recency_bonus(
    last_accessed: datetime,
    now: datetime,
    *,
    window: timedelta = RECENCY_WINDOW,
    max_bonus: float = RECENCY_MAX_BONUS,
) -> float:
    """Linear bonus: ``max_bonus`` for an item touched just now, 0 past ``window``."""
    age = max(timedelta(0), now - last_accessed)
    if age >= window:
        return 0.0
    return max_bonus * (1.0 - age / window)


def rank_and_filter(
    results: Iterable[MemoryQueryResultItem],
    options: RankingOptions | None = None,
    *,
    now: datetime | None = None,
    window: timedelta = RECENCY_WINDOW,
    max_bonus: float = RECENCY_MAX_BONUS,
) -> List[MemoryQueryResultItem]:
    """
    Filter, re-rank and deduplicate ``results`` (best first).

    1. Drop items whose distance exceeds ``relevance_threshold``.
    2. Lower the distance of recently accessed persistent items.
    3. Re-sort by the adjusted distance.
    4. Keep the first occurrence of each text when ``deduplicate_by_text``.
    """

    options = options or RankingOptions()
    now = now or datetime.now(timezone.utc)
    ranked = list(results)

    if options.relevance_threshold is not None:
        ranked = [r for r in ranked if r.score <= options.relevance_threshold]
        logger.debug(
            "Filtered by relevance threshold %.3f, %d results remaining",
            options.relevance_threshold,
            len(ranked),
        )

    adjusted: List[MemoryQueryResultItem] = []
    for item in ranked:
        if item.tier == "persistent" and item.last_accessed is not None:
            bonus = recency_bonus(item.last_accessed, now, window=window, max_bonus=max_bonus)
            if bonus > 0:
                item = replace(item, score=item.score - bonus)
        adjusted.append(item)

    # Stable, so equal scores keep their incoming order
    adjusted.sort(key=lambda r: r.score)

    if options.deduplicate_by_text:
        seen: set[str] = set()
        unique: List[MemoryQueryResultItem] = []
        for item in adjusted:
            if item.text in seen:
                continue
            seen.add(item.text)
            unique.append(item)
        adjusted = unique
        logger.debug("Deduplicated by text, %d results remaining", len(adjusted))

    return adjusted


__all__ = ["rank_and_filter", "recency_bonus", "RECENCY_WINDOW", "RECENCY_MAX_BONUS"]
