import os

from .loader import section


class Memory:
    def __init__(self, config: dict | None = None) -> None:
        mem_cfg = section(config, "memory")
        self.SESSION_LIMIT: int = int(mem_cfg.get("session_limit", os.getenv("MEMORY_SESSION_LIMIT", "5")))
        self.PERSISTENT_LIMIT: int = int(mem_cfg.get("persistent_limit", os.getenv("MEMORY_PERSISTENT_LIMIT", "5")))
        self.RELEVANCE_THRESHOLD: float = float(
            mem_cfg.get("relevance_threshold", os.getenv("MEMORY_RELEVANCE_THRESHOLD", "0.75"))
        )
        self.DEDUP_DISTANCE: float = float(mem_cfg.get("dedup_distance", os.getenv("MEMORY_DEDUP_DISTANCE", "0.05")))
        self.RECENCY_MAX_BONUS: float = float(
            mem_cfg.get("recency_max_bonus", os.getenv("MEMORY_RECENCY_MAX_BONUS", "0.05"))
        )
        self.RECENCY_WINDOW_DAYS: int = int(
            mem_cfg.get("recency_window_days", os.getenv("MEMORY_RECENCY_WINDOW_DAYS", "365"))
        )
        self.MAX_SOURCE_IDS: int = int(mem_cfg.get("max_source_ids", os.getenv("MEMORY_MAX_SOURCE_IDS", "64")))
