"""
Public façade for associative memory
====================================

Stable async API for short-term (session) and long-term (persistent) recall.
Import from here::

    from avatar_memory.memory import build_memory, QueryOptions
"""

from .associative import AssociativeMemory, build_memory
from .embeddings import EmbeddingPipeline
from .errors import (
    AssociativeMemoryError,
    EmbeddingError,
    MemoryInitializationError,
    NotInitializedError,
    SchemaMismatchError,
    StorageError,
    TableNotFoundError,
)
from .ranker import rank_and_filter
from .registry import MemoryRegistry
from .storage import MilvusStorage
from .types import (
    MemoryQueryResultItem,
    PersistentItem,
    PersistentWriteResult,
    QueryOptions,
    RankingOptions,
    SessionItem,
)

__all__ = [
    "AssociativeMemory",
    "build_memory",
    "EmbeddingPipeline",
    "MilvusStorage",
    "MemoryRegistry",
    "rank_and_filter",
    "MemoryQueryResultItem",
    "PersistentItem",
    "PersistentWriteResult",
    "QueryOptions",
    "RankingOptions",
    "SessionItem",
    "AssociativeMemoryError",
    "EmbeddingError",
    "MemoryInitializationError",
    "NotInitializedError",
    "SchemaMismatchError",
    "StorageError",
    "TableNotFoundError",
]
