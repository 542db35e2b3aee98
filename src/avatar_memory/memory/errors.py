"""Exceptions raised by the memory subsystem."""

from __future__ import annotations


class AssociativeMemoryError(RuntimeError):
    """Base class for memory subsystem failures."""


class NotInitializedError(AssociativeMemoryError):
    """Raised when an operation runs before ``initialize`` completed."""


class MemoryInitializationError(AssociativeMemoryError):
    """Raised when the embedding model or the store could not be brought up."""


class EmbeddingError(AssociativeMemoryError):
    """Raised when the embedding model is unavailable or fails."""


class StorageError(AssociativeMemoryError):
    """Raised when the vector store cannot be reached or written."""


class TableNotFoundError(StorageError):
    """Raised when a named table does not exist in the store."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Table {name!r} not found")
        self.name = name


class SchemaMismatchError(StorageError, ValueError):
    """Raised when a vector does not match the width of its table."""


__all__ = [
    "AssociativeMemoryError",
    "NotInitializedError",
    "MemoryInitializationError",
    "EmbeddingError",
    "StorageError",
    "TableNotFoundError",
    "SchemaMismatchError",
]
