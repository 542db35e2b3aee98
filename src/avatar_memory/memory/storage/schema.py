"""
Versioned table layouts for the two memory tiers.

A :class:`SchemaDescriptor` names the semantic type of every column; it is
turned into a Milvus :class:`~pymilvus.CollectionSchema` only when a table is
created. Bumping :data:`SCHEMA_VERSION` renames every table, which is the
only migration path: an old generation is simply no longer opened.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict

from pymilvus import CollectionSchema, DataType, FieldSchema

SCHEMA_VERSION = 1

PERSISTENT_TABLE_NAME_BASE = "persistent_memory"
SESSION_TABLE_PREFIX = "session_"
PERSISTENT_TABLE_NAME = f"{PERSISTENT_TABLE_NAME_BASE}_v{SCHEMA_VERSION}"

PRIMARY_KEY = "id"
VECTOR_FIELD = "vector"

_ID_MAX_LENGTH = 64
_TEXT_MAX_LENGTH = 65535
_SOURCE_MAX_LENGTH = 1024

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_]")
MAX_SESSION_ID_LENGTH = 200
_DIGEST_LENGTH = 12


class FieldKind(str, Enum):
    VECTOR = "vector"
    TEXT = "text"
    STRING = "string"
    STRING_LIST = "string_list"
    TIMESTAMP = "timestamp"


@dataclass(frozen=True)
class SchemaDescriptor:
    """Named, versioned column layout (primary key excluded)."""

    name: str
    dimension: int
    fields: Dict[str, FieldKind] = field(default_factory=dict)
    version: int = SCHEMA_VERSION
    max_source_ids: int = 64

    @property
    def field_count(self) -> int:
        """Columns in the physical table, primary key included."""
        return len(self.fields) + 1

    @property
    def output_fields(self) -> list[str]:
        return [name for name, kind in self.fields.items() if kind is not FieldKind.VECTOR]

    def to_milvus(self) -> CollectionSchema:
        columns = [
            FieldSchema(
                name=PRIMARY_KEY,
                dtype=DataType.VARCHAR,
                is_primary=True,
                auto_id=False,
                max_length=_ID_MAX_LENGTH,
            )
        ]
        for name, kind in self.fields.items():
            columns.append(self._column(name, kind))
        return CollectionSchema(
            columns, description=f"{self.name} memory (schema v{self.version})"
        )

    def _column(self, name: str, kind: FieldKind) -> FieldSchema:
        if kind is FieldKind.VECTOR:
            return FieldSchema(name=name, dtype=DataType.FLOAT_VECTOR, dim=self.dimension)
        if kind is FieldKind.TEXT:
            return FieldSchema(name=name, dtype=DataType.VARCHAR, max_length=_TEXT_MAX_LENGTH)
        if kind is FieldKind.STRING:
            return FieldSchema(name=name, dtype=DataType.VARCHAR, max_length=_SOURCE_MAX_LENGTH)
        if kind is FieldKind.STRING_LIST:
            return FieldSchema(
                name=name,
                dtype=DataType.ARRAY,
                element_type=DataType.VARCHAR,
                max_capacity=self.max_source_ids,
                max_length=_SOURCE_MAX_LENGTH,
            )
        return FieldSchema(name=name, dtype=DataType.INT64)


def session_schema(dimension: int) -> SchemaDescriptor:
    return SchemaDescriptor(
        name="session",
        dimension=dimension,
        fields={
            VECTOR_FIELD: FieldKind.VECTOR,
            "text": FieldKind.TEXT,
            "source": FieldKind.STRING,
            "timestamp": FieldKind.TIMESTAMP,
        },
    )


def persistent_schema(dimension: int, *, max_source_ids: int = 64) -> SchemaDescriptor:
    return SchemaDescriptor(
        name="persistent",
        dimension=dimension,
        fields={
            VECTOR_FIELD: FieldKind.VECTOR,
            "text": FieldKind.TEXT,
            "source_ids": FieldKind.STRING_LIST,
            "timestamp": FieldKind.TIMESTAMP,
            "last_accessed": FieldKind.TIMESTAMP,
        },
        max_source_ids=max_source_ids,
    )


def session_table_name(session_id: str) -> str:
    """
    ``session_<id>_v<version>`` with every unsafe character replaced by ``_``.

    Ids longer than :data:`MAX_SESSION_ID_LENGTH` are cut and suffixed with a
    digest of the full id, keeping the name under Milvus's 255-byte limit.
    """
    safe = _UNSAFE_CHARS.sub("_", session_id)
    if len(safe) > MAX_SESSION_ID_LENGTH:
        digest = hashlib.sha1(session_id.encode("utf-8")).hexdigest()[:_DIGEST_LENGTH]
        safe = f"{safe[: MAX_SESSION_ID_LENGTH - _DIGEST_LENGTH - 1]}_{digest}"
    return f"{SESSION_TABLE_PREFIX}{safe}_v{SCHEMA_VERSION}"


__all__ = [
    "SCHEMA_VERSION",
    "PERSISTENT_TABLE_NAME",
    "PERSISTENT_TABLE_NAME_BASE",
    "SESSION_TABLE_PREFIX",
    "PRIMARY_KEY",
    "VECTOR_FIELD",
    "FieldKind",
    "SchemaDescriptor",
    "session_schema",
    "persistent_schema",
    "session_table_name",
    "MAX_SESSION_ID_LENGTH",
]
