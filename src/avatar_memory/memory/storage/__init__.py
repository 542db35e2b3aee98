"""Storage layer for memory tables.

Two kinds of Milvus collections live here: one durable persistent table and
one ephemeral table per conversation session, both named after the current
schema version.
"""

from .engine import MilvusStorage, TableHandle
from .schema import (
    PERSISTENT_TABLE_NAME,
    SCHEMA_VERSION,
    SchemaDescriptor,
    persistent_schema,
    session_schema,
    session_table_name,
)

__all__ = [
    "MilvusStorage",
    "TableHandle",
    "PERSISTENT_TABLE_NAME",
    "SCHEMA_VERSION",
    "SchemaDescriptor",
    "persistent_schema",
    "session_schema",
    "session_table_name",
]
