"""Async storage engine over Milvus collections.

Every blocking ``pymilvus`` call runs in a worker thread via
:func:`asyncio.to_thread`. Opened collections are cached per engine and the
cache is guarded by a :class:`threading.Lock` so concurrent coroutines never
create the same table twice.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import numpy as np
from pymilvus import Collection, DataType, connections, utility

from ..errors import (
    AssociativeMemoryError,
    NotInitializedError,
    SchemaMismatchError,
    StorageError,
    TableNotFoundError,
)
from .schema import (
    PERSISTENT_TABLE_NAME,
    PRIMARY_KEY,
    SESSION_TABLE_PREFIX,
    VECTOR_FIELD,
    SchemaDescriptor,
    persistent_schema,
    session_schema,
    session_table_name,
)
import logging

logger = logging.getLogger(__name__)

_REMOTE_SCHEMES = ("http://", "https://", "tcp://", "grpc://")


@dataclass(slots=True)
class TableHandle:
    name: str
    schema: SchemaDescriptor
    collection: Any


TableRef = Union[TableHandle, str]


def _normalize(v, dim: int) -> list[float]:
    """Return a length-normalized embedding as a writable list."""

    v = np.array(v, dtype=np.float32, copy=True).reshape(-1)
    if v.shape[0] != dim:
        raise SchemaMismatchError(f"Expected embedding of dim {dim}, got {v.shape[0]}")
    np.nan_to_num(v, copy=False)
    n = float(np.linalg.norm(v))
    if n > 0:
        v /= n
    return v.tolist()


def _incompatibility(collection, schema: SchemaDescriptor) -> str | None:
    """Describe why ``collection`` cannot hold rows of ``schema`` (``None`` if it can)."""

    fields = list(collection.schema.fields)
    vector = next((f for f in fields if f.name == VECTOR_FIELD), None)
    if vector is None or vector.dtype != DataType.FLOAT_VECTOR:
        return "no float vector field"
    dim = int((vector.params or {}).get("dim", 0))
    if dim != schema.dimension:
        return f"dimension mismatch (expected {schema.dimension}, actual {dim})"
    if len(fields) != schema.field_count:
        return f"field count differs (expected {schema.field_count}, actual {len(fields)})"
    return None


class MilvusStorage:
    """
    Owns the connection and every memory table.

    :param uri: Milvus server URL or a local Milvus Lite database file.
    :param token: Optional ``user:password`` or API token.
    :param settings: Milvus settings object; defaults to ``config.milvus``.
    :param max_source_ids: Capacity of the persistent ``source_ids`` array.
    """

    def __init__(
        self,
        uri: str | None = None,
        *,
        token: str | None = None,
        settings=None,
        max_source_ids: int = 64,
        alias: str | None = None,
    ) -> None:
        if settings is None:
            from avatar_memory.config import milvus as settings

        self._settings = settings
        self._uri = uri or settings.MILVUS_URI
        self._token = token if token is not None else settings.MILVUS_TOKEN
        self._alias = alias or f"avatar_memory_{uuid.uuid4().hex[:8]}"
        self._max_source_ids = max_source_ids
        self._session_schema: SchemaDescriptor | None = None
        self._persistent_schema: SchemaDescriptor | None = None
        self._tables: Dict[str, TableHandle] = {}
        self._lock = threading.Lock()
        self._init_lock = asyncio.Lock()
        self._ready = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def uri(self) -> str:
        return self._uri

    @property
    def dimension(self) -> int | None:
        return self._persistent_schema.dimension if self._persistent_schema else None

    def is_ready(self) -> bool:
        return self._ready

    async def initialize(self, dimension: int) -> None:
        """Connect and make sure the persistent table matches ``dimension``.

        A second call is a no-op. Connection failures raise :class:`StorageError`
        and leave the engine uninitialized.
        """

        if dimension <= 0:
            raise ValueError(f"Invalid vector dimension: {dimension}")

        async with self._init_lock:
            if self._ready:
                logger.info("Storage already initialized (uri=%s)", self._uri)
                return
            try:
                await asyncio.to_thread(self._initialize_sync, dimension)
            except Exception as exc:
                self._reset()
                logger.error("Storage initialization failed: %s", exc)
                raise StorageError(f"Storage initialization failed: {exc}") from exc
            self._ready = True
            logger.info("Storage ready (uri=%s, dim=%d)", self._uri, dimension)

    def _initialize_sync(self, dimension: int) -> None:
        if not self._uri.startswith(_REMOTE_SCHEMES):
            Path(self._uri).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)

        connections.connect(alias=self._alias, uri=self._uri, token=self._token or "")
        try:
            self._session_schema = session_schema(dimension)
            self._persistent_schema = persistent_schema(
                dimension, max_source_ids=self._max_source_ids
            )
            self._open_sync(PERSISTENT_TABLE_NAME, self._persistent_schema, create=True)
        except Exception:
            connections.disconnect(self._alias)
            raise

    def _reset(self) -> None:
        with self._lock:
            self._tables.clear()
        self._session_schema = None
        self._persistent_schema = None
        self._ready = False

    async def dispose(self) -> None:
        if not self._ready:
            return

        def _run() -> None:
            connections.disconnect(self._alias)

        try:
            await asyncio.to_thread(_run)
        finally:
            self._reset()
            logger.info("Storage disposed (uri=%s)", self._uri)

    async def _offload(self, action: str, func, *args, **kwargs):
        """Run a blocking pymilvus call in a worker thread.

        Driver failures surface as :class:`StorageError`; errors already in
        the memory hierarchy (missing table, width mismatch) pass through.
        """
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except AssociativeMemoryError:
            raise
        except Exception as exc:
            logger.error("Storage %s failed: %s", action, exc)
            raise StorageError(f"Storage {action} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def session_table_name(self, session_id: str) -> str:
        return session_table_name(session_id)

    def _require_ready(self) -> None:
        if not self._ready:
            raise NotInitializedError("Storage not initialized. Call initialize() first.")

    def _schema_for(self, name: str) -> SchemaDescriptor:
        if name == PERSISTENT_TABLE_NAME:
            return self._persistent_schema
        if name.startswith(SESSION_TABLE_PREFIX):
            return self._session_schema
        raise TableNotFoundError(name)

    def _index_params(self) -> dict:
        index_type = self._settings.MILVUS_INDEX_TYPE
        params = {"nlist": self._settings.MILVUS_NLIST} if index_type.startswith("IVF") else {}
        return {"index_type": index_type, "metric_type": "L2", "params": params}

    def _create(self, name: str, schema: SchemaDescriptor):
        collection = Collection(name, schema=schema.to_milvus(), using=self._alias)
        collection.create_index(VECTOR_FIELD, self._index_params())
        logger.info("Table %s created (dim=%d)", name, schema.dimension)
        return collection

    def _open_sync(self, name: str, schema: SchemaDescriptor, *, create: bool) -> TableHandle:
        """Open ``name``, creating it or replacing an incompatible generation."""

        with self._lock:
            handle = self._tables.get(name)
            if handle is not None:
                return handle

            if not utility.has_collection(name, using=self._alias):
                if not create:
                    raise TableNotFoundError(name)
                logger.info("Table %s does not exist. Creating...", name)
                collection = self._create(name, schema)
            else:
                collection = Collection(name, using=self._alias)
                problem = _incompatibility(collection, schema)
                if problem:
                    # No column migration: the old generation is discarded
                    logger.warning(
                        "Dropping and recreating table %s: %s (schema v%d)",
                        name,
                        problem,
                        schema.version,
                    )
                    utility.drop_collection(name, using=self._alias)
                    collection = self._create(name, schema)
                elif not collection.has_index():
                    collection.create_index(VECTOR_FIELD, self._index_params())

            collection.load()
            handle = TableHandle(name=name, schema=schema, collection=collection)
            self._tables[name] = handle
            return handle

    async def ensure_table(self, name: str, schema: SchemaDescriptor) -> TableHandle:
        self._require_ready()
        return await self._offload(f"open {name}", self._open_sync, name, schema, create=True)

    async def ensure_session_table(self, session_id: str) -> TableHandle:
        """Return the session's table, creating it on first use."""
        self._require_ready()
        return await self.ensure_table(self.session_table_name(session_id), self._session_schema)

    async def open_table(self, table: TableRef) -> TableHandle:
        """Open an existing table; raises :class:`TableNotFoundError` when absent."""
        self._require_ready()
        if isinstance(table, TableHandle):
            return table
        return await self._offload(
            f"open {table}", self._open_sync, table, self._schema_for(table), create=False
        )

    async def drop_table(self, name: str) -> bool:
        """Drop ``name``. Returns ``False`` when there was nothing to drop."""
        self._require_ready()

        def _run() -> bool:
            with self._lock:
                self._tables.pop(name, None)
                if not utility.has_collection(name, using=self._alias):
                    return False
                utility.drop_collection(name, using=self._alias)
                return True

        dropped = await self._offload(f"drop {name}", _run)
        if dropped:
            logger.info("Dropped table %s", name)
        else:
            logger.info("Table %s did not exist, nothing to drop", name)
        return dropped

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    async def insert(self, table: TableRef, rows: Iterable[Mapping[str, Any]]) -> int:
        """Insert ``rows`` in one bulk call and return how many were written.

        Each row carries a ``vector`` plus the table's scalar columns; ``id``
        is generated when missing.
        """

        handle = await self.open_table(table)
        dim = handle.schema.dimension
        prepared: List[dict] = []
        for row in rows:
            record = dict(row)
            record[VECTOR_FIELD] = _normalize(record[VECTOR_FIELD], dim)
            record.setdefault(PRIMARY_KEY, uuid.uuid4().hex)
            prepared.append(record)
        if not prepared:
            return 0

        await self._offload(f"insert into {handle.name}", handle.collection.insert, prepared)
        logger.debug("Inserted %d rows into %s", len(prepared), handle.name)
        return len(prepared)

    async def search(
        self,
        table: TableRef,
        query_vector,
        limit: int,
        where: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Nearest neighbours of ``query_vector`` by ascending L2 distance.

        :returns: Row dicts with ``id``, ``_distance`` and every scalar column.
        """

        handle = await self.open_table(table)
        vec = _normalize(query_vector, handle.schema.dimension)
        output_fields = handle.schema.output_fields

        def _run() -> List[Dict[str, Any]]:
            res = handle.collection.search(
                data=[vec],
                anns_field=VECTOR_FIELD,
                param={"metric_type": "L2", "params": {"nprobe": self._settings.MILVUS_NPROBE}},
                limit=limit,
                expr=where or None,
                output_fields=output_fields,
                consistency_level="Strong",
            )
            hits = res[0] if res else []
            rows = []
            for hit in hits:
                row = {name: hit.entity.get(name) for name in output_fields}
                row[PRIMARY_KEY] = hit.id
                row["_distance"] = float(hit.distance)
                rows.append(row)
            return rows

        rows = await self._offload(f"search {handle.name}", _run)
        rows.sort(key=lambda r: r["_distance"])
        return rows

    async def query(
        self,
        table: TableRef,
        where: str = "",
        output_fields: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Return every row matching ``where``, paging through the table."""

        handle = await self.open_table(table)
        fields = output_fields or [PRIMARY_KEY, *handle.schema.output_fields]
        chunk = max(1, self._settings.MILVUS_QUERY_CHUNK)

        def _run() -> List[Dict[str, Any]]:
            offset = 0
            rows: List[Dict[str, Any]] = []
            while True:
                page = handle.collection.query(
                    expr=where,
                    output_fields=fields,
                    limit=chunk,
                    offset=offset,
                    consistency_level="Strong",
                )
                if not page:
                    break
                rows.extend(dict(r) for r in page)
                if len(page) < chunk:
                    break
                offset += chunk
            return rows

        return await self._offload(f"query {handle.name}", _run)

    async def update(self, table: TableRef, values: Mapping[str, Any], where: str) -> int:
        """Set scalar ``values`` on every row matching ``where``.

        Milvus has no in-place update, so matching rows are read back in full
        and upserted by primary key. Returns the number of rows rewritten.
        """

        handle = await self.open_table(table)
        if VECTOR_FIELD in values or PRIMARY_KEY in values:
            raise ValueError("update() only sets scalar columns")
        fields = [PRIMARY_KEY, VECTOR_FIELD, *handle.schema.output_fields]

        def _run() -> int:
            rows = handle.collection.query(
                expr=where, output_fields=fields, consistency_level="Strong"
            )
            if not rows:
                return 0
            updated = []
            for row in rows:
                record = {name: row[name] for name in fields}
                record[VECTOR_FIELD] = [float(x) for x in record[VECTOR_FIELD]]
                record.update(values)
                updated.append(record)
            handle.collection.upsert(updated)
            return len(updated)

        return await self._offload(f"update {handle.name}", _run)


__all__ = ["MilvusStorage", "TableHandle"]
