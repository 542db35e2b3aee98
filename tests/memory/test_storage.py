import asyncio

import numpy as np
import pytest
from pymilvus import CollectionSchema, DataType, FieldSchema

from avatar_memory.memory.errors import NotInitializedError, SchemaMismatchError, StorageError, TableNotFoundError
from avatar_memory.memory.storage import PERSISTENT_TABLE_NAME, session_table_name
from avatar_memory.memory.storage.schema import persistent_schema, session_schema


@pytest.mark.parametrize("dim", [1, 4, 384, 1536])
def test_initialize_sizes_persistent_table_from_dimension(milvus_server, make_storage, dim):
    storage = make_storage()
    asyncio.run(storage.initialize(dim))

    assert storage.is_ready()
    assert milvus_server.dim_of(PERSISTENT_TABLE_NAME) == dim
    assert milvus_server.collections[PERSISTENT_TABLE_NAME].loaded


def test_new_dimension_drops_and_recreates_table(milvus_server, make_storage):
    first = make_storage()

    async def seed():
        await first.initialize(4)
        await first.insert(
            PERSISTENT_TABLE_NAME,
            [{"vector": [1, 0, 0, 0], "text": "old", "source_ids": ["a"], "timestamp": 1, "last_accessed": 1}],
        )

    asyncio.run(seed())
    assert len(milvus_server.collections[PERSISTENT_TABLE_NAME].rows) == 1

    second = make_storage()
    asyncio.run(second.initialize(8))

    assert milvus_server.dropped == [PERSISTENT_TABLE_NAME]
    assert milvus_server.dim_of(PERSISTENT_TABLE_NAME) == 8
    assert milvus_server.collections[PERSISTENT_TABLE_NAME].rows == {}


def test_compatible_table_is_reused(milvus_server, make_storage):
    asyncio.run(make_storage().initialize(4))
    existing = milvus_server.collections[PERSISTENT_TABLE_NAME]

    asyncio.run(make_storage().initialize(4))

    assert milvus_server.dropped == []
    assert milvus_server.collections[PERSISTENT_TABLE_NAME] is existing


def test_field_count_mismatch_recreates_table(milvus_server, make_storage):
    legacy = CollectionSchema(
        [
            FieldSchema(name="id", dtype=DataType.VARCHAR, is_primary=True, max_length=64),
            FieldSchema(name="vector", dtype=DataType.FLOAT_VECTOR, dim=4),
            FieldSchema(name="text", dtype=DataType.VARCHAR, max_length=256),
        ]
    )
    milvus_server.collection(PERSISTENT_TABLE_NAME, schema=legacy)

    asyncio.run(make_storage().initialize(4))

    assert milvus_server.dropped == [PERSISTENT_TABLE_NAME]
    fields = milvus_server.collections[PERSISTENT_TABLE_NAME].schema.fields
    assert len(fields) == persistent_schema(4).field_count


def test_initialize_twice_connects_once(milvus_server, make_storage):
    storage = make_storage()

    async def run():
        await storage.initialize(4)
        await storage.initialize(4)

    asyncio.run(run())
    assert len(milvus_server.connects) == 1


def test_connection_failure_raises_storage_error(milvus_server, make_storage):
    milvus_server.fail_connect = True
    storage = make_storage()
    with pytest.raises(StorageError):
        asyncio.run(storage.initialize(4))
    assert not storage.is_ready()


def test_invalid_dimension_is_rejected(make_storage):
    with pytest.raises(ValueError):
        asyncio.run(make_storage().initialize(0))


def test_operations_before_initialize_fail_fast(make_storage):
    storage = make_storage()
    with pytest.raises(NotInitializedError):
        asyncio.run(storage.ensure_session_table("abc"))
    with pytest.raises(NotInitializedError):
        asyncio.run(storage.drop_table("session_abc_v1"))


def test_session_table_name_is_sanitized_and_versioned():
    assert session_table_name("chat-42/alice bob") == "session_chat_42_alice_bob_v1"
    assert session_table_name("plain_id") == "session_plain_id_v1"


def test_long_session_ids_get_bounded_distinct_names():
    first = session_table_name("u" * 300)
    second = session_table_name("u" * 299 + "v")
    assert len(first.encode("utf-8")) <= 255
    assert first != second
    assert first == session_table_name("u" * 300)
    assert first.startswith("session_uuu") and first.endswith("_v1")


def test_session_table_created_lazily_once(milvus_server, make_storage):
    storage = make_storage()

    async def run():
        await storage.initialize(4)
        assert "session_s1_v1" not in milvus_server.collections
        first = await storage.ensure_session_table("s1")
        second = await storage.ensure_session_table("s1")
        return first, second

    first, second = asyncio.run(run())
    assert first is second
    assert first.name == "session_s1_v1"
    assert milvus_server.dim_of("session_s1_v1") == 4
    assert len(milvus_server.collections["session_s1_v1"].schema.fields) == session_schema(4).field_count


def test_insert_rejects_wrong_width(make_storage):
    storage = make_storage()

    async def run():
        await storage.initialize(4)
        table = await storage.ensure_session_table("s1")
        await storage.insert(table, [{"vector": [1.0, 0.0], "text": "x", "source": "chat", "timestamp": 1}])

    with pytest.raises(SchemaMismatchError):
        asyncio.run(run())


def test_search_orders_by_distance_and_applies_filter(milvus_server, make_storage):
    storage = make_storage()
    rows = [
        {"vector": [1, 0, 0, 0], "text": "exact", "source": "a", "timestamp": 100},
        {"vector": [1, 1, 0, 0], "text": "near", "source": "b", "timestamp": 200},
        {"vector": [0, 0, 0, 1], "text": "far", "source": "c", "timestamp": 300},
    ]

    async def run():
        await storage.initialize(4)
        table = await storage.ensure_session_table("s1")
        await storage.insert(table, rows)
        everything = await storage.search(table, np.array([2, 0, 0, 0]), limit=3)
        filtered = await storage.search(table, [1, 0, 0, 0], limit=3, where="timestamp >= 200")
        return everything, filtered

    everything, filtered = asyncio.run(run())
    assert [r["text"] for r in everything] == ["exact", "near", "far"]
    assert everything[0]["_distance"] == pytest.approx(0.0, abs=1e-6)
    assert everything[2]["_distance"] == pytest.approx(2.0, abs=1e-6)
    assert {"id", "text", "source", "timestamp"} <= set(everything[0])
    assert [r["text"] for r in filtered] == ["near", "far"]
    assert milvus_server.collections["session_s1_v1"].insert_calls == 1


def test_search_missing_table_raises(make_storage):
    storage = make_storage()

    async def run():
        await storage.initialize(4)
        await storage.search("session_ghost_v1", [1, 0, 0, 0], limit=1)

    with pytest.raises(TableNotFoundError):
        asyncio.run(run())


def test_update_rewrites_scalar_columns(milvus_server, make_storage):
    storage = make_storage()
    row = {"id": "r1", "vector": [0, 1, 0, 0], "text": "fact", "source_ids": ["s"], "timestamp": 5, "last_accessed": 5}

    async def run():
        await storage.initialize(4)
        await storage.insert(PERSISTENT_TABLE_NAME, [row, {**row, "id": "r2"}])
        return await storage.update(PERSISTENT_TABLE_NAME, {"last_accessed": 99}, 'id in ["r1"]')

    assert asyncio.run(run()) == 1
    stored = milvus_server.collections[PERSISTENT_TABLE_NAME].rows
    assert stored["r1"]["last_accessed"] == 99
    assert stored["r1"]["timestamp"] == 5
    assert stored["r2"]["last_accessed"] == 5


def test_update_refuses_vector_changes(make_storage):
    storage = make_storage()

    async def run():
        await storage.initialize(4)
        await storage.update(PERSISTENT_TABLE_NAME, {"vector": [0, 0, 0, 0]}, 'id in ["x"]')

    with pytest.raises(ValueError):
        asyncio.run(run())


def test_query_pages_through_rows(milvus_server, make_storage, milvus_settings):
    milvus_settings.MILVUS_QUERY_CHUNK = 2
    storage = make_storage()

    async def run():
        await storage.initialize(4)
        table = await storage.ensure_session_table("s1")
        await storage.insert(
            table,
            [{"vector": [1, 0, 0, i], "text": f"t{i}", "source": "x", "timestamp": i} for i in range(5)],
        )
        return await storage.query(table)

    rows = asyncio.run(run())
    assert sorted(r["text"] for r in rows) == ["t0", "t1", "t2", "t3", "t4"]


def test_drop_table_is_idempotent(milvus_server, make_storage):
    storage = make_storage()

    async def run():
        await storage.initialize(4)
        await storage.ensure_session_table("s1")
        return await storage.drop_table("session_s1_v1"), await storage.drop_table("session_s1_v1")

    assert asyncio.run(run()) == (True, False)
    assert "session_s1_v1" not in milvus_server.collections


def test_dispose_resets_state(make_storage):
    storage = make_storage()

    async def run():
        await storage.initialize(4)
        await storage.dispose()

    asyncio.run(run())
    assert not storage.is_ready()
    assert storage.dimension is None


def test_failed_table_setup_releases_connection(milvus_server, make_storage):
    milvus_server.fail_create.add(PERSISTENT_TABLE_NAME)
    storage = make_storage()
    with pytest.raises(StorageError):
        asyncio.run(storage.initialize(4))
    assert milvus_server.disconnects == ["test"]
    assert not storage.is_ready()


def test_driver_errors_surface_as_storage_error(milvus_server, make_storage, monkeypatch):
    storage = make_storage()
    milvus_server.fail_create.add("session_broken_v1")

    def broken_search(*args, **kwargs):
        raise RuntimeError("query node offline")

    async def run():
        await storage.initialize(4)
        with pytest.raises(StorageError):
            await storage.ensure_session_table("broken")
        monkeypatch.setattr(milvus_server.collections[PERSISTENT_TABLE_NAME], "search", broken_search)
        with pytest.raises(StorageError):
            await storage.search(PERSISTENT_TABLE_NAME, [1.0, 0.0, 0.0, 0.0], limit=1)
        with pytest.raises(TableNotFoundError):
            await storage.search("session_missing_v1", [1.0, 0.0, 0.0, 0.0], limit=1)

    asyncio.run(run())
