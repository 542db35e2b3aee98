import os, sys
import zlib
from pathlib import Path
from types import SimpleNamespace

import numpy as np
import pytest

# Add src/ to sys.path for imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

# Keep config deterministic regardless of the developer's environment
os.environ.setdefault("OPENAI_API_KEY", "test-openai")
os.environ.setdefault("AVATAR_MEMORY_CONFIG", str(Path(__file__).resolve().parent / "missing.toml"))

from avatar_memory.memory import AssociativeMemory, EmbeddingPipeline, MilvusStorage
from avatar_memory.memory.storage import engine


# ---------------------------------------------------------------------------
# In-memory stand-in for a Milvus server
# ---------------------------------------------------------------------------

class _Entity:
    def __init__(self, row: dict):
        self._row = row

    def get(self, name):
        return self._row.get(name)


class FakeHit:
    def __init__(self, row: dict, distance: float):
        self.id = row["id"]
        self.distance = distance
        self.entity = _Entity(row)


def _matches(row: dict, expr: str | None) -> bool:
    if not expr:
        return True
    return bool(eval(expr, {}, dict(row)))  # simple parsing for tests


class FakeCollection:
    def __init__(self, name, schema):
        self.name = name
        self.schema = schema
        self.rows: dict[str, dict] = {}
        self.indexed = False
        self.loaded = False
        self.insert_calls = 0
        self.search_calls = 0

    def create_index(self, field_name, index_params=None):
        self.indexed = True

    def has_index(self):
        return self.indexed

    def load(self):
        self.loaded = True

    def insert(self, rows):
        self.insert_calls += 1
        for row in rows:
            self.rows[row["id"]] = dict(row)

    def upsert(self, rows):
        for row in rows:
            self.rows[row["id"]] = dict(row)

    def search(self, data, anns_field=None, param=None, limit=10, expr=None, output_fields=None, consistency_level=None):
        self.search_calls += 1
        q = np.asarray(data[0], dtype=np.float32)
        hits = []
        for row in self.rows.values():
            if not _matches(row, expr):
                continue
            vec = np.asarray(row[anns_field], dtype=np.float32)
            hits.append(FakeHit(row, float(np.sum((q - vec) ** 2))))
        hits.sort(key=lambda h: h.distance)
        return [hits[:limit]]

    def query(self, expr="", output_fields=None, limit=None, offset=0, consistency_level=None):
        rows = [r for r in self.rows.values() if _matches(r, expr)]
        end = None if limit is None else offset + limit
        return [{k: r.get(k) for k in output_fields} for r in rows[offset:end]]


class FakeMilvusServer:
    def __init__(self):
        self.collections: dict[str, FakeCollection] = {}
        self.connects: list[dict] = []
        self.dropped: list[str] = []
        self.disconnects: list[str] = []
        self.fail_connect = False
        self.fail_create: set[str] = set()

    # ``connections``
    def connect(self, alias=None, uri=None, token=None, **kwargs):
        if self.fail_connect:
            raise ConnectionError("milvus unreachable")
        self.connects.append({"alias": alias, "uri": uri})

    def disconnect(self, alias):
        self.disconnects.append(alias)

    # ``utility``
    def has_collection(self, name, using=None):
        return name in self.collections

    def drop_collection(self, name, using=None):
        self.collections.pop(name, None)
        self.dropped.append(name)

    # ``Collection``
    def collection(self, name, schema=None, using=None, **kwargs):
        if schema is not None and name in self.fail_create:
            raise RuntimeError(f"cannot create collection {name}")
        if schema is not None and name not in self.collections:
            self.collections[name] = FakeCollection(name, schema)
        return self.collections[name]

    def dim_of(self, name) -> int:
        field = next(f for f in self.collections[name].schema.fields if f.name == "vector")
        return int(field.params["dim"])


@pytest.fixture
def milvus_server(monkeypatch):
    server = FakeMilvusServer()
    monkeypatch.setattr(engine, "Collection", server.collection)
    monkeypatch.setattr(
        engine,
        "utility",
        SimpleNamespace(has_collection=server.has_collection, drop_collection=server.drop_collection),
    )
    monkeypatch.setattr(
        engine,
        "connections",
        SimpleNamespace(connect=server.connect, disconnect=server.disconnect),
    )
    return server


@pytest.fixture
def milvus_settings():
    return SimpleNamespace(
        MILVUS_URI="http://milvus.test:19530",
        MILVUS_TOKEN="",
        MILVUS_INDEX_TYPE="IVF_FLAT",
        MILVUS_NLIST=16,
        MILVUS_NPROBE=4,
        MILVUS_QUERY_CHUNK=500,
    )


@pytest.fixture
def memory_settings():
    return SimpleNamespace(
        SESSION_LIMIT=5,
        PERSISTENT_LIMIT=5,
        RELEVANCE_THRESHOLD=0.75,
        DEDUP_DISTANCE=0.05,
        RECENCY_MAX_BONUS=0.05,
        RECENCY_WINDOW_DAYS=365,
        MAX_SOURCE_IDS=64,
    )


# ---------------------------------------------------------------------------
# Deterministic embedding backend
# ---------------------------------------------------------------------------

class FakeEmbedder:
    """Returns fixed vectors for known texts and a crc32-seeded vector otherwise."""

    def __init__(self, dimension=4, vectors=None, report_dimension=True, fail_on=(), fail_load=False):
        self._dim = dimension
        self.vectors = {k: np.asarray(v, dtype=np.float32) for k, v in (vectors or {}).items()}
        self.report_dimension = report_dimension
        self.fail_on = set(fail_on)
        self.fail_load = fail_load
        self.loads = 0
        self.calls: list[list[str]] = []

    async def load(self):
        self.loads += 1
        if self.fail_load:
            raise RuntimeError("model unavailable")

    @property
    def dimension(self):
        return self._dim if self.report_dimension else None

    def vector_for(self, text):
        if text in self.vectors:
            return self.vectors[text]
        rng = np.random.default_rng(zlib.crc32(text.encode("utf-8")))
        return rng.normal(size=self._dim).astype(np.float32)

    async def embed(self, texts):
        self.calls.append(list(texts))
        for text in texts:
            if text in self.fail_on:
                raise RuntimeError(f"cannot embed {text!r}")
        return [self.vector_for(t) for t in texts]


@pytest.fixture
def make_embedder():
    return FakeEmbedder


@pytest.fixture
def make_storage(milvus_server, milvus_settings):
    def _make(**kwargs):
        return MilvusStorage(settings=milvus_settings, alias="test", **kwargs)

    return _make


@pytest.fixture
def make_memory(make_storage, memory_settings):
    """Build an ``AssociativeMemory`` over the fake server and a ``FakeEmbedder``."""

    def _make(embedder=None, **embedder_kwargs):
        embedder = embedder or FakeEmbedder(**embedder_kwargs)
        memory = AssociativeMemory(
            EmbeddingPipeline(embedder),
            make_storage(),
            settings=memory_settings,
        )
        memory.embedder = embedder
        return memory

    return _make
