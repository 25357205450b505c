"""
Shared test fixtures for the Volt storage layer.

Provides in-process stand-ins for the asynchronous back-ends:
- memory_adapter: non-blocking adapter with controllable latency/failures
- fake_mongo_client: enough of AsyncMongoClient for DocumentAdapter
- fake_redis_client: enough of redis.asyncio.Redis for KeyValueAdapter
- memory_kv / unreachable_kv: route kv configurations to memory_adapter
"""

import asyncio
import copy
import fnmatch
import tempfile

import pytest

from volt.volt_storage.config import StorageKind
from volt.volt_storage.errors import AdapterUnavailableError


class MemoryAdapter:
    """Asynchronous adapter keeping collections in a dict.

    Attributes:
        store: Persisted collections
        saves: (collection, data) for every completed save
        gate: When cleared, saves wait until it is set again
        fail_saves: When true, saves raise AdapterUnavailableError
    """

    def __init__(self, kind=StorageKind.KV):
        self._kind = kind
        self.store = {}
        self.saves = []
        self.gate = asyncio.Event()
        self.gate.set()
        self.fail_saves = False
        self.fail_connect = False
        self.connected = False
        self.closed = False

    @property
    def kind(self):
        return self._kind

    @property
    def blocking(self):
        return False

    @property
    def is_connected(self):
        return self.connected

    async def connect(self):
        if self.fail_connect:
            raise AdapterUnavailableError("memory connect refused", kind=self._kind.value)
        self.connected = True

    async def ping(self):
        if not self.connected:
            raise AdapterUnavailableError("memory adapter closed", kind=self._kind.value)

    async def load(self, collection):
        await asyncio.sleep(0)
        return copy.deepcopy(self.store.get(collection, {}))

    async def save(self, collection, data):
        await self.gate.wait()
        if self.fail_saves:
            raise AdapterUnavailableError("memory save failed", kind=self._kind.value)
        self.store[collection] = copy.deepcopy(data)
        self.saves.append((collection, copy.deepcopy(data)))

    async def close(self):
        self.connected = False
        self.closed = True


class _FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for doc in self._docs:
            yield copy.deepcopy(doc)


class FakeMongoCollection:
    def __init__(self, client):
        self._client = client
        self.docs = {}

    def find(self, query):
        return _FakeCursor(list(self.docs.values()))

    async def bulk_write(self, ops, ordered=True, session=None):
        for op in ops:
            doc = copy.deepcopy(op._doc)
            self.docs[doc["_id"]] = doc

    async def delete_many(self, query, session=None):
        if self._client.fail_deletes:
            from pymongo.errors import OperationFailure

            raise OperationFailure("delete refused")
        keep = set(query["_id"]["$nin"])
        for doc_id in [d for d in self.docs if d not in keep]:
            del self.docs[doc_id]


class _FakeAdmin:
    def __init__(self, client):
        self._client = client

    async def command(self, name):
        if not self._client.reachable:
            from pymongo.errors import ServerSelectionTimeoutError

            raise ServerSelectionTimeoutError("no servers")
        if name == "hello" and self._client.replica_set:
            return {"ok": 1, "setName": "rs0"}
        return {"ok": 1}


class _FakeSession:
    def __init__(self, client):
        self._client = client

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def with_transaction(self, callback):
        snapshot = {
            name: {coll: copy.deepcopy(c.docs) for coll, c in db.collections.items()}
            for name, db in self._client.databases.items()
        }
        try:
            result = await callback(self)
        except Exception:
            for name, colls in snapshot.items():
                for coll, docs in colls.items():
                    self._client.databases[name].collections[coll].docs = docs
            raise
        self._client.transactions += 1
        return result


class FakeMongoClient:
    def __init__(self):
        self.databases = {}
        self.reachable = True
        self.replica_set = False
        self.fail_deletes = False
        self.transactions = 0
        self.admin = _FakeAdmin(self)
        self.closed = False

    def __getitem__(self, name):
        return self.databases.setdefault(name, _FakeMongoDatabase(self))

    def start_session(self):
        return _FakeSession(self)

    async def close(self):
        self.closed = True


class _FakeMongoDatabase:
    def __init__(self, client):
        self._client = client
        self.collections = {}

    def __getitem__(self, name):
        return self.collections.setdefault(name, FakeMongoCollection(self._client))


class _FakePipeline:
    def __init__(self, client):
        self._client = client
        self._ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def delete(self, *keys):
        self._ops.append(("delete", keys))

    def set(self, key, value):
        self._ops.append(("set", (key, value)))

    async def execute(self):
        for op, args in self._ops:
            if op == "delete":
                for key in args:
                    self._client.data.pop(key, None)
            else:
                key, value = args
                self._client.data[key] = value
        self._client.executed += 1


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.executed = 0
        self.reachable = True
        self.closed = False

    async def ping(self):
        if not self.reachable:
            from redis.exceptions import ConnectionError

            raise ConnectionError("connection refused")
        return True

    async def scan_iter(self, match=None, count=None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def mget(self, keys):
        return [self.data.get(key) for key in keys]

    def pipeline(self, transaction=True):
        return _FakePipeline(self)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def memory_adapter():
    """Non-blocking in-memory adapter."""
    return MemoryAdapter()


@pytest.fixture
def fake_mongo_client():
    """In-process stand-in for AsyncMongoClient."""
    return FakeMongoClient()


@pytest.fixture
def fake_redis_client():
    """In-process stand-in for redis.asyncio.Redis."""
    return FakeRedis()


def _serve_kv_from(monkeypatch, adapter):
    from volt.volt_storage import router as router_module
    from volt.volt_storage.adapters.base import create_adapter_from_config

    def factory(config):
        if config.kind is StorageKind.KV:
            return adapter
        return create_adapter_from_config(config)

    monkeypatch.setattr(router_module, "create_adapter_from_config", factory)


@pytest.fixture
def memory_kv(monkeypatch, memory_adapter):
    """Serve every kv configuration from the in-memory adapter."""
    _serve_kv_from(monkeypatch, memory_adapter)
    return memory_adapter


@pytest.fixture
def unreachable_kv(monkeypatch, memory_adapter):
    """Make every kv adapter refuse to connect."""
    memory_adapter.fail_connect = True
    _serve_kv_from(monkeypatch, memory_adapter)
    return memory_adapter
