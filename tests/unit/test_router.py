"""
Unit tests for the storage router.

Tests cover:
- Initialization and the one-time fallback
- Reinitialization and adapter switching
- Export / import of full snapshots
- Distribution and auto-distribution
"""

import os
import sqlite3

import pytest

from volt.volt_storage.config import StorageConfig, StorageKind, WriteMode
from volt.volt_storage.errors import AdapterUnavailableError, ConfigurationError
from volt.volt_storage.router import FallbackPolicy, StorageRouter


class TestInitialization:
    """Tests for initialize() and fallback."""

    @pytest.mark.asyncio
    async def test_uninitialized_router(self):
        """Accessing the cache before initialize() is a configuration error."""
        router = StorageRouter()
        assert not router.is_initialized
        with pytest.raises(ConfigurationError):
            router.cache

    @pytest.mark.asyncio
    async def test_initialize_file_tree(self, data_dir):
        """A file tree config initializes without fallback."""
        router = StorageRouter(StorageConfig.for_kind("file_tree", {"dataDir": data_dir}))
        await router.initialize()

        assert router.kind is StorageKind.FILE_TREE
        assert not router.fell_back
        info = router.storage_info()
        assert info["type"] == "file_tree"
        assert info["requested"] == "file_tree"
        assert info["fellBack"] is False
        await router.close()

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, data_dir):
        """A second initialize() keeps the same adapter."""
        router = StorageRouter(StorageConfig.for_kind("file_tree", {"dataDir": data_dir}))
        await router.initialize()
        adapter = router.adapter
        await router.initialize()
        assert router.adapter is adapter
        await router.close()

    @pytest.mark.asyncio
    async def test_fallback_to_file_tree(self, data_dir, unreachable_kv, caplog):
        """An unreachable back-end falls back to the file tree, logged once."""
        router = StorageRouter(StorageConfig.for_kind("kv", {"dataDir": data_dir}))
        await router.initialize()

        assert router.kind is StorageKind.FILE_TREE
        assert router.fell_back
        assert router.active_config.options.data_dir == data_dir
        info = router.storage_info()
        assert info["requested"] == "kv"
        assert info["type"] == "file_tree"
        assert "memory connect refused" in info["fallbackReason"]
        assert "falling back" in caplog.text
        await router.close()

    @pytest.mark.asyncio
    async def test_fallback_disabled(self, data_dir, unreachable_kv):
        """With fallback disabled the error surfaces."""
        router = StorageRouter(
            StorageConfig.for_kind("kv", {"dataDir": data_dir}),
            fallback=FallbackPolicy(enabled=False),
        )
        with pytest.raises(AdapterUnavailableError):
            await router.initialize()
        assert not router.is_initialized

    def test_no_fallback_from_fallback_kind(self, data_dir):
        """The fallback kind itself has nowhere to fall back to."""
        policy = FallbackPolicy()
        config = StorageConfig.for_kind("file_tree", {"dataDir": data_dir})
        assert policy.fallback_for(config, AdapterUnavailableError("x")) is None

    @pytest.mark.asyncio
    async def test_preload_on_initialize(self, data_dir, memory_kv):
        """Every registered collection is loaded at startup."""
        memory_kv.store["users"] = {"u1": {"id": "u1"}}
        router = StorageRouter(StorageConfig.for_kind("kv", {"dataDir": data_dir}))
        await router.initialize()
        assert "call_logs" in router.cache.loaded_collections()
        assert await router.cache.count("users") == 1
        await router.close()


class TestSwitching:
    """Tests for reinitialize()."""

    @pytest.mark.asyncio
    async def test_reinitialize_switches_adapter(self, data_dir):
        """reinitialize() connects the new adapter and repopulates the cache."""
        router = StorageRouter(StorageConfig.for_kind("file_tree", {"dataDir": data_dir}))
        await router.initialize()
        await router.cache.replace("users", {"u1": {"id": "u1"}})
        cache = router.cache

        target = router.config.with_kind("row_store", {"dbPath": os.path.join(data_dir, "v.db")})
        await router.reinitialize(target)

        assert router.kind is StorageKind.ROW_STORE
        assert router.cache is cache
        assert await router.cache.read("users") == {}
        await router.close()

    @pytest.mark.asyncio
    async def test_reinitialize_flushes_pending(self, data_dir, memory_kv):
        """Pending background writes land before the switch."""
        router = StorageRouter(StorageConfig.for_kind("kv", {"dataDir": data_dir}))
        await router.initialize()
        assert router.cache.write_mode is WriteMode.EAGER

        memory_kv.gate.clear()
        await router.cache.replace("users", {"u1": {}})
        memory_kv.gate.set()
        await router.reinitialize(StorageConfig.for_kind("file_tree", {"dataDir": data_dir}))

        assert memory_kv.store["users"] == {"u1": {}}
        assert memory_kv.closed
        await router.close()

    @pytest.mark.asyncio
    async def test_reinitialize_failure_without_fallback(self, data_dir, unreachable_kv):
        """A failed switch surfaces and leaves no adapter active."""
        router = StorageRouter(StorageConfig.for_kind("file_tree", {"dataDir": data_dir}))
        await router.initialize()

        with pytest.raises(AdapterUnavailableError):
            await router.reinitialize(StorageConfig.for_kind("kv", {"dataDir": data_dir}))
        assert not router.is_initialized

    @pytest.mark.asyncio
    async def test_reinitialize_with_fallback(self, data_dir, unreachable_kv):
        """allow_fallback=True recovers onto the file tree."""
        router = StorageRouter(StorageConfig.for_kind("file_tree", {"dataDir": data_dir}))
        await router.initialize()

        await router.reinitialize(
            StorageConfig.for_kind("kv", {"dataDir": data_dir}), allow_fallback=True
        )
        assert router.kind is StorageKind.FILE_TREE
        assert router.fell_back
        await router.close()


class TestSnapshots:
    """Tests for export_all/import_all."""

    @pytest.mark.asyncio
    async def test_export_reads_adapter(self, data_dir, memory_kv):
        """export_all flushes and reads every collection from the adapter."""
        router = StorageRouter(StorageConfig.for_kind("kv", {"dataDir": data_dir}))
        await router.initialize()
        memory_kv.gate.clear()
        await router.cache.replace("servers", {"s1": {"id": "s1"}})
        memory_kv.gate.set()

        snapshot = await router.export_all()

        assert snapshot["servers"] == {"s1": {"id": "s1"}}
        assert snapshot["users"] == {}
        assert set(snapshot) >= {"users", "servers", "call_logs"}
        await router.close()

    @pytest.mark.asyncio
    async def test_import_coerces_and_normalises(self, data_dir, memory_kv):
        """import_all keys arrays by identity, fixes legacy keys and writes durably."""
        router = StorageRouter(StorageConfig.for_kind("kv", {"dataDir": data_dir}))
        await router.initialize()
        memory_kv.gate.set()

        counts = await router.import_all(
            {
                "invites": [{"code": "AB12CD34", "serverId": "s1"}],
                "servers": {"s1": {"id": "s1", "Host": "u1"}},
            }
        )

        assert counts == {"invites": 1, "servers": 1}
        assert memory_kv.store["invites"] == {"AB12CD34": {"code": "AB12CD34", "serverId": "s1"}}
        assert memory_kv.store["servers"] == {"s1": {"id": "s1", "host": "u1"}}
        assert await router.cache.get("servers", "s1") == {"id": "s1", "host": "u1"}
        await router.close()


class TestRouterDistribution:
    """Tests for distribution through the router."""

    @pytest.mark.asyncio
    async def test_distribute_reloads_cache(self, data_dir):
        """After distribute() reads still see every record."""
        db_path = os.path.join(data_dir, "volt.db")
        router = StorageRouter(StorageConfig.for_kind("row_store", {"dbPath": db_path}))
        await router.initialize()
        await router.cache.replace("users", {"u1": {"id": "u1"}})

        report = await router.distribute()

        assert report.distributed == ["users"]
        assert await router.cache.get("users", "u1") == {"id": "u1"}
        await router.close()

    @pytest.mark.asyncio
    async def test_auto_distribute_on_startup(self, data_dir):
        """auto_distribute moves leftover storage_kv rows before preload."""
        db_path = os.path.join(data_dir, "volt.db")
        conn = sqlite3.connect(db_path)
        conn.execute("CREATE TABLE storage_kv (id TEXT PRIMARY KEY, data TEXT NOT NULL)")
        conn.execute("INSERT INTO storage_kv VALUES ('users', '{\"u1\": {\"id\": \"u1\"}}')")
        conn.commit()
        conn.close()

        config = StorageConfig.from_dict(
            {"type": "row_store", "row_store": {"dbPath": db_path}, "autoDistribute": True}
        )
        router = StorageRouter(config)
        await router.initialize()

        conn = sqlite3.connect(db_path)
        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        leftover = conn.execute("SELECT COUNT(*) FROM storage_kv").fetchone()[0]
        conn.close()
        assert "users" in tables
        assert leftover == 0
        assert await router.cache.get("users", "u1") == {"id": "u1"}
        await router.close()
