"""
Unit tests for the migration engine.

Tests cover:
- Successful file tree -> row store migration with backup and config rewrite
- Source directory overlay and runtime sync
- Rollback when configure, import or verify fails
- Connection tests and dependency reports
"""

import json
import os
import sqlite3

import pytest

from volt.volt_storage import migration as migration_module
from volt.volt_storage.config import StorageConfig, StorageKind
from volt.volt_storage.errors import ConfigurationError, MigrationAbortedError
from volt.volt_storage.migration import MigrationEngine, StepStatus
from volt.volt_storage.router import StorageRouter


USERS = {
    "u1": {"id": "u1", "username": "alice"},
    "u2": {"id": "u2", "username": "bob"},
}

MESSAGES = {
    f"m{i}": {"id": f"m{i}", "channelId": "c1", "content": str(i), "createdAt": f"2024-01-0{i}T00:00:00.000Z"}
    for i in range(1, 4)
}


def _write(directory, name, value):
    with open(os.path.join(directory, name), "w", encoding="utf-8") as f:
        json.dump(value, f)


@pytest.fixture
def runtime_dir(data_dir):
    """Runtime JSON directory seeded with users and messages."""
    path = os.path.join(data_dir, "data")
    os.makedirs(path)
    _write(path, "users.json", USERS)
    _write(path, "messages.json", MESSAGES)
    return path


@pytest.fixture
async def engine(data_dir, runtime_dir):
    """Engine over an initialized file-tree router."""
    router = StorageRouter(StorageConfig.for_kind("file_tree", {"dataDir": runtime_dir}))
    await router.initialize()
    engine = MigrationEngine(
        router,
        backup_root=os.path.join(data_dir, "backup"),
        config_path=os.path.join(data_dir, "storage.json"),
    )
    yield engine
    await router.close()


class TestMigrationSuccess:
    """Tests for a successful migration."""

    @pytest.mark.asyncio
    async def test_file_tree_to_row_store(self, engine, data_dir):
        """All records move and the row store becomes active."""
        db_path = os.path.join(data_dir, "volt.db")
        result = await engine.migrate("row_store", {"dbPath": db_path})

        assert result.success, result.error
        assert not result.rolled_back
        assert engine.router.kind is StorageKind.ROW_STORE
        assert result.counts["users"] == 2
        assert result.counts["messages"] == 3
        assert [s.step for s in result.steps] == [
            "backup",
            "export",
            "configure",
            "import",
            "verify",
            "distribute",
            "sync-json-runtime",
            "final-check",
        ]
        assert len(await engine.router.cache.read("users")) == 2
        assert len(await engine.router.cache.read("messages")) == 3

    @pytest.mark.asyncio
    async def test_backup_holds_pre_migration_json(self, engine, data_dir):
        """The backup folder contains a copy of every runtime file."""
        result = await engine.migrate("row_store", {"dbPath": os.path.join(data_dir, "volt.db")})

        assert os.path.basename(result.backup_path).startswith("backup_")
        with open(os.path.join(result.backup_path, "users.json"), encoding="utf-8") as f:
            assert json.load(f) == USERS

    @pytest.mark.asyncio
    async def test_no_backup(self, engine, data_dir):
        """do_backup=False skips the backup step."""
        result = await engine.migrate(
            "row_store", {"dbPath": os.path.join(data_dir, "volt.db")}, do_backup=False
        )
        assert result.success
        assert result.backup_path is None
        assert result.steps[0].status is StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_config_file_rewritten(self, engine, data_dir):
        """On success the persisted config names the target."""
        db_path = os.path.join(data_dir, "volt.db")
        await engine.migrate("row_store", {"dbPath": db_path})

        persisted = StorageConfig.load_file(os.path.join(data_dir, "storage.json"))
        assert persisted.kind is StorageKind.ROW_STORE
        assert persisted.options.db_path == db_path

    @pytest.mark.asyncio
    async def test_row_store_tables_distributed(self, engine, data_dir):
        """Migrating to a SQL back-end leaves per-collection tables."""
        db_path = os.path.join(data_dir, "volt.db")
        result = await engine.migrate("row_store", {"dbPath": db_path})
        assert result.steps[5].status is StepStatus.COMPLETED

        conn = sqlite3.connect(db_path)
        try:
            ids = {row[0] for row in conn.execute("SELECT id FROM users")}
        finally:
            conn.close()
        assert ids == {"u1", "u2"}

    @pytest.mark.asyncio
    async def test_data_survives_restart(self, engine, data_dir):
        """A fresh router on the target sees the migrated data."""
        db_path = os.path.join(data_dir, "volt.db")
        await engine.migrate("row_store", {"dbPath": db_path})

        fresh = StorageRouter(StorageConfig.for_kind("row_store", {"dbPath": db_path}))
        await fresh.initialize()
        try:
            assert await fresh.cache.count("users") == 2
            assert await fresh.cache.count("messages") == 3
        finally:
            await fresh.close()

    @pytest.mark.asyncio
    async def test_source_dir_overlay_and_sync(self, engine, data_dir, runtime_dir):
        """sourceDir files replace exported collections and are synced."""
        source = os.path.join(data_dir, "incoming")
        os.makedirs(source)
        _write(source, "users.json", {"u9": {"id": "u9", "username": "zed"}})

        result = await engine.migrate(
            "row_store", {"dbPath": os.path.join(data_dir, "volt.db")}, source_dir=source
        )

        assert result.success
        assert result.counts["users"] == 1
        assert list(await engine.router.cache.read("users")) == ["u9"]
        assert result.steps[6].detail["files"] == ["users.json"]
        with open(os.path.join(runtime_dir, "users.json"), encoding="utf-8") as f:
            assert json.load(f) == {"u9": {"id": "u9", "username": "zed"}}

    @pytest.mark.asyncio
    async def test_to_kv(self, engine, memory_kv):
        """Migrating to an asynchronous back-end writes every collection."""
        result = await engine.migrate("kv", {"host": "cache"})

        assert result.success, result.error
        assert engine.router.kind is StorageKind.KV
        assert memory_kv.store["users"] == USERS
        assert result.steps[5].status is StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_result_dict(self, engine, data_dir):
        """to_dict() uses the wire field names."""
        result = await engine.migrate("row_store", {"dbPath": os.path.join(data_dir, "volt.db")})
        body = result.to_dict()

        assert body["source"] == "file_tree"
        assert body["target"] == "row_store"
        assert body["steps"][0]["step"] == "backup"
        assert "durationMs" in body
        result.raise_for_status()


class TestMigrationFailure:
    """Tests for rollback."""

    @pytest.mark.asyncio
    async def test_same_kind_rejected(self, engine):
        """Migrating to the active kind is a configuration error."""
        with pytest.raises(ConfigurationError):
            await engine.migrate("file_tree", {})

    @pytest.mark.asyncio
    async def test_unknown_kind_rejected(self, engine):
        """Unknown targets are rejected before any step runs."""
        with pytest.raises(ConfigurationError):
            await engine.migrate("floppy", {})

    @pytest.mark.asyncio
    async def test_unreachable_target_rolls_back(self, engine, data_dir, unreachable_kv):
        """A configure failure restores the file tree and the config file."""
        config_file = os.path.join(data_dir, "storage.json")
        engine.router.config.save_file(config_file)
        with open(config_file, "rb") as f:
            original = f.read()

        result = await engine.migrate("kv", {"host": "nowhere"})

        assert not result.success
        assert result.rolled_back
        assert engine.router.kind is StorageKind.FILE_TREE
        assert result.steps[2].step == "configure"
        assert result.steps[2].status is StepStatus.FAILED
        assert result.steps[-1].step == "rollback"
        assert len(await engine.router.cache.read("users")) == 2
        with open(config_file, "rb") as f:
            assert f.read() == original
        with pytest.raises(MigrationAbortedError):
            result.raise_for_status()

    @pytest.mark.asyncio
    async def test_import_failure_rolls_back(self, engine, data_dir, memory_kv):
        """A failed import leaves the previous back-end active."""
        memory_kv.fail_saves = True

        result = await engine.migrate("kv", {"host": "cache"})

        assert not result.success
        assert result.rolled_back
        assert engine.router.kind is StorageKind.FILE_TREE
        assert result.steps[3].step == "import"
        assert result.steps[3].status is StepStatus.FAILED
        assert not os.path.exists(os.path.join(data_dir, "storage.json"))
        assert await engine.router.cache.read("messages") == MESSAGES

    @pytest.mark.asyncio
    async def test_verify_failure_rolls_back(self, engine, memory_kv, monkeypatch):
        """A target that drops writes fails verification."""

        async def forget(collection, data):
            memory_kv.saves.append((collection, data))

        monkeypatch.setattr(memory_kv, "save", forget)

        result = await engine.migrate("kv", {"host": "cache"})

        assert not result.success
        assert result.steps[4].step == "verify"
        assert result.steps[4].status is StepStatus.FAILED
        assert "users" in result.error
        assert engine.router.kind is StorageKind.FILE_TREE

    @pytest.mark.asyncio
    async def test_not_running_afterwards(self, engine, unreachable_kv):
        """The migration lock is released after a failure."""
        await engine.migrate("kv", {})
        assert not engine.is_running


class TestConnectionTests:
    """Tests for test_connection() and check_dependencies()."""

    @pytest.mark.asyncio
    async def test_file_tree_connects(self, engine, data_dir):
        """A writable directory tests successfully."""
        result = await engine.test_connection("file_tree", {"dataDir": os.path.join(data_dir, "scratch")})
        assert result.success
        assert result.tested
        assert engine.router.kind is StorageKind.FILE_TREE

    @pytest.mark.asyncio
    async def test_missing_driver(self, engine, monkeypatch):
        """A missing driver is reported without attempting a connection."""
        monkeypatch.setattr(migration_module, "driver_available", lambda kind: False)

        result = await engine.test_connection("postgres", {"host": "db"})

        assert not result.success
        assert not result.tested
        assert result.driver_missing
        assert "asyncpg" in result.error
        assert result.to_dict()["driverMissing"] is True

    @pytest.mark.asyncio
    async def test_unknown_kind(self, engine):
        """Unknown kinds raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            await engine.test_connection("tape", {})

    def test_check_dependencies(self, engine):
        """Every kind is reported; embedded back-ends need no driver."""
        deps = engine.check_dependencies()

        assert set(deps) == {kind.value for kind in StorageKind}
        assert deps["file_tree"] == {"driver": None, "extra": None, "available": True}
        assert deps["row_store"]["available"] is True
        assert deps["postgres"]["driver"] == "asyncpg"
        assert deps["postgres"]["extra"] == "postgres"

    @pytest.mark.asyncio
    async def test_distribute_on_file_tree(self, engine):
        """Distribution on a non-SQL back-end does nothing."""
        report = await engine.distribute()
        assert report.success
        assert report.distributed == []
