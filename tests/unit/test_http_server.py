"""
Unit tests for the admin HTTP API.

Tests cover:
- Health and read-only storage endpoints
- Request validation and error status mapping
- Connection test, migrate and distribute endpoints
- CORS headers
"""

import os

import pytest
from aiohttp.test_utils import TestClient, TestServer

from volt.volt_storage.api import create_http_app
from volt.volt_storage.config import HttpConfig, StorageConfig, StorageKind
from volt.volt_storage.migration import MigrationEngine
from volt.volt_storage.router import StorageRouter


@pytest.fixture
async def engine(data_dir):
    """Engine over an initialized file-tree router."""
    runtime = os.path.join(data_dir, "data")
    router = StorageRouter(StorageConfig.for_kind("file_tree", {"dataDir": runtime}))
    await router.initialize()
    await router.cache.replace("users", {"u1": {"id": "u1"}, "u2": {"id": "u2"}})
    yield MigrationEngine(router, backup_root=os.path.join(data_dir, "backup"))
    await router.close()


@pytest.fixture
async def client(engine):
    """Test client for the admin app."""
    app = create_http_app(engine, HttpConfig(cors_origins=("http://admin.local",)))
    async with TestClient(TestServer(app)) as client:
        yield client


class TestReadEndpoints:
    """Tests for GET endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        """A ready router reports healthy."""
        resp = await client.get("/v1/health")
        assert resp.status == 200
        body = await resp.json()
        assert body["healthy"] is True
        assert body["storage"] == "file_tree"
        assert body["migrating"] is False
        assert body["version"]

    @pytest.mark.asyncio
    async def test_health_uninitialized(self, data_dir):
        """An uninitialized router reports unhealthy."""
        engine = MigrationEngine(StorageRouter(StorageConfig.for_kind("file_tree", {"dataDir": data_dir})))
        async with TestClient(TestServer(create_http_app(engine))) as client:
            resp = await client.get("/v1/health")
            assert resp.status == 503
            assert (await resp.json())["storage"] is None

    @pytest.mark.asyncio
    async def test_storage_info(self, client):
        """Info describes the active back-end."""
        resp = await client.get("/v1/storage/info")
        body = await resp.json()
        assert body["success"] is True
        assert body["current"]["type"] == "file_tree"
        assert body["current"]["fellBack"] is False

    @pytest.mark.asyncio
    async def test_dependencies(self, client):
        """Dependencies list every kind."""
        resp = await client.get("/v1/storage/dependencies")
        body = await resp.json()
        assert set(body["dependencies"]) == {kind.value for kind in StorageKind}

    @pytest.mark.asyncio
    async def test_export_counts_only(self, client):
        """Export returns counts, never bodies."""
        resp = await client.get("/v1/storage/export")
        body = await resp.json()
        assert body["type"] == "file_tree"
        assert body["counts"]["users"] == 2
        assert "u1" not in str(body)


class TestControlEndpoints:
    """Tests for POST endpoints."""

    @pytest.mark.asyncio
    async def test_test_connection(self, client, data_dir):
        """A reachable back-end tests successfully."""
        resp = await client.post(
            "/v1/storage/test-connection",
            json={"type": "file_tree", "options": {"dataDir": os.path.join(data_dir, "scratch")}},
        )
        assert resp.status == 200
        body = await resp.json()
        assert body["success"] is True
        assert body["type"] == "file_tree"

    @pytest.mark.asyncio
    async def test_test_connection_config_alias(self, client, data_dir):
        """Options may also be sent as 'config'."""
        resp = await client.post(
            "/v1/storage/test-connection",
            json={"type": "json", "config": {"dataDir": os.path.join(data_dir, "scratch")}},
        )
        assert (await resp.json())["success"] is True

    @pytest.mark.asyncio
    async def test_missing_field(self, client):
        """Bodies failing validation return 400 with details."""
        resp = await client.post("/v1/storage/test-connection", json={"options": {}})
        assert resp.status == 400
        body = await resp.json()
        assert body["error_code"] == "INVALID_REQUEST"
        assert body["details"][0]["loc"] == ["type"]

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        """Malformed JSON returns 400."""
        resp = await client.post(
            "/v1/storage/migrate", data="{nope", headers={"Content-Type": "application/json"}
        )
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_unknown_kind(self, client):
        """Unknown storage kinds map to 400."""
        resp = await client.post("/v1/storage/test-connection", json={"type": "tape"})
        assert resp.status == 400
        assert (await resp.json())["error_code"] == "CONFIGURATION_ERROR"

    @pytest.mark.asyncio
    async def test_migrate(self, client, engine, data_dir):
        """A migration switches the active back-end."""
        resp = await client.post(
            "/v1/storage/migrate",
            json={"targetType": "row_store", "targetOptions": {"dbPath": os.path.join(data_dir, "v.db")}},
        )
        assert resp.status == 200
        body = await resp.json()
        assert body["success"] is True
        assert body["counts"]["users"] == 2
        assert engine.router.kind is StorageKind.ROW_STORE

    @pytest.mark.asyncio
    async def test_migrate_same_kind(self, client):
        """Migrating to the active kind is a 400."""
        resp = await client.post("/v1/storage/migrate", json={"targetType": "file_tree"})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_migrate_while_running(self, client, engine):
        """A second migration is refused with 409."""
        async with engine._lock:
            resp = await client.post("/v1/storage/migrate", json={"targetType": "row_store"})
        assert resp.status == 409
        assert (await resp.json())["error_code"] == "MIGRATION_RUNNING"

    @pytest.mark.asyncio
    async def test_distribute(self, client):
        """Distribution on the file tree reports a skip."""
        resp = await client.post("/v1/storage/distribute")
        assert resp.status == 200
        body = await resp.json()
        assert body["success"] is True
        assert body["skipped"]


class TestCors:
    """Tests for CORS handling."""

    @pytest.mark.asyncio
    async def test_allowed_origin_echoed(self, client):
        """Allowed origins are echoed back."""
        resp = await client.get("/v1/health", headers={"Origin": "http://admin.local"})
        assert resp.headers["Access-Control-Allow-Origin"] == "http://admin.local"

    @pytest.mark.asyncio
    async def test_other_origin_not_echoed(self, client):
        """Other origins get no allow header."""
        resp = await client.get("/v1/health", headers={"Origin": "http://evil.example"})
        assert "Access-Control-Allow-Origin" not in resp.headers

    @pytest.mark.asyncio
    async def test_preflight(self, client):
        """OPTIONS requests are answered directly."""
        resp = await client.options("/v1/storage/migrate", headers={"Origin": "http://admin.local"})
        assert resp.status == 200
        assert "POST" in resp.headers["Access-Control-Allow-Methods"]

    @pytest.mark.asyncio
    async def test_error_responses_carry_cors(self, client):
        """Error responses still get CORS headers."""
        resp = await client.post(
            "/v1/storage/test-connection", json={"type": "tape"}, headers={"Origin": "http://admin.local"}
        )
        assert resp.status == 400
        assert resp.headers["Access-Control-Allow-Origin"] == "http://admin.local"
