"""
Unit tests for the file-tree adapter.

Tests cover:
- Load/save round trip and missing files
- Fixed filename map and pretty layout
- Legacy array files
- Crash-atomic writes and error translation
"""

import json
import os

import pytest

from volt.volt_storage.adapters.base import create_adapter
from volt.volt_storage.adapters.file_tree import FileTreeAdapter
from volt.volt_storage.config import StorageKind, StorageOptions
from volt.volt_storage.errors import (
    AdapterUnavailableError,
    ConfigurationError,
    SerializationError,
)


class TestFileTreeAdapter:
    """Tests for FileTreeAdapter."""

    @pytest.fixture
    async def adapter(self, data_dir):
        """Connected adapter rooted in a temp directory."""
        adapter = FileTreeAdapter(data_dir)
        await adapter.connect()
        yield adapter
        await adapter.close()

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, adapter):
        """A collection without a file loads as {}."""
        assert await adapter.load("users") == {}

    @pytest.mark.asyncio
    async def test_save_then_load(self, adapter):
        """load observes the last save."""
        await adapter.save("users", {"u1": {"id": "u1", "username": "alice"}})
        assert await adapter.load("users") == {"u1": {"id": "u1", "username": "alice"}}

        await adapter.save("users", {})
        assert await adapter.load("users") == {}

    @pytest.mark.asyncio
    async def test_filename_and_layout(self, adapter, data_dir):
        """Files use the fixed name map and two-space indentation."""
        await adapter.save("invites", {"ABC": {"code": "ABC"}})
        path = os.path.join(data_dir, "server-invites.json")
        with open(path, encoding="utf-8") as f:
            text = f.read()
        assert text == json.dumps({"ABC": {"code": "ABC"}}, indent=2)

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, adapter, data_dir):
        """The temp file is renamed into place."""
        await adapter.save("servers", {"s1": {"id": "s1"}})
        assert sorted(os.listdir(data_dir)) == ["servers.json"]

    @pytest.mark.asyncio
    async def test_legacy_array_file(self, adapter, data_dir):
        """Array files are read as keyed-maps by identity."""
        with open(os.path.join(data_dir, "server-invites.json"), "w") as f:
            json.dump([{"code": "X1", "uses": 1}], f)
        assert await adapter.load("invites") == {"X1": {"code": "X1", "uses": 1}}

    @pytest.mark.asyncio
    async def test_corrupt_file(self, adapter, data_dir):
        """Invalid JSON surfaces as SerializationError."""
        with open(os.path.join(data_dir, "users.json"), "w") as f:
            f.write("{oops")
        with pytest.raises(SerializationError):
            await adapter.load("users")

    @pytest.mark.asyncio
    async def test_unencodable_body_leaves_file(self, adapter, data_dir):
        """A failed encode does not touch the existing file."""
        await adapter.save("users", {"u1": {"id": "u1"}})
        with pytest.raises(SerializationError):
            await adapter.save("users", {"u1": {"id": object()}})
        assert await adapter.load("users") == {"u1": {"id": "u1"}}

    @pytest.mark.asyncio
    async def test_invalid_collection_name(self, adapter):
        """Identifiers that could escape the root are rejected."""
        with pytest.raises(ConfigurationError):
            await adapter.load("../etc")

    @pytest.mark.asyncio
    async def test_existing_collections(self, adapter):
        """Only collections with a file are reported."""
        await adapter.save("friends", {})
        await adapter.save("call_logs", {})
        assert adapter.existing_collections() == ["friends", "call_logs"]

    @pytest.mark.asyncio
    async def test_connect_creates_directory(self, data_dir):
        """connect() creates the data directory."""
        nested = os.path.join(data_dir, "a", "b")
        adapter = FileTreeAdapter(nested)
        await adapter.connect()
        assert os.path.isdir(nested)
        assert adapter.is_connected
        await adapter.ping()

    @pytest.mark.asyncio
    async def test_connect_failure(self, data_dir):
        """An unusable root raises AdapterUnavailableError."""
        blocker = os.path.join(data_dir, "file")
        with open(blocker, "w") as f:
            f.write("x")
        adapter = FileTreeAdapter(os.path.join(blocker, "data"))
        with pytest.raises(AdapterUnavailableError):
            await adapter.connect()

    def test_factory(self, data_dir):
        """create_adapter builds a file tree for file_tree and json."""
        adapter = create_adapter("json", StorageOptions(data_dir=data_dir))
        assert isinstance(adapter, FileTreeAdapter)
        assert adapter.kind is StorageKind.FILE_TREE
        assert adapter.blocking
