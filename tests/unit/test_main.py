"""
Unit tests for the process entry point.

Tests cover:
- Logging setup (JSON and text formats)
- Server start / stop lifecycle
"""

import logging

import json_log_formatter
import pytest

from volt.volt_storage.config import HttpConfig, ObservabilityConfig, StorageConfig, VoltConfig
from volt.volt_storage.main import VoltServer, setup_logging


@pytest.fixture
def restore_root_logger():
    """Put the root logger back after setup_logging() replaces it."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def config(data_dir):
    """File-tree config with the admin API on an ephemeral port."""
    return VoltConfig(
        storage=StorageConfig.for_kind("file_tree", {"dataDir": data_dir}),
        http=HttpConfig(host="127.0.0.1", port=0),
    )


class TestSetupLogging:
    """Tests for setup_logging()."""

    def test_json_format(self, restore_root_logger):
        """The json format installs the JSON formatter."""
        setup_logging(VoltConfig(observability=ObservabilityConfig(log_level="DEBUG", log_format="json")))

        assert restore_root_logger.level == logging.DEBUG
        assert isinstance(restore_root_logger.handlers[0].formatter, json_log_formatter.JSONFormatter)

    def test_text_format(self, restore_root_logger):
        """Any other format uses a plain formatter."""
        setup_logging(VoltConfig(observability=ObservabilityConfig(log_level="warning", log_format="text")))

        assert restore_root_logger.level == logging.WARNING
        formatter = restore_root_logger.handlers[0].formatter
        assert not isinstance(formatter, json_log_formatter.JSONFormatter)

    def test_unknown_level_defaults_to_info(self, restore_root_logger):
        """Unknown level names fall back to INFO."""
        setup_logging(VoltConfig(observability=ObservabilityConfig(log_level="chatty")))
        assert restore_root_logger.level == logging.INFO


class TestVoltServer:
    """Tests for VoltServer."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, config):
        """start() initializes storage and services; stop() releases them."""
        server = VoltServer(config)
        await server.start(wait=False)
        try:
            assert server.router.is_initialized
            assert server.services is not None
            await server.services.users.upsert("u1", {"username": "alice"})
        finally:
            await server.stop()

        assert not server.router.is_initialized

    @pytest.mark.asyncio
    async def test_stop_without_start(self, config):
        """stop() before start() is a no-op."""
        server = VoltServer(config)
        await server.stop()
        assert not server.router.is_initialized

    @pytest.mark.asyncio
    async def test_request_shutdown_releases_start(self, config):
        """start() returns once shutdown is requested."""
        server = VoltServer(config)
        server.request_shutdown()
        await server.start()
        assert server.router.is_initialized
        await server.stop()
