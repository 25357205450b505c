"""
Volt storage layer - Main entry point.

This module runs the storage layer as a standalone admin process:
- Storage router (active adapter + read-through cache)
- Migration engine (migrate, testConnection, distribute)
- Admin HTTP API (aiohttp)

Usage:
    python -m volt.volt_storage.main
    volt-storage serve

Configuration is entirely via environment variables, optionally seeded by
STORAGE_CONFIG_FILE. See config.py for all available settings.

Invariants:
    - The router is initialized before the HTTP API accepts requests
    - Shutdown flushes pending write-through before closing the adapter

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence with an asynchronous adapter active
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter
from aiohttp import web

from .api import create_http_app
from .config import VoltConfig
from .errors import VoltStorageError
from .migration import MigrationEngine
from .router import StorageRouter
from .services import StorageServices, create_services

logger = logging.getLogger(__name__)


def setup_logging(config: VoltConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Storage-layer configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("pymongo").setLevel(logging.WARNING)


class VoltServer:
    """Storage-layer process orchestrator.

    Attributes:
        config: Storage-layer configuration
        router: Storage router owning the active adapter
        engine: Migration engine bound to the router
        services: Collection services bound to the router's cache

    Example:
        >>> server = VoltServer()
        >>> await server.start()
        >>> # Admin API is serving
        >>> await server.stop()
    """

    def __init__(self, config: VoltConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional configuration (loaded from env if not provided)
        """
        self.config = config or VoltConfig.from_env()
        self.router = StorageRouter(self.config.storage)
        self.engine = MigrationEngine(
            self.router,
            backup_root=self.config.backup_dir,
            config_path=self.config.config_file,
        )
        self.services: StorageServices | None = None
        self._runner: web.AppRunner | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()

    async def start(self, wait: bool = True) -> None:
        """Start the router and the admin API.

        Args:
            wait: Block until request_shutdown() is called
        """
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting Volt storage layer")
        self.config.log_config()

        try:
            await self.router.initialize()
            if self.router.fell_back:
                logger.warning(
                    f"Serving from fallback storage: {self.router.fallback_reason}",
                    extra={"requested": self.config.storage.kind.value},
                )
            self.services = create_services(self.router.cache, self.config.services)

            app = create_http_app(self.engine, self.config.http)
            self._runner = web.AppRunner(app)
            await self._runner.setup()
            site = web.TCPSite(self._runner, self.config.http.host, self.config.http.port)
            await site.start()

            self._running = True
            logger.info(
                f"Admin API running on http://{self.config.http.host}:{self.config.http.port}",
                extra={"storage_type": self.router.kind.value},
            )

            if wait:
                await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping Volt storage layer")

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        await self.router.close()

        self._running = False
        logger.info("Volt storage layer stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def serve(config: VoltConfig) -> int:
    """Run the server until SIGINT/SIGTERM. Returns a process exit code."""
    setup_logging(config)
    server = VoltServer(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    exit_code = 0
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    except VoltStorageError as e:
        logger.error(f"Storage startup failed: {e.message}")
        exit_code = 1
    finally:
        loop.run_until_complete(server.stop())
        loop.close()
    return exit_code


def main() -> None:
    """Main entry point."""
    try:
        config = VoltConfig.from_env()
    except VoltStorageError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    sys.exit(serve(config))


if __name__ == "__main__":
    main()
