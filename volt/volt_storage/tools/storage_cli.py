"""
Storage CLI tool for Volt.

This tool drives the control operations from a shell:
- info: Show the active back-end and record counts
- migrate: Move all data to another back-end
- test-connection: Probe a back-end without switching to it
- distribute: Split storage_kv blobs into per-collection tables
- check-dependencies: Report which driver packages are installed
- serve: Run the admin HTTP API

Usage:
    volt-storage info
    volt-storage migrate --to postgres --option host=db --option password=secret
    volt-storage test-connection --type kv --options '{"host": "cache"}'
    volt-storage distribute

Invariants:
    - Exit code is 0 on success and 1 on any failure
    - Output is JSON on stdout, diagnostics on stderr
    - Passwords are never printed

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripting
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from typing import Any

from ..config import StorageConfig, VoltConfig
from ..errors import ConfigurationError, VoltStorageError
from ..main import serve
from ..migration import MigrationEngine
from ..router import StorageRouter

logger = logging.getLogger(__name__)


def parse_options(pairs: Sequence[str] | None, raw_json: str | None = None) -> dict[str, Any]:
    """Build an options block from ``key=value`` pairs and/or a JSON object.

    Values that parse as JSON (numbers, booleans) keep their type; anything
    else is taken as a string. Pairs override keys from the JSON object.

    Raises:
        ConfigurationError: If a pair has no '=' or the JSON is not an object
    """
    options: dict[str, Any] = {}
    if raw_json:
        try:
            loaded = json.loads(raw_json)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"--options is not valid JSON: {e}")
        if not isinstance(loaded, dict):
            raise ConfigurationError("--options must be a JSON object")
        options.update(loaded)
    for pair in pairs or ():
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ConfigurationError(f"Expected key=value, got: {pair}")
        try:
            options[key] = json.loads(value)
        except json.JSONDecodeError:
            options[key] = value
    return options


class StorageCLI:
    """CLI operations on a configured storage layer.

    Each command opens its own router, runs, and closes it again.

    Example:
        >>> cli = StorageCLI(VoltConfig.from_env())
        >>> info = await cli.info()
        >>> result = await cli.migrate("row_store", {"dbPath": "data/volt.db"})
    """

    def __init__(self, config: VoltConfig) -> None:
        self.config = config

    def _engine(self) -> MigrationEngine:
        router = StorageRouter(self.config.storage)
        return MigrationEngine(
            router,
            backup_root=self.config.backup_dir,
            config_path=self.config.config_file,
        )

    async def info(self) -> dict[str, Any]:
        engine = self._engine()
        await engine.router.initialize()
        try:
            return {
                "current": engine.router.storage_info(),
                "counts": await engine.router.collection_counts(),
            }
        finally:
            await engine.router.close()

    async def migrate(
        self,
        target: str,
        options: dict[str, Any],
        backup: bool = True,
        source_dir: str | None = None,
    ) -> dict[str, Any]:
        """Run a migration and return its result dictionary."""
        engine = self._engine()
        await engine.router.initialize()
        try:
            result = await engine.migrate(target, options, do_backup=backup, source_dir=source_dir)
            return result.to_dict()
        finally:
            await engine.router.close()

    async def test_connection(self, kind: str, options: dict[str, Any]) -> dict[str, Any]:
        # The active back-end is never opened for a connection test
        result = await self._engine().test_connection(kind, options)
        return result.to_dict()

    async def distribute(self) -> dict[str, Any]:
        engine = self._engine()
        await engine.router.initialize()
        try:
            report = await engine.distribute()
            return report.to_dict()
        finally:
            await engine.router.close()

    def check_dependencies(self) -> dict[str, Any]:
        return self._engine().check_dependencies()


def _load_config(config_file: str | None) -> VoltConfig:
    config = VoltConfig.from_env()
    if config_file:
        config.storage = StorageConfig.load_file(config_file)
        config.config_file = config_file
        config.validate()
    return config


def _print(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Volt storage administration tool")
    parser.add_argument("--config-file", help="Persisted storage config (overrides env)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("info", help="Show active storage and record counts")

    migrate_parser = subparsers.add_parser("migrate", help="Migrate all data to another back-end")
    migrate_parser.add_argument("--to", required=True, dest="target", help="Target storage kind")
    migrate_parser.add_argument(
        "--option", "-o", action="append", metavar="KEY=VALUE", help="Target option (repeatable)"
    )
    migrate_parser.add_argument("--options", help="Target options as a JSON object")
    migrate_parser.add_argument("--no-backup", action="store_true", help="Skip the JSON backup")
    migrate_parser.add_argument("--source-dir", help="Overlay JSON files from this directory")

    test_parser = subparsers.add_parser("test-connection", help="Probe a back-end")
    test_parser.add_argument("--type", required=True, dest="kind", help="Storage kind")
    test_parser.add_argument(
        "--option", "-o", action="append", metavar="KEY=VALUE", help="Option (repeatable)"
    )
    test_parser.add_argument("--options", help="Options as a JSON object")

    subparsers.add_parser("distribute", help="Split storage_kv blobs into tables")
    subparsers.add_parser("check-dependencies", help="Report installed driver packages")
    subparsers.add_parser("serve", help="Run the admin HTTP API")

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point for the storage tool."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        config = _load_config(args.config_file)
    except VoltStorageError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.command == "serve":
        sys.exit(serve(config))

    cli = StorageCLI(config)

    try:
        if args.command == "info":
            _print(asyncio.run(cli.info()))
            sys.exit(0)

        elif args.command == "migrate":
            options = parse_options(args.option, args.options)
            result = asyncio.run(
                cli.migrate(
                    args.target,
                    options,
                    backup=not args.no_backup,
                    source_dir=args.source_dir,
                )
            )
            _print(result)
            if not result["success"]:
                print(f"Migration failed: {result['error']}", file=sys.stderr)
            sys.exit(0 if result["success"] else 1)

        elif args.command == "test-connection":
            options = parse_options(args.option, args.options)
            result = asyncio.run(cli.test_connection(args.kind, options))
            _print(result)
            sys.exit(0 if result["success"] else 1)

        elif args.command == "distribute":
            report = asyncio.run(cli.distribute())
            _print(report)
            sys.exit(0 if report["success"] else 1)

        elif args.command == "check-dependencies":
            _print(cli.check_dependencies())
            sys.exit(0)

    except VoltStorageError as e:
        print(f"{args.command} failed: {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
