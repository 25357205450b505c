"""
Storage adapters for the Volt storage layer.

This package provides a pluggable back-end interface supporting:
- File tree (one JSON file per collection)
- Embedded row store (SQLite)
- Relational engines (MySQL, MariaDB, PostgreSQL, CockroachDB, SQL Server)
- Document store (MongoDB-compatible)
- Key-value store (Redis-compatible)

Invariants:
    - Every adapter loads and saves whole collections as keyed-maps
    - Saves are atomic per collection
    - Missing drivers surface as AdapterUnavailableError(driver_missing=True)

How to change safely:
    - New back-ends must implement the StorageAdapter protocol
    - Run the adapter round-trip tests against every back-end you touch
"""

from .base import (
    DRIVER_PACKAGES,
    StorageAdapter,
    create_adapter,
    create_adapter_from_config,
    driver_available,
)
from .dialects import GENERIC_TABLE, SqlDialect, dialect_for
from .document import DocumentAdapter
from .file_tree import FileTreeAdapter
from .kv import KeyValueAdapter
from .relational import SqlAdapter, create_relational_adapter, create_row_store_adapter

__all__ = [
    # Protocol and factory
    "StorageAdapter",
    "create_adapter",
    "create_adapter_from_config",
    "driver_available",
    "DRIVER_PACKAGES",
    # SQL internals
    "GENERIC_TABLE",
    "SqlDialect",
    "dialect_for",
    # Implementations
    "FileTreeAdapter",
    "SqlAdapter",
    "create_row_store_adapter",
    "create_relational_adapter",
    "DocumentAdapter",
    "KeyValueAdapter",
]
