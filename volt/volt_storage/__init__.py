"""
Volt Storage - Polymorphic persistence layer for the Volt chat server.

This package lets the server keep its data in any of nine back-ends while
collaborators see one collection API:
- A fixed registry of named collections (users, servers, messages, ...)
- Adapters for a JSON file tree, an embedded SQL row store, remote SQL
  engines, a document store and a key-value store
- A router that owns the active adapter and a read-through cache
- Typed services on top of the cache
- A migration engine that moves all data between back-ends with rollback

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │  Services   │────▶│    Cache    │────▶│     Router      │
    │ JsonCompat  │     │ (snapshot)  │     │ (+ fallback)    │
    └─────────────┘     └─────────────┘     └────────┬────────┘
                                                     │
                        ┌────────────────────────────┼──────────────┐
                        ▼                            ▼              ▼
                   ┌─────────┐                 ┌──────────┐   ┌─────────┐
                   │FileTree │                 │ SQL / Row│   │ Doc / KV│
                   └─────────┘                 └──────────┘   └─────────┘

Invariants:
    - Exactly one adapter is active at a time, owned by the router
    - A collection's shape survives every adapter and every migration
    - Reads after writes in the same process observe the write

How to change safely:
    - New collections go into registry.py first
    - New back-ends implement the StorageAdapter protocol in adapters/

Version: see _version.py.
"""

from ._version import __version__
from .cache import CollectionCache
from .config import StorageConfig, StorageKind, VoltConfig, WriteMode
from .errors import VoltStorageError
from .json_compat import JsonCompat
from .migration import MigrationEngine, MigrationResult
from .router import FallbackPolicy, StorageRouter
from .services import StorageServices, create_services

__all__ = [
    "__version__",
    "CollectionCache",
    "FallbackPolicy",
    "JsonCompat",
    "MigrationEngine",
    "MigrationResult",
    "StorageConfig",
    "StorageKind",
    "StorageRouter",
    "StorageServices",
    "VoltConfig",
    "VoltStorageError",
    "WriteMode",
    "create_services",
]
