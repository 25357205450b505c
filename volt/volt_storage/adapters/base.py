"""
Base protocol and factory for storage adapters.

This module defines the StorageAdapter protocol that all back-ends must
implement, plus the factory that builds one from a kind and an options
block.

Invariants:
    - load(T) after save(T, M) observes M
    - save(T, M) atomically replaces the whole collection; save(T, {}) empties it
    - Concurrent saves on the same collection are serialised by the adapter
    - create_adapter never falls back; the router owns that decision

How to change safely:
    - Protocol changes require updating all implementations
    - New back-ends need a StorageKind, ENGINE_DEFAULTS entry and DRIVER_PACKAGES entry
    - Keep driver imports optional so the core installs without them
"""

from __future__ import annotations

import importlib.util
import logging
from abc import abstractmethod
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..config import StorageKind, StorageOptions
from ..errors import AdapterUnavailableError, ConfigurationError

if TYPE_CHECKING:
    from ..config import StorageConfig

logger = logging.getLogger(__name__)


# kind -> (import name, pip extra)
DRIVER_PACKAGES: dict[StorageKind, tuple[str, str] | None] = {
    StorageKind.FILE_TREE: None,
    StorageKind.ROW_STORE: None,
    StorageKind.MYSQL: ("aiomysql", "mysql"),
    StorageKind.MARIADB: ("aiomysql", "mysql"),
    StorageKind.POSTGRES: ("asyncpg", "postgres"),
    StorageKind.COCKROACH: ("asyncpg", "postgres"),
    StorageKind.SQL_SERVER: ("aioodbc", "sqlserver"),
    StorageKind.DOCUMENT: ("pymongo", "document"),
    StorageKind.KV: ("redis", "kv"),
}


def driver_available(kind: StorageKind) -> bool:
    """Whether the driver module for a kind can be imported."""
    package = DRIVER_PACKAGES.get(kind)
    if package is None:
        return True
    return importlib.util.find_spec(package[0]) is not None


def missing_driver(kind: StorageKind) -> AdapterUnavailableError:
    """Build the error raised when a kind's driver is not installed."""
    module, extra = DRIVER_PACKAGES[kind]  # type: ignore[misc]
    return AdapterUnavailableError(
        f"{module} is required for the {kind.value} back-end. "
        f"Install with: pip install 'volt-storage[{extra}]'",
        kind=kind.value,
        driver_missing=True,
    )


@runtime_checkable
class StorageAdapter(Protocol):
    """Protocol for storage back-ends.

    Every adapter stores each collection as a keyed-map
    ``{record_id: record}``. Blocking adapters (file tree, embedded row
    store) complete every call without yielding to the event loop.

    Example:
        >>> adapter = create_adapter(StorageKind.FILE_TREE, StorageOptions(data_dir="data"))
        >>> await adapter.connect()
        >>> await adapter.save("users", {"u_1": {"id": "u_1"}})
        >>> await adapter.load("users")
        {'u_1': {'id': 'u_1'}}
    """

    @property
    @abstractmethod
    def kind(self) -> StorageKind:
        """Adapter tag."""
        ...

    @property
    @abstractmethod
    def blocking(self) -> bool:
        """Whether calls complete synchronously in the caller."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether connect() succeeded and close() has not been called."""
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Open files, pools or clients and bootstrap schema.

        Raises:
            AdapterUnavailableError: If the back-end cannot be used
        """
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Cheap liveness check.

        Raises:
            AdapterUnavailableError: If the back-end does not answer
        """
        ...

    @abstractmethod
    async def load(self, collection: str) -> dict[str, Any]:
        """Return the full contents of a collection (empty map if absent).

        Raises:
            AdapterUnavailableError: If the back-end fails
            SerializationError: If stored data is not valid JSON
        """
        ...

    @abstractmethod
    async def save(self, collection: str, data: dict[str, Any]) -> None:
        """Atomically replace the contents of a collection.

        Raises:
            AdapterUnavailableError: If the back-end fails
            SerializationError: If a body is not encodable
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release adapter resources."""
        ...


def create_adapter(kind: StorageKind | str, options: StorageOptions | None = None) -> StorageAdapter:
    """Factory function to create an adapter.

    The adapter is constructed but not connected.

    Args:
        kind: Back-end kind
        options: Options block (engine defaults if not provided)

    Returns:
        Appropriate StorageAdapter implementation

    Raises:
        ConfigurationError: If the kind is unknown
        AdapterUnavailableError: If the driver is not installed
    """
    from .document import DocumentAdapter
    from .file_tree import FileTreeAdapter
    from .kv import KeyValueAdapter
    from .relational import create_relational_adapter, create_row_store_adapter

    kind = StorageKind.parse(kind)
    options = options or StorageOptions.from_dict(kind)

    if kind is StorageKind.FILE_TREE:
        return FileTreeAdapter(options.data_dir)
    elif kind is StorageKind.ROW_STORE:
        return create_row_store_adapter(options)
    elif kind.is_relational:
        return create_relational_adapter(kind, options)
    elif kind is StorageKind.DOCUMENT:
        return DocumentAdapter(options)
    elif kind is StorageKind.KV:
        return KeyValueAdapter(options)
    else:
        raise ConfigurationError(f"Unsupported storage type: {kind.value}")


def create_adapter_from_config(config: "StorageConfig") -> StorageAdapter:
    """Build the adapter named by a storage configuration."""
    return create_adapter(config.kind, config.options)
