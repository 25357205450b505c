"""
Path-based compatibility layer for legacy JSON file callers.

Older call sites read and write ``<dataDir>/<collection file>.json``
directly. When a non-file back-end is active, JsonCompat answers those
calls from the cache instead, so path-based and service-based callers see
the same data. Everything else is passed to the filesystem untouched.

Invariants:
    - A path is managed only if it is the canonical file of a registered
      collection and the active adapter is not the file tree
    - Managed reads return the cached collection as two-space JSON
    - Managed writes decode the payload and replace the collection
    - exists() is always true for managed paths

How to change safely:
    - New callers should use the services, not paths
    - Keep path resolution symlink-aware (Path.resolve)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .codec import coerce_keyed_map, decode, encode_pretty
from .config import StorageKind
from .errors import ConfigurationError
from .registry import Collection, collection_for_filename
from .router import StorageRouter

logger = logging.getLogger(__name__)


class JsonCompat:
    """Redirects legacy JSON file I/O into the active storage.

    Example:
        >>> compat = JsonCompat(router)
        >>> text = await compat.read_file("data/users.json", encoding="utf-8")
        >>> await compat.write_file("data/users.json", text)
    """

    def __init__(self, router: StorageRouter) -> None:
        self.router = router

    def _data_dir(self) -> Path:
        config = self.router.active_config or self.router.config
        return Path(config.options.data_dir).resolve()

    def collection_for_path(self, path: str | Path) -> Collection | None:
        """The collection whose canonical file is ``path``, if any."""
        target = Path(path)
        if target.suffix != ".json":
            return None
        resolved = target.resolve()
        if resolved.parent != self._data_dir():
            return None
        return collection_for_filename(resolved.name)

    def is_managed_path(self, path: str | Path) -> bool:
        if not self.router.is_initialized or self.router.kind is StorageKind.FILE_TREE:
            return False
        return self.collection_for_path(path) is not None

    async def load_by_path(self, path: str | Path, default: Any = None) -> Any:
        """Collection contents for a canonical path, or default if unmanaged or empty."""
        collection = self.collection_for_path(path)
        if collection is None:
            return default
        data = await self.router.cache.read(collection.name)
        if not data and default is not None:
            return default
        return data

    async def save_by_path(self, path: str | Path, value: Any) -> None:
        """Replace the collection behind a canonical path.

        Raises:
            ConfigurationError: If the path is not a collection file
            SerializationError: If value is not a keyed-map or legacy array
        """
        collection = self.collection_for_path(path)
        if collection is None:
            raise ConfigurationError(f"Not a managed data file: {path}")
        await self.router.cache.replace(collection.name, coerce_keyed_map(collection, value))

    async def read_file(self, path: str | Path, encoding: str | None = None) -> str | bytes:
        """Read a file; managed paths are answered from the cache.

        Returns:
            Text when an encoding is given, bytes otherwise
        """
        if not self.is_managed_path(path):
            target = Path(path)
            return target.read_text(encoding=encoding) if encoding else target.read_bytes()
        text = encode_pretty(await self.load_by_path(path, {}))
        return text if encoding else text.encode("utf-8")

    async def write_file(self, path: str | Path, data: str | bytes, encoding: str = "utf-8") -> None:
        """Write a file; managed paths replace the collection instead."""
        if not self.is_managed_path(path):
            target = Path(path)
            if isinstance(data, bytes):
                target.write_bytes(data)
            else:
                target.write_text(data, encoding=encoding)
            return
        raw = data.decode(encoding) if isinstance(data, bytes) else data
        value = decode(raw, source=str(path)) if raw.strip() else {}
        await self.save_by_path(path, value)
        logger.debug(f"Managed write redirected: {path}")

    def exists(self, path: str | Path) -> bool:
        if self.is_managed_path(path):
            return True
        return Path(path).exists()
