"""
File-tree storage adapter.

One JSON file per collection under a root directory. The file body is the
whole collection encoded as a keyed-map with stable two-space indentation.

Invariants:
    - Files live at <data_dir>/<collection filename>, never outside the root
    - Writes are crash-atomic: temp file in the same directory, fsync, rename
    - A missing file loads as an empty collection
    - Legacy array files are read as keyed-maps by record identity

How to change safely:
    - Keep the filename map in registry.py stable, legacy callers depend on it
    - Keep the temp file in the target directory so the rename stays atomic
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from ..codec import coerce_keyed_map, decode, encode_pretty
from ..config import StorageKind
from ..errors import AdapterUnavailableError, ConfigurationError
from ..registry import COLLECTIONS, get_collection

logger = logging.getLogger(__name__)


class FileTreeAdapter:
    """Stores each collection as one pretty-printed JSON file.

    The adapter is blocking: every call completes without yielding, which
    also serialises concurrent saves on the same collection.

    Example:
        >>> adapter = FileTreeAdapter("/var/lib/volt/data")
        >>> await adapter.connect()
        >>> await adapter.save("friend_requests", {"incoming": {}, "outgoing": {}})
        >>> # written to /var/lib/volt/data/friend-requests.json
    """

    def __init__(self, data_dir: str | Path) -> None:
        """Initialize the adapter.

        Args:
            data_dir: Root directory, created on connect if missing
        """
        self.data_dir = Path(data_dir)
        self._connected = False

    @property
    def kind(self) -> StorageKind:
        return StorageKind.FILE_TREE

    @property
    def blocking(self) -> bool:
        return True

    @property
    def is_connected(self) -> bool:
        return self._connected

    def path_for(self, collection: str) -> Path:
        """Get the file path for a collection.

        Raises:
            ConfigurationError: If the path would leave the data root
        """
        path = self.data_dir / get_collection(collection).filename
        root = self.data_dir.resolve()
        if root not in path.resolve().parents:
            raise ConfigurationError(
                f"Path outside data root: {path}", details={"collection": collection}
            )
        return path

    async def connect(self) -> None:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise AdapterUnavailableError(
                f"Cannot create data directory {self.data_dir}: {e}",
                kind=self.kind.value,
            )
        self._connected = True
        logger.info(f"File tree storage ready at {self.data_dir}")

    async def ping(self) -> None:
        if not self.data_dir.is_dir() or not os.access(self.data_dir, os.W_OK):
            raise AdapterUnavailableError(
                f"Data directory is not writable: {self.data_dir}",
                kind=self.kind.value,
            )

    async def load(self, collection: str) -> dict[str, Any]:
        path = self.path_for(collection)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise AdapterUnavailableError(f"Cannot read {path}: {e}", kind=self.kind.value)
        return coerce_keyed_map(get_collection(collection), decode(text, source=str(path)))

    async def save(self, collection: str, data: dict[str, Any]) -> None:
        path = self.path_for(collection)
        payload = encode_pretty(data)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise AdapterUnavailableError(f"Cannot write {path}: {e}", kind=self.kind.value)

    async def close(self) -> None:
        self._connected = False

    def existing_collections(self) -> list[str]:
        """Registered collections that currently have a file on disk."""
        return [c.name for c in COLLECTIONS if (self.data_dir / c.filename).exists()]
