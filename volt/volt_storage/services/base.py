"""
Shared plumbing for the collection services.

Every service reads through the cache and writes with
``async with cache.edit(collection) as data:``, which holds the
collection lock for the whole read-modify-write. Services never touch an
adapter.

Invariants:
    - One read-modify-write per edit() block; no awaits on other
      collections while a lock is held unless the order is fixed
    - Timestamps are UTC ISO-8601 with a trailing Z
    - Generated ids are ``<prefix>_<millis>_<base36 random>``

How to change safely:
    - Keep id and timestamp formats stable; clients sort on them
    - Multi-collection edits must always lock in the same order
"""

from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any

from ..cache import CollectionCache
from ..errors import NotFoundError
from ..registry import get_collection

logger = logging.getLogger(__name__)

BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def now_iso() -> str:
    """Current UTC time as ``2024-01-01T00:00:00.000Z``."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str | None) -> datetime | None:
    """Parse a timestamp written by now_iso(); None when absent or malformed."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def random_base36(length: int) -> str:
    return "".join(secrets.choice(BASE36) for _ in range(length))


def new_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{random_base36(7)}"


def sort_key(record: dict[str, Any]) -> tuple[str, str]:
    """Stable ordering: createdAt ascending, id as tie-break."""
    return (str(record.get("createdAt") or ""), str(record.get("id") or ""))


class CollectionService:
    """Base for a service bound to one collection of the cache."""

    collection: str = ""

    def __init__(self, cache: CollectionCache) -> None:
        self.cache = cache
        get_collection(self.collection)

    async def _all(self) -> dict[str, Any]:
        return await self.cache.read(self.collection)

    def edit(self):
        return self.cache.edit(self.collection)


class KeyedService(CollectionService):
    """Generic CRUD over a ``{record_id: record}`` collection.

    Used directly for collections that need nothing beyond CRUD
    (bots, categories, e2e keys, pinned messages, ...).
    """

    def __init__(self, cache: CollectionCache, collection: str | None = None) -> None:
        if collection is not None:
            self.collection = collection
        super().__init__(cache)

    async def get(self, record_id: str) -> Any:
        return await self.cache.get(self.collection, record_id)

    async def list(self) -> dict[str, Any]:
        return await self._all()

    async def exists(self, record_id: str) -> bool:
        return await self.get(record_id) is not None

    async def put(self, record_id: str, record: Any) -> Any:
        async with self.edit() as data:
            data[record_id] = record
        return record

    async def update(self, record_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Shallow-merge changes into an existing record.

        Raises:
            NotFoundError: If the record does not exist
        """
        async with self.edit() as data:
            current = data.get(record_id)
            if not isinstance(current, dict):
                raise NotFoundError(
                    f"{self.collection} record not found: {record_id}",
                    collection=self.collection,
                    record_id=record_id,
                )
            current.update(changes)
        return current

    async def delete(self, record_id: str) -> bool:
        async with self.edit() as data:
            return data.pop(record_id, None) is not None


class SingletonService(CollectionService):
    """One logical record stored as the whole keyed-map.

    The wire form stays the keyed-map the collection has always had
    (``{"startedAt": ..., "count": ...}``); this service just reads and
    writes it as a single document.
    """

    def __init__(self, cache: CollectionCache, collection: str) -> None:
        self.collection = collection
        super().__init__(cache)

    async def get(self) -> dict[str, Any]:
        return await self._all()

    async def set(self, value: dict[str, Any]) -> dict[str, Any]:
        await self.cache.replace(self.collection, value)
        return value

    async def update(self, changes: dict[str, Any]) -> dict[str, Any]:
        async with self.edit() as data:
            data.update(changes)
            result = dict(data)
        return result
