"""
Read-through cache over the active storage adapter.

The cache holds an in-process snapshot of every collection. Reads are
served from the snapshot; writes replace the snapshot and write through
to the adapter.

Write-through contract:
    - Blocking adapters (file tree, row store) and DURABLE mode: the
      adapter save completes before the snapshot is published and before
      the caller resumes. A failed save leaves the snapshot untouched and
      propagates.
    - EAGER mode on asynchronous adapters: the snapshot is published
      first and the save runs as a background task, chained behind the
      previous save of the same collection. Failures are logged only;
      flush() waits for the backlog.

Invariants:
    - All writes to one collection are serialised by a per-collection lock
    - Published snapshots are never mutated; edits work on a deep copy
    - Readers see either the pre- or post-write snapshot, never a torn one
    - Reads return copies, so callers cannot corrupt the snapshot

How to change safely:
    - Never yield to the loop between reading the snapshot and publishing
      the edited copy outside the collection lock
    - Keep background saves chained per collection to preserve order
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Iterable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from .adapters.base import StorageAdapter
from .config import WriteMode
from .errors import AdapterTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CollectionCache:
    """In-process snapshot of all collections with write-through.

    Example:
        >>> cache = CollectionCache(adapter)
        >>> await cache.preload(collection_names())
        >>> async with cache.edit("invites") as invites:
        ...     invites["ABCD1234"]["uses"] += 1
        >>> (await cache.read("invites"))["ABCD1234"]["uses"]
        1
    """

    def __init__(
        self,
        adapter: StorageAdapter,
        write_mode: WriteMode = WriteMode.EAGER,
        call_timeout: float | None = None,
    ) -> None:
        """Initialize the cache.

        Args:
            adapter: Adapter to read from and write through to
            write_mode: EAGER or DURABLE write-through for async adapters
            call_timeout: Deadline in seconds for each adapter call
        """
        self._adapter = adapter
        self.write_mode = write_mode
        self.call_timeout = call_timeout
        self._snapshots: dict[str, dict[str, Any]] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._pending: dict[str, asyncio.Task] = {}
        self.failed_writes = 0

    @property
    def adapter(self) -> StorageAdapter:
        return self._adapter

    @property
    def durable(self) -> bool:
        """Whether writes complete only after the adapter save."""
        return self._adapter.blocking or self.write_mode is WriteMode.DURABLE

    def bind(
        self,
        adapter: StorageAdapter,
        write_mode: WriteMode | None = None,
        call_timeout: float | None = None,
    ) -> None:
        """Point the cache at a new adapter and drop every snapshot.

        Callers must flush() first; pending saves still target the old adapter.
        """
        self._adapter = adapter
        if write_mode is not None:
            self.write_mode = write_mode
        self.call_timeout = call_timeout
        self.invalidate()

    async def _call(self, awaitable: Awaitable[T]) -> T:
        if self.call_timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, self.call_timeout)
        except asyncio.TimeoutError:
            raise AdapterTimeoutError(
                f"{self._adapter.kind.value} call exceeded {self.call_timeout}s",
                kind=self._adapter.kind.value,
            )

    async def _ensure_loaded(self, collection: str) -> dict[str, Any]:
        snapshot = self._snapshots.get(collection)
        if snapshot is None:
            snapshot = await self._call(self._adapter.load(collection))
            self._snapshots[collection] = snapshot
        return snapshot

    async def preload(self, collections: Iterable[str]) -> dict[str, int]:
        """Load every named collection into the snapshot.

        Returns:
            Record count per collection
        """
        counts: dict[str, int] = {}
        for collection in collections:
            async with self._locks[collection]:
                self._snapshots.pop(collection, None)
                counts[collection] = len(await self._ensure_loaded(collection))
        logger.info(
            f"Cache preloaded {len(counts)} collections",
            extra={"kind": self._adapter.kind.value, "records": sum(counts.values())},
        )
        return counts

    async def _snapshot(self, collection: str) -> dict[str, Any]:
        snapshot = self._snapshots.get(collection)
        if snapshot is not None:
            return snapshot
        async with self._locks[collection]:
            return await self._ensure_loaded(collection)

    async def read(self, collection: str) -> dict[str, Any]:
        """Copy of a whole collection."""
        return copy.deepcopy(await self._snapshot(collection))

    async def get(self, collection: str, record_id: str, default: Any = None) -> Any:
        """Copy of one record, or default if absent."""
        snapshot = await self._snapshot(collection)
        if record_id not in snapshot:
            return default
        return copy.deepcopy(snapshot[record_id])

    async def count(self, collection: str) -> int:
        return len(await self._snapshot(collection))

    @asynccontextmanager
    async def edit(self, collection: str) -> AsyncIterator[dict[str, Any]]:
        """Read-modify-write one collection under its lock.

        Yields a mutable copy of the collection. When the block exits
        normally the copy is written through and published; when it raises,
        nothing changes.
        """
        async with self._locks[collection]:
            draft = copy.deepcopy(await self._ensure_loaded(collection))
            yield draft
            # Callers may keep references into the draft
            await self._commit(collection, copy.deepcopy(draft))

    async def replace(self, collection: str, data: dict[str, Any], durable: bool | None = None) -> None:
        """Replace a whole collection.

        Args:
            collection: Collection identifier
            data: New contents
            durable: Force (True) or skip (False) waiting for the adapter;
                None follows the cache's write mode
        """
        async with self._locks[collection]:
            await self._commit(collection, copy.deepcopy(data), durable)

    async def _commit(self, collection: str, data: dict[str, Any], durable: bool | None = None) -> None:
        if durable is None:
            durable = self.durable
        if durable:
            await self.flush(collection)
            await self._call(self._adapter.save(collection, data))
            self._snapshots[collection] = data
        else:
            self._snapshots[collection] = data
            self._schedule(collection, data)

    def _schedule(self, collection: str, data: dict[str, Any]) -> None:
        previous = self._pending.get(collection)
        task = asyncio.create_task(self._write_behind(self._adapter, collection, data, previous))
        self._pending[collection] = task

        def _done(finished: asyncio.Task) -> None:
            if self._pending.get(collection) is finished:
                del self._pending[collection]

        task.add_done_callback(_done)

    async def _write_behind(
        self,
        adapter: StorageAdapter,
        collection: str,
        data: dict[str, Any],
        previous: asyncio.Task | None,
    ) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        try:
            await self._call(adapter.save(collection, data))
        except Exception as e:
            self.failed_writes += 1
            logger.error(
                f"Write-through of {collection} failed: {e}",
                exc_info=True,
                extra={"collection": collection, "kind": adapter.kind.value},
            )

    async def flush(self, collection: str | None = None) -> None:
        """Wait until pending background saves have finished."""
        if collection is not None:
            task = self._pending.get(collection)
            tasks = [task] if task is not None else []
        else:
            tasks = list(self._pending.values())
        if tasks:
            await asyncio.wait(tasks)

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    async def reload(self, collections: Iterable[str] | None = None) -> dict[str, int]:
        """Flush, then re-read collections from the adapter."""
        await self.flush()
        if collections is None:
            collections = list(self._snapshots)
        return await self.preload(collections)

    def invalidate(self) -> None:
        """Drop every snapshot; the next read loads from the adapter."""
        self._snapshots.clear()

    def loaded_collections(self) -> list[str]:
        return list(self._snapshots)

    async def close(self) -> None:
        await self.flush()
        self.invalidate()
