"""
Storage router: owns the active adapter and the cache.

The router builds the adapter named by the storage configuration, applies
the fallback policy once at startup, and hands a single long-lived cache
to the collection services. Services never see an adapter.

Invariants:
    - Exactly one adapter is active at a time; only the router holds it
    - Fallback to the file tree happens only in initialize(), and is logged
    - reinitialize() flushes pending writes, closes the old adapter, connects
      the new one and repopulates the cache before anyone reads again
    - Switches are serialised; readers never observe a half-switched router

How to change safely:
    - Keep create_adapter free of fallback logic; policy lives here
    - Any new way to swap adapters must go through _switch_lock
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any

from .adapters.base import StorageAdapter, create_adapter_from_config
from .cache import CollectionCache
from .codec import coerce_keyed_map, normalize_legacy_keys
from .config import StorageConfig, StorageKind, StorageOptions
from .distribution import DistributionReport, distribute
from .errors import AdapterUnavailableError, ConfigurationError
from .registry import collection_names, get_collection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FallbackPolicy:
    """Decides what to do when the configured back-end cannot be used.

    Attributes:
        enabled: Whether to fall back at all
        fallback_kind: Back-end to fall back to
    """

    enabled: bool = True
    fallback_kind: StorageKind = StorageKind.FILE_TREE

    def fallback_for(self, config: StorageConfig, error: AdapterUnavailableError) -> StorageConfig | None:
        """Configuration to try instead, or None to surface the error."""
        if not self.enabled or config.kind is self.fallback_kind:
            return None
        return replace(
            config,
            kind=self.fallback_kind,
            options=StorageOptions.from_dict(
                self.fallback_kind,
                {"dataDir": config.options.data_dir, "dbPath": config.options.db_path},
            ),
        )


class StorageRouter:
    """Single owner of the active storage adapter.

    Attributes:
        config: Storage configuration that was requested
        active_config: Configuration actually in use (differs after fallback)
        cache: Read-through cache shared with every service

    Example:
        >>> router = StorageRouter(StorageConfig.for_kind("row_store", {"dbPath": "data/volt.db"}))
        >>> await router.initialize()
        >>> services = create_services(router.cache)
        >>> await router.close()
    """

    def __init__(
        self,
        config: StorageConfig | None = None,
        fallback: FallbackPolicy | None = None,
    ) -> None:
        self.config = config or StorageConfig()
        self.active_config: StorageConfig | None = None
        self.fallback = fallback or FallbackPolicy()
        self.fallback_reason: str | None = None
        self._adapter: StorageAdapter | None = None
        self._cache: CollectionCache | None = None
        self._switch_lock = asyncio.Lock()

    @property
    def adapter(self) -> StorageAdapter:
        if self._adapter is None:
            raise ConfigurationError("Storage router is not initialized")
        return self._adapter

    @property
    def cache(self) -> CollectionCache:
        if self._cache is None:
            raise ConfigurationError("Storage router is not initialized")
        return self._cache

    @property
    def kind(self) -> StorageKind:
        return self.adapter.kind

    @property
    def fell_back(self) -> bool:
        return self.fallback_reason is not None

    @property
    def is_initialized(self) -> bool:
        return self._adapter is not None

    async def _build(self, config: StorageConfig) -> StorageAdapter:
        config.validate()
        adapter = create_adapter_from_config(config)
        await adapter.connect()
        return adapter

    async def _activate(self, adapter: StorageAdapter, config: StorageConfig) -> None:
        self._adapter = adapter
        self.active_config = config
        if self._cache is None:
            self._cache = CollectionCache(
                adapter, config.cache.write_mode, config.cache.call_timeout_seconds
            )
        else:
            self._cache.bind(adapter, config.cache.write_mode, config.cache.call_timeout_seconds)
        if config.auto_distribute and config.kind.is_sql:
            report = await distribute(adapter)
            if report.distributed:
                logger.info(f"Auto-distributed {len(report.distributed)} collections")
        await self._cache.preload(collection_names())

    async def initialize(self) -> None:
        """Connect the configured adapter, falling back once if it is unavailable.

        Raises:
            AdapterUnavailableError: If neither the configured nor the
                fallback back-end can be used
            ConfigurationError: If the configuration is invalid
        """
        async with self._switch_lock:
            if self._adapter is not None:
                return
            config = self.config
            try:
                adapter = await self._build(config)
            except AdapterUnavailableError as e:
                fallback = self.fallback.fallback_for(config, e)
                if fallback is None:
                    raise
                logger.warning(
                    f"Storage {config.kind.value} unavailable, falling back to "
                    f"{fallback.kind.value}: {e.message}",
                    extra={
                        "requested": config.kind.value,
                        "fallback": fallback.kind.value,
                        "driver_missing": e.driver_missing,
                    },
                )
                self.fallback_reason = e.message
                config = fallback
                adapter = await self._build(config)
            await self._activate(adapter, config)
            logger.info(
                f"Storage initialized: {adapter.kind.value}",
                extra={"kind": adapter.kind.value, "endpoint": config.options.describe(config.kind)},
            )

    async def reinitialize(
        self,
        config: StorageConfig | None = None,
        allow_fallback: bool = False,
    ) -> None:
        """Switch to a (possibly new) configuration.

        Flushes pending writes, closes the current adapter, connects the new
        one and repopulates the cache. Calling it with the current
        configuration simulates a process restart.

        Args:
            config: New configuration (default: the current one)
            allow_fallback: Apply the fallback policy if the target is unavailable

        Raises:
            AdapterUnavailableError: If the target cannot be used and
                fallback is not allowed. No adapter is active afterwards.
        """
        async with self._switch_lock:
            target = config or self.config
            if self._cache is not None:
                await self._cache.flush()
            await self._close_adapter()
            self.config = target
            self.fallback_reason = None
            try:
                adapter = await self._build(target)
            except AdapterUnavailableError as e:
                fallback = self.fallback.fallback_for(target, e) if allow_fallback else None
                if fallback is None:
                    raise
                logger.warning(f"Storage {target.kind.value} unavailable on reinit, falling back")
                self.fallback_reason = e.message
                target = fallback
                adapter = await self._build(target)
            await self._activate(adapter, target)
            logger.info(f"Storage reinitialized: {adapter.kind.value}", extra={"kind": adapter.kind.value})

    async def _close_adapter(self) -> None:
        adapter, self._adapter = self._adapter, None
        self.active_config = None
        if self._cache is not None:
            self._cache.invalidate()
        if adapter is not None:
            try:
                await adapter.close()
            except Exception as e:
                logger.error(f"Error closing {adapter.kind.value} storage: {e}", exc_info=True)

    async def close(self) -> None:
        """Flush pending writes and release the adapter."""
        async with self._switch_lock:
            if self._cache is not None:
                await self._cache.close()
            await self._close_adapter()

    async def export_all(self) -> dict[str, dict[str, Any]]:
        """Full snapshot of every known collection, read from the adapter.

        Pending write-through is flushed first so the adapter is current.
        """
        await self.cache.flush()
        names = list(dict.fromkeys(collection_names() + self.cache.loaded_collections()))
        snapshot: dict[str, dict[str, Any]] = {}
        for name in names:
            snapshot[name] = await self.adapter.load(name)
        return snapshot

    async def import_all(self, snapshot: dict[str, Any]) -> dict[str, int]:
        """Write a full snapshot into the active adapter.

        Each collection is coerced to a keyed-map, legacy keys are
        normalised, and the write is awaited regardless of write mode.

        Returns:
            Record count per imported collection

        Raises:
            AdapterUnavailableError / SerializationError: On any adapter failure
        """
        counts: dict[str, int] = {}
        for name, payload in snapshot.items():
            collection = get_collection(name)
            data = normalize_legacy_keys(coerce_keyed_map(collection, payload))
            await self.cache.replace(name, data, durable=True)
            counts[name] = len(data)
        logger.info(
            f"Imported {len(counts)} collections into {self.kind.value}",
            extra={"kind": self.kind.value, "records": sum(counts.values())},
        )
        return counts

    async def distribute(self) -> DistributionReport:
        """Run the distribution pass and reload the cache."""
        async with self._switch_lock:
            await self.cache.flush()
            report = await distribute(self.adapter)
            if report.distributed:
                await self.cache.reload(collection_names() + report.distributed)
            return report

    async def collection_counts(self) -> dict[str, int]:
        return {name: await self.cache.count(name) for name in collection_names()}

    def storage_info(self) -> dict[str, Any]:
        """Describe the active back-end (secrets redacted)."""
        active = self.active_config
        return {
            "type": active.kind.value if active else None,
            "requested": self.config.kind.value,
            "fellBack": self.fell_back,
            "fallbackReason": self.fallback_reason,
            "writeMode": self.config.cache.write_mode.value,
            "pendingWrites": self._cache.pending_writes if self._cache else 0,
            "options": active.options.to_dict(redact=True) if active else None,
        }
