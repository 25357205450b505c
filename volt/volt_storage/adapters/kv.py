"""
Key-value store adapter.

Records are stored as individual string entries keyed
``<prefix><collection>:<record_id>`` with the JSON-encoded body as value.
The prefix namespaces one deployment inside a shared server.

Invariants:
    - load enumerates keys with SCAN, never KEYS
    - save runs as one MULTI/EXEC pipeline: stale keys deleted, every entry set
    - Deleting an absent key is a no-op
    - Saves on the same collection are serialised by a per-collection lock

How to change safely:
    - Changing the key layout orphans existing data; migrate instead
    - Collection identifiers never contain ':' so prefix matching stays exact
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import defaultdict
from typing import Any

from ..codec import decode, encode
from ..config import StorageKind, StorageOptions
from ..errors import AdapterUnavailableError, SerializationError
from ..registry import validate_identifier
from .base import missing_driver

logger = logging.getLogger(__name__)

# Try to import the asyncio redis client
try:
    import redis.asyncio as aioredis
    from redis.exceptions import RedisError

    REDIS_AVAILABLE = True
    DRIVER_ERRORS: tuple[type[BaseException], ...] = (RedisError, OSError)
except ImportError:
    REDIS_AVAILABLE = False
    aioredis = None
    DRIVER_ERRORS = (OSError,)

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


class KeyValueAdapter:
    """Key-value implementation of StorageAdapter.

    Example:
        >>> adapter = KeyValueAdapter(StorageOptions(key_prefix="volt:"))
        >>> await adapter.connect()
        >>> await adapter.save("users", {"u_1": {"username": "alice"}})
        >>> # SET volt:users:u_1 '{"username":"alice"}'
    """

    SCAN_COUNT = 500

    def __init__(self, options: StorageOptions, client: Any = None) -> None:
        """Initialize the adapter.

        Args:
            options: Connection options
            client: Pre-built client (tests inject a fake here)

        Raises:
            AdapterUnavailableError: If redis is not installed and no client
                is supplied
        """
        if client is None and not REDIS_AVAILABLE:
            raise missing_driver(StorageKind.KV)
        self.options = options
        self.prefix = options.key_prefix or ""
        self._client = client
        self._connected = False
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def kind(self) -> StorageKind:
        return StorageKind.KV

    @property
    def blocking(self) -> bool:
        return False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def key_for(self, collection: str, record_id: str) -> str:
        return f"{self.prefix}{collection}:{record_id}"

    def _pattern(self, collection: str) -> str:
        return _GLOB_SPECIAL.sub(r"\\\1", f"{self.prefix}{collection}:") + "*"

    def _build_client(self) -> Any:
        opts = self.options
        if opts.connection_string:
            return aioredis.from_url(opts.connection_string, decode_responses=True)
        return aioredis.Redis(
            host=opts.host,
            port=opts.port or 6379,
            db=opts.db,
            password=opts.password,
            max_connections=opts.connection_limit,
            decode_responses=True,
        )

    async def connect(self) -> None:
        """Connect and verify the server answers.

        Raises:
            AdapterUnavailableError: If the server is unreachable
        """
        if self._connected:
            return
        try:
            if self._client is None:
                self._client = self._build_client()
            await self._client.ping()
        except DRIVER_ERRORS as e:
            raise AdapterUnavailableError(f"kv connect failed: {e}", kind=self.kind.value)
        self._connected = True
        logger.info("Connected to kv storage", extra={"kind": self.kind.value, "prefix": self.prefix})

    async def ping(self) -> None:
        try:
            await self._client.ping()
        except DRIVER_ERRORS as e:
            raise AdapterUnavailableError(f"kv ping failed: {e}", kind=self.kind.value)

    async def _keys(self, collection: str) -> list[str]:
        return [
            key
            async for key in self._client.scan_iter(
                match=self._pattern(collection), count=self.SCAN_COUNT
            )
        ]

    async def load(self, collection: str) -> dict[str, Any]:
        validate_identifier(collection)
        head = f"{self.prefix}{collection}:"
        try:
            keys = await self._keys(collection)
            values = await self._client.mget(keys) if keys else []
        except DRIVER_ERRORS as e:
            raise AdapterUnavailableError(f"kv load {collection} failed: {e}", kind=self.kind.value)
        result: dict[str, Any] = {}
        for key, value in zip(keys, values):
            # Key may have been deleted between SCAN and MGET
            if value is None:
                continue
            result[key[len(head):]] = decode(value, source=key)
        return result

    async def save(self, collection: str, data: dict[str, Any]) -> None:
        validate_identifier(collection)
        if not isinstance(data, dict):
            raise SerializationError(f"Collection '{collection}' must be saved as a keyed-map")
        entries = {self.key_for(collection, str(k)): encode(v) for k, v in data.items()}
        async with self._locks[collection]:
            try:
                stale = [key for key in await self._keys(collection) if key not in entries]
                async with self._client.pipeline(transaction=True) as pipe:
                    if stale:
                        pipe.delete(*stale)
                    for key, value in entries.items():
                        pipe.set(key, value)
                    await pipe.execute()
            except DRIVER_ERRORS as e:
                raise AdapterUnavailableError(
                    f"kv save {collection} failed: {e}", kind=self.kind.value
                )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._client = None
        self._connected = False
