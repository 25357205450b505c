"""
SQL storage adapter shared by the embedded row store and the relational family.

Two representations coexist in every SQL back-end:

    storage_kv:
        - id TEXT PRIMARY KEY      (collection identifier)
        - data TEXT                (whole collection, JSON keyed-map)

    <collection> (distributed):
        - id TEXT PRIMARY KEY      (record identity)
        - data TEXT                (record body, JSON)

load(T) reads the distributed table when it exists and falls back to the
storage_kv row otherwise. save(T) writes wherever load(T) reads from.

Invariants:
    - Every multi-row write runs inside one transaction
    - save on a distributed table deletes rows absent from the new map
    - Saves on the same collection are serialised by a per-collection lock
    - Bodies are encoded before any row is written, so encoding errors
      never leave a half-written collection
    - Distribution reads the storage_kv row under the same lock and
      transaction that moves it

How to change safely:
    - Engine differences belong in dialects.py, connection handling in drivers.py
    - Distribution is one-way; never move rows back into storage_kv
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any

from ..codec import coerce_keyed_map, decode, encode
from ..config import StorageKind, StorageOptions
from ..errors import AdapterUnavailableError, ConfigurationError, SerializationError
from ..registry import get_collection, validate_identifier
from .base import missing_driver
from .dialects import GENERIC_TABLE, SqlDialect, dialect_for
from .drivers import AiomysqlDriver, AioodbcDriver, AsyncpgDriver, SqlDriver, SqliteDriver

logger = logging.getLogger(__name__)


class SqlAdapter:
    """Storage adapter over any SQL engine.

    Attributes:
        dialect: Statement renderer for the engine
        driver: Connection / pool wrapper for the engine

    Example:
        >>> adapter = create_row_store_adapter(StorageOptions(db_path="data/volt.db"))
        >>> await adapter.connect()
        >>> await adapter.save("users", {"u_1": {"id": "u_1", "username": "alice"}})
        >>> await adapter.load("users")
        {'u_1': {'id': 'u_1', 'username': 'alice'}}
    """

    def __init__(
        self,
        kind: StorageKind,
        dialect: SqlDialect,
        driver: SqlDriver,
        blocking: bool = False,
    ) -> None:
        self._kind = kind
        self._blocking = blocking
        self.dialect = dialect
        self.driver = driver
        self._connected = False
        self._distributed: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def kind(self) -> StorageKind:
        return self._kind

    @property
    def blocking(self) -> bool:
        return self._blocking

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _unavailable(self, action: str, error: BaseException) -> AdapterUnavailableError:
        logger.error(
            f"{self._kind.value} {action} failed: {error}",
            extra={"kind": self._kind.value, "action": action},
        )
        return AdapterUnavailableError(
            f"{self._kind.value} {action} failed: {error}", kind=self._kind.value
        )

    async def connect(self) -> None:
        """Open the pool and make sure storage_kv exists.

        Raises:
            AdapterUnavailableError: If the engine is unreachable or refuses
                the bootstrap schema
        """
        if self._connected:
            return
        try:
            await self.driver.open()
            async with self.driver.transaction() as tx:
                await tx.execute(self.dialect.create_table(GENERIC_TABLE))
        except self.driver.errors as e:
            await self._close_quietly()
            raise self._unavailable("connect", e)
        self._connected = True
        logger.info(f"Connected to {self._kind.value} storage", extra={"kind": self._kind.value})

    async def ping(self) -> None:
        try:
            await self.driver.fetch_all(self.dialect.ping())
        except self.driver.errors as e:
            raise self._unavailable("ping", e)

    async def close(self) -> None:
        await self.driver.close()
        self._connected = False
        self._distributed.clear()

    async def _close_quietly(self) -> None:
        try:
            await self.driver.close()
        except self.driver.errors as e:
            logger.warning(f"Error closing {self._kind.value} pool: {e}")

    async def table_exists(self, table: str) -> bool:
        """Whether a dedicated table exists for a collection."""
        if table in self._distributed:
            return True
        try:
            rows = await self.driver.fetch_all(self.dialect.table_exists(), (table,))
        except self.driver.errors as e:
            raise self._unavailable("catalog lookup", e)
        if rows:
            self._distributed.add(table)
        return bool(rows)

    async def load(self, collection: str) -> dict[str, Any]:
        validate_identifier(collection)
        if collection != GENERIC_TABLE and await self.table_exists(collection):
            try:
                rows = await self.driver.fetch_all(self.dialect.select_all(collection))
            except self.driver.errors as e:
                raise self._unavailable(f"load {collection}", e)
            return {
                str(record_id): decode(data, source=f"{collection}/{record_id}")
                for record_id, data in rows
            }

        try:
            rows = await self.driver.fetch_all(self.dialect.select_one(GENERIC_TABLE), (collection,))
        except self.driver.errors as e:
            raise self._unavailable(f"load {collection}", e)
        if not rows:
            return {}
        return coerce_keyed_map(
            get_collection(collection), decode(rows[0][0], source=f"{GENERIC_TABLE}/{collection}")
        )

    async def save(self, collection: str, data: dict[str, Any]) -> None:
        validate_identifier(collection)
        if not isinstance(data, dict):
            raise SerializationError(f"Collection '{collection}' must be saved as a keyed-map")
        async with self._locks[collection]:
            if await self.table_exists(collection):
                encoded = [(str(record_id), encode(body)) for record_id, body in data.items()]
                await self._save_rows(collection, encoded)
            else:
                await self._save_blob(collection, encode(data))

    async def _save_rows(self, table: str, rows: list[tuple[str, str]]) -> None:
        keep = {record_id for record_id, _ in rows}
        try:
            async with self.driver.transaction() as tx:
                existing = await tx.fetch_all(self.dialect.select_ids(table))
                for record_id, data in rows:
                    await tx.execute(self.dialect.upsert(table), (record_id, data))
                for (record_id,) in existing:
                    if str(record_id) not in keep:
                        await tx.execute(self.dialect.delete_row(table), (record_id,))
        except self.driver.errors as e:
            raise self._unavailable(f"save {table}", e)

    async def _save_blob(self, collection: str, blob: str) -> None:
        try:
            async with self.driver.transaction() as tx:
                await tx.execute(self.dialect.upsert(GENERIC_TABLE), (collection, blob))
        except self.driver.errors as e:
            raise self._unavailable(f"save {collection}", e)

    # -------------------------------------------------------------------------
    # Distribution primitives (see distribution.py)
    # -------------------------------------------------------------------------

    async def generic_collections(self) -> list[str]:
        """Identifiers of the collections still held in storage_kv."""
        try:
            rows = await self.driver.fetch_all(self.dialect.select_ids(GENERIC_TABLE))
        except self.driver.errors as e:
            raise self._unavailable("read storage_kv", e)
        return [str(name) for (name,) in rows]

    async def distribute_collection(self, collection: str) -> int | None:
        """Move one collection from storage_kv into its dedicated table.

        The storage_kv row is read, copied and deleted under the collection
        lock inside one transaction, so a save racing the pass is either
        fully before or fully after the move. If the dedicated table already
        holds rows, they are kept and overwritten id by id.

        Returns:
            Number of records written, or None if the storage_kv row is gone

        Raises:
            SerializationError: If the blob is not a keyed-map or array
            AdapterUnavailableError: If the engine fails
        """
        validate_identifier(collection)
        async with self._locks[collection]:
            try:
                async with self.driver.transaction() as tx:
                    found = await tx.fetch_all(self.dialect.select_one(GENERIC_TABLE), (collection,))
                    if not found:
                        return None
                    data = coerce_keyed_map(
                        get_collection(collection),
                        decode(found[0][0], source=f"{GENERIC_TABLE}/{collection}"),
                    )
                    rows = [(str(record_id), encode(body)) for record_id, body in data.items()]
                    await tx.execute(self.dialect.create_table(collection))
                    for record_id, body in rows:
                        await tx.execute(self.dialect.upsert(collection), (record_id, body))
                    await tx.execute(self.dialect.delete_row(GENERIC_TABLE), (collection,))
            except self.driver.errors as e:
                raise self._unavailable(f"distribute {collection}", e)
            self._distributed.add(collection)
        return len(rows)


def create_row_store_adapter(options: StorageOptions) -> SqlAdapter:
    """Build the embedded row store adapter."""
    driver = SqliteDriver(
        options.db_path,
        wal_mode=options.wal_mode,
        busy_timeout_ms=options.busy_timeout_ms,
    )
    return SqlAdapter(StorageKind.ROW_STORE, dialect_for(StorageKind.ROW_STORE), driver, blocking=True)


def create_relational_adapter(kind: StorageKind, options: StorageOptions) -> SqlAdapter:
    """Build a remote SQL adapter.

    Raises:
        AdapterUnavailableError: If the engine's driver is not installed
    """
    try:
        if kind in (StorageKind.POSTGRES, StorageKind.COCKROACH):
            driver: SqlDriver = AsyncpgDriver(options)
        elif kind in (StorageKind.MYSQL, StorageKind.MARIADB):
            driver = AiomysqlDriver(options)
        elif kind is StorageKind.SQL_SERVER:
            driver = AioodbcDriver(options)
        else:
            raise ConfigurationError(f"{kind.value} is not a relational back-end")
    except ImportError:
        raise missing_driver(kind)
    return SqlAdapter(kind, dialect_for(kind), driver)
