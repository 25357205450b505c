"""
Document store adapter.

One document collection per storage collection. Each record is one
document ``{_id: record_id, data: body}``; the body is nested under
``data`` so it never collides with the engine's reserved ``_id``.

Invariants:
    - save replaces the collection: bulk replace-with-upsert, then delete
      documents whose _id is absent from the new map; both steps share one
      session transaction when the server is a replica set or mongos
    - Bodies are JSON-validated before anything is written
    - load strips _id from the returned body
    - Saves on the same collection are serialised by a per-collection lock

How to change safely:
    - Keep the {_id, data} layout, it is the persisted wire format
    - Test against a real server before changing bulk write options
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any

from ..config import StorageKind, StorageOptions
from ..codec import encode
from ..errors import AdapterUnavailableError, SerializationError
from ..registry import validate_identifier
from .base import missing_driver

logger = logging.getLogger(__name__)

# Try to import pymongo's asyncio client
try:
    from bson.errors import BSONError
    from pymongo import AsyncMongoClient, ReplaceOne
    from pymongo.errors import PyMongoError

    PYMONGO_AVAILABLE = True
    DRIVER_ERRORS: tuple[type[BaseException], ...] = (PyMongoError,)
    BODY_ERRORS: tuple[type[BaseException], ...] = (BSONError,)
except ImportError:
    PYMONGO_AVAILABLE = False
    AsyncMongoClient = None
    ReplaceOne = None
    DRIVER_ERRORS = ()
    BODY_ERRORS = ()

BODY_FIELD = "data"


class DocumentAdapter:
    """Document store implementation of StorageAdapter.

    Uses pymongo's native asyncio client.

    Example:
        >>> adapter = DocumentAdapter(StorageOptions(host="localhost", port=27017))
        >>> await adapter.connect()
        >>> await adapter.save("users", {"u_1": {"username": "alice"}})
        >>> # stored as {"_id": "u_1", "data": {"username": "alice"}}
    """

    def __init__(self, options: StorageOptions, client: Any = None) -> None:
        """Initialize the adapter.

        Args:
            options: Connection options
            client: Pre-built client (tests inject a fake here)

        Raises:
            AdapterUnavailableError: If pymongo is not installed and no
                client is supplied
        """
        if client is None and not PYMONGO_AVAILABLE:
            raise missing_driver(StorageKind.DOCUMENT)
        self.options = options
        self._client = client
        self._db: Any = None
        self._connected = False
        self._transactions = False
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def kind(self) -> StorageKind:
        return StorageKind.DOCUMENT

    @property
    def blocking(self) -> bool:
        return False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _build_client(self) -> Any:
        opts = self.options
        if opts.connection_string:
            return AsyncMongoClient(opts.connection_string, serverSelectionTimeoutMS=5000)
        kwargs: dict[str, Any] = {
            "host": opts.host,
            "port": opts.port,
            "maxPoolSize": opts.connection_limit,
            "serverSelectionTimeoutMS": 5000,
        }
        if opts.user:
            kwargs.update(
                username=opts.user,
                password=opts.password,
                authSource=opts.auth_source,
            )
        return AsyncMongoClient(**kwargs)

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
            await self._client.admin.command("ping")
            hello = await self._client.admin.command("hello")
        except DRIVER_ERRORS as e:
            raise AdapterUnavailableError(f"document connect failed: {e}", kind=self.kind.value)
        # Standalone servers reject multi-document transactions
        self._transactions = "setName" in hello or hello.get("msg") == "isdbgrid"
        self._db = self._client[self.options.database or "volt"]
        self._connected = True
        logger.info(
            "Connected to document storage",
            extra={"kind": self.kind.value, "transactions": self._transactions},
        )

    async def ping(self) -> None:
        try:
            await self._client.admin.command("ping")
        except DRIVER_ERRORS as e:
            raise AdapterUnavailableError(f"document ping failed: {e}", kind=self.kind.value)

    async def load(self, collection: str) -> dict[str, Any]:
        validate_identifier(collection)
        result: dict[str, Any] = {}
        try:
            async for doc in self._db[collection].find({}):
                record_id = str(doc.pop("_id"))
                # Documents written by older tools carry the body at top level
                result[record_id] = doc[BODY_FIELD] if BODY_FIELD in doc else doc
        except DRIVER_ERRORS as e:
            raise AdapterUnavailableError(
                f"document load {collection} failed: {e}", kind=self.kind.value
            )
        return result

    async def save(self, collection: str, data: dict[str, Any]) -> None:
        validate_identifier(collection)
        if not isinstance(data, dict):
            raise SerializationError(f"Collection '{collection}' must be saved as a keyed-map")
        for body in data.values():
            encode(body)
        ids = [str(record_id) for record_id in data]
        ops = [
            ReplaceOne({"_id": record_id}, {"_id": record_id, BODY_FIELD: body}, upsert=True)
            for record_id, body in ((str(k), v) for k, v in data.items())
        ]
        async with self._locks[collection]:
            coll = self._db[collection]
            try:
                if self._transactions:
                    async with self._client.start_session() as session:
                        await session.with_transaction(
                            lambda s: self._replace_all(coll, ops, ids, session=s)
                        )
                else:
                    await self._replace_all(coll, ops, ids)
            except BODY_ERRORS as e:
                raise SerializationError(f"document save {collection}: {e}")
            except DRIVER_ERRORS as e:
                raise AdapterUnavailableError(
                    f"document save {collection} failed: {e}", kind=self.kind.value
                )

    async def _replace_all(self, coll: Any, ops: list[Any], ids: list[str], session: Any = None) -> None:
        if ops:
            await coll.bulk_write(ops, ordered=False, session=session)
        await coll.delete_many({"_id": {"$nin": ids}}, session=session)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
        self._client = None
        self._db = None
        self._connected = False
