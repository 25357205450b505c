"""
Distribution pass: storage_kv blobs -> per-collection tables.

Every SQL back-end starts out holding each collection as one JSON blob in
the generic storage_kv table. Distribution lifts each blob into a
dedicated ``(id, data)`` table with one row per record and deletes the
storage_kv row, after which load(T) reads the dedicated table.

Invariants:
    - Each collection moves in one transaction: table, rows and the
      storage_kv delete commit together or not at all
    - A failure on one collection is reported and does not stop the others
    - Running the pass again changes nothing (idempotent)
    - Only SQL back-ends are distributed; others report a skip
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from .adapters.base import StorageAdapter
from .adapters.relational import SqlAdapter
from .errors import VoltStorageError

logger = logging.getLogger(__name__)


@dataclass
class DistributionReport:
    """Outcome of a distribution pass.

    Attributes:
        distributed: Collections moved into dedicated tables
        deleted: Collections whose storage_kv row was removed
        errors: One message per collection that could not be moved
        counts: Records written per distributed collection
        skipped: Reason when the back-end has nothing to distribute
        duration_ms: Wall time of the pass
    """

    distributed: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)
    skipped: str | None = None
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "distributed": list(self.distributed),
            "deleted": list(self.deleted),
            "errors": list(self.errors),
            "counts": dict(self.counts),
            "skipped": self.skipped,
            "durationMs": self.duration_ms,
        }


async def distribute(adapter: StorageAdapter) -> DistributionReport:
    """Move every storage_kv blob of an SQL adapter into its own table.

    Args:
        adapter: Active adapter

    Returns:
        DistributionReport (never raises for per-collection failures)

    Raises:
        AdapterUnavailableError: If storage_kv itself cannot be read
    """
    start = time.time()
    report = DistributionReport()

    if not isinstance(adapter, SqlAdapter):
        report.skipped = f"{adapter.kind.value} does not use storage_kv"
        return report

    collections = await adapter.generic_collections()
    logger.info(
        f"Distributing {len(collections)} collections from storage_kv",
        extra={"kind": adapter.kind.value, "collections": len(collections)},
    )

    for collection in collections:
        try:
            count = await adapter.distribute_collection(collection)
        except VoltStorageError as e:
            logger.warning(f"Distribution of {collection} failed: {e.message}")
            report.errors.append(f"{collection}: {e.message}")
            continue
        if count is None:
            # moved by a concurrent pass
            continue
        report.distributed.append(collection)
        report.deleted.append(collection)
        report.counts[collection] = count

    report.duration_ms = int((time.time() - start) * 1000)
    logger.info(
        "Distribution finished",
        extra={
            "kind": adapter.kind.value,
            "distributed": len(report.distributed),
            "errors": len(report.errors),
            "duration_ms": report.duration_ms,
        },
    )
    return report
