"""
Collection registry for the Volt storage layer.

The data set is a fixed family of named collections. Each one has a
canonical shape, a record identity field and a fixed legacy filename
under the runtime data directory.

Invariants:
    - Collection identifiers are stable and double as table names
    - Every adapter loads and saves a collection as a keyed-map
    - The filename map is fixed; legacy files keep their names forever

How to change safely:
    - Add new collections at the end of COLLECTIONS
    - Never rename an identifier or a filename, add an alias instead
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from .errors import ConfigurationError

IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


class Shape(Enum):
    """Canonical collection shapes.

    KEYED_MAP: ``{record_id: record}``
    ORDERED_SEQUENCE: keyed by record id on the wire, read back in
        ``(createdAt, id)`` order
    SINGLETON: one logical record stored as a keyed-map
    """

    KEYED_MAP = "keyed_map"
    ORDERED_SEQUENCE = "ordered_sequence"
    SINGLETON = "singleton"


@dataclass(frozen=True)
class Collection:
    """A named logical container of records.

    Attributes:
        name: Stable identifier, also the SQL table / document collection name
        filename: Legacy JSON filename under the data directory
        identity: Field holding the record identity
        shape: Canonical shape
    """

    name: str
    filename: str
    identity: str = "id"
    shape: Shape = Shape.KEYED_MAP


def _c(name: str, filename: str | None = None, **kwargs) -> Collection:
    return Collection(name, filename or f"{name.replace('_', '-')}.json", **kwargs)


COLLECTIONS: tuple[Collection, ...] = (
    _c("users"),
    _c("friends"),
    _c("friend_requests"),
    _c("bots"),
    _c("categories"),
    _c("e2e_keys"),
    _c("dms"),
    _c("dm_messages"),
    _c("servers"),
    _c("channels"),
    _c("messages"),
    _c("reactions"),
    _c("invites", "server-invites.json", identity="code"),
    _c("blocked"),
    _c("files"),
    _c("attachments"),
    _c("discovery"),
    _c("global_bans"),
    _c("server_bans"),
    _c("admin_logs", shape=Shape.ORDERED_SEQUENCE),
    _c("system_messages"),
    _c("e2e_true"),
    _c("pinned_messages"),
    _c("self_volts"),
    _c("federation", shape=Shape.SINGLETON),
    _c("server_start", shape=Shape.SINGLETON),
    _c("call_logs"),
)

_BY_NAME = {c.name: c for c in COLLECTIONS}
_BY_FILENAME = {c.filename: c for c in COLLECTIONS}


def collection_names() -> list[str]:
    """All registered collection identifiers, in registry order."""
    return [c.name for c in COLLECTIONS]


def validate_identifier(name: str) -> str:
    """Check that a collection identifier is safe to use as a table name.

    Raises:
        ConfigurationError: If the identifier is malformed
    """
    if not isinstance(name, str) or not IDENTIFIER_RE.match(name):
        raise ConfigurationError(
            f"Invalid collection identifier: {name!r}",
            details={"collection": str(name)},
        )
    return name


def get_collection(name: str) -> Collection:
    """Look up a collection descriptor.

    Unknown but well-formed identifiers get an ad-hoc keyed-map
    descriptor, since collections are created implicitly on first write.

    Raises:
        ConfigurationError: If the identifier is malformed
    """
    found = _BY_NAME.get(name)
    if found is not None:
        return found
    return _c(validate_identifier(name))


def collection_for_filename(filename: str) -> Collection | None:
    """Reverse lookup from a legacy JSON filename."""
    return _BY_FILENAME.get(filename)


def is_registered(name: str) -> bool:
    return name in _BY_NAME
