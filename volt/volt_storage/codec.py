"""
JSON codec and payload normalisation.

Bodies are stored as JSON everywhere: whole collections in the file tree
and in storage_kv, single records in distributed tables, documents and
key-value entries.

Invariants:
    - encode/decode raise SerializationError, never a bare json error
    - coerce_keyed_map always returns a fresh dict keyed by record identity
    - Legacy key spellings are rewritten to canonical form; canonical wins
"""

from __future__ import annotations

import json
from typing import Any

from .errors import SerializationError
from .registry import Collection

# Legacy spelling -> canonical spelling
LEGACY_KEY_ALIASES: dict[str, str] = {"Host": "host"}


def encode(value: Any) -> str:
    """Encode a body as compact JSON.

    Raises:
        SerializationError: If the body is not JSON-encodable
    """
    try:
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Body is not JSON-encodable: {e}")


def encode_pretty(value: Any) -> str:
    """Encode with stable two-space indentation (file tree layout)."""
    try:
        return json.dumps(value, ensure_ascii=False, indent=2)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Body is not JSON-encodable: {e}")


def decode(text: str | bytes | None, source: str = "payload") -> Any:
    """Decode a JSON payload.

    Args:
        text: Encoded payload; None and blank decode to None
        source: Name used in error messages

    Raises:
        SerializationError: If the payload is not valid JSON
    """
    if text is None:
        return None
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SerializationError(f"Invalid UTF-8 in {source}: {e}")
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise SerializationError(f"Invalid JSON in {source}: {e}")


def coerce_keyed_map(collection: Collection, payload: Any) -> dict[str, Any]:
    """Turn a decoded collection payload into a keyed-map.

    Legacy array payloads are keyed by the collection's identity field;
    elements without one are keyed by their position.

    Raises:
        SerializationError: If the payload is a scalar
    """
    if payload is None:
        return {}
    if isinstance(payload, dict):
        return dict(payload)
    if isinstance(payload, list):
        keyed: dict[str, Any] = {}
        for index, item in enumerate(payload):
            key = item.get(collection.identity) if isinstance(item, dict) else None
            keyed[str(key) if key is not None else str(index)] = item
        return keyed
    raise SerializationError(
        f"Collection '{collection.name}' payload must be an object or array, "
        f"got {type(payload).__name__}"
    )


def _normalize_record(record: Any) -> Any:
    if not isinstance(record, dict):
        return record
    if not any(legacy in record for legacy in LEGACY_KEY_ALIASES):
        return record
    out: dict[str, Any] = {}
    for key, value in record.items():
        canonical = LEGACY_KEY_ALIASES.get(key)
        if canonical is None:
            out[key] = value
        elif canonical not in record:
            out[canonical] = value
    return out


def normalize_legacy_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Rewrite legacy key spellings in every record of a keyed-map.

    Applies to the top level of each record and to dict elements of
    list-valued records (bucketed collections).
    """
    out: dict[str, Any] = {}
    for record_id, record in data.items():
        if isinstance(record, list):
            out[record_id] = [_normalize_record(item) for item in record]
        else:
            out[record_id] = _normalize_record(record)
    return out


def record_count(data: Any) -> int:
    """Number of records in a keyed-map (0 for anything else)."""
    return len(data) if isinstance(data, (dict, list)) else 0
