"""
Typed record views over the JSON bodies stored in collections.

Collections hold camelCase JSON objects. These dataclasses give the most
used record kinds a typed shape for new callers while keeping every field
the model does not know about in ``extra``, so a round trip through a
record never drops data.

Invariants:
    - from_dict(r).to_dict() == r for any JSON object r
    - Unknown fields land in extra and are re-emitted verbatim
    - Field names map snake_case <-> camelCase mechanically

How to change safely:
    - Add fields with defaults; existing bodies must keep parsing
    - Never rename a wire key, add the new one and keep the old in extra
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from typing import Any, TypeVar

R = TypeVar("R", bound="Record")

_CAMEL_RE = re.compile(r"_([a-z0-9])")

_MISSING = object()


def to_camel(name: str) -> str:
    return _CAMEL_RE.sub(lambda m: m.group(1).upper(), name)


@dataclass
class Record:
    """Base for typed records.

    Fields left at None are omitted from the wire form unless they were
    present in the source body.
    """

    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls: type[R], data: dict[str, Any]) -> R:
        known: dict[str, Any] = {}
        extra = dict(data)
        present: set[str] = set()
        for f in fields(cls):
            if f.name == "extra":
                continue
            key = to_camel(f.name)
            value = extra.pop(key, _MISSING)
            if value is not _MISSING:
                known[f.name] = value
                present.add(f.name)
        record = cls(extra=extra, **known)
        record._present = present
        return record

    def to_dict(self) -> dict[str, Any]:
        present = getattr(self, "_present", set())
        body: dict[str, Any] = {}
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if value is None and f.name not in present:
                continue
            body[to_camel(f.name)] = value
        body.update(self.extra)
        return body


@dataclass
class User(Record):
    id: str | None = None
    username: str | None = None
    display_name: str | None = None
    status: str | None = None
    custom_status: str | None = None
    role: str | None = None
    age_verification: dict[str, Any] | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Conversation(Record):
    id: str | None = None
    participant_key: str | None = None
    participants: list[str] | None = None
    recipient_id: str | None = None
    is_group: bool | None = None
    owner_id: str | None = None
    name: str | None = None
    created_at: str | None = None
    last_message_at: str | None = None


@dataclass
class DirectMessage(Record):
    id: str | None = None
    conversation_id: str | None = None
    user_id: str | None = None
    content: str | None = None
    timestamp: str | None = None
    edited: bool | None = None
    edited_at: str | None = None


@dataclass
class Message(Record):
    id: str | None = None
    channel_id: str | None = None
    user_id: str | None = None
    content: str | None = None
    created_at: str | None = None
    edited: bool | None = None
    edited_at: str | None = None


@dataclass
class Invite(Record):
    code: str | None = None
    server_id: str | None = None
    created_by: str | None = None
    uses: int | None = None
    max_uses: int | None = None
    expires_at: str | None = None
    created_at: str | None = None


@dataclass
class SystemMessage(Record):
    id: str | None = None
    user_id: str | None = None
    category: str | None = None
    title: str | None = None
    body: str | None = None
    severity: str | None = None
    dedupe_key: str | None = None
    read: bool | None = None
    created_at: str | None = None


@dataclass
class CallLog(Record):
    id: str | None = None
    dm_id: str | None = None
    call_id: str | None = None
    participants: list[str] | None = None
    started_at: str | None = None
    ended_at: str | None = None
    duration: int | None = None
