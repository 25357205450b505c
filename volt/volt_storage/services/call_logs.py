"""
Call history per conversation.

Layout:
    call_logs: {conversationId: [log, ...]}

Invariants:
    - log_call() upserts by callId; a later upsert never moves startedAt
    - Listings are newest first and capped
"""

from __future__ import annotations

from typing import Any

from ..cache import CollectionCache
from ..errors import NotFoundError
from .base import CollectionService, new_id, now_iso
from .records import CallLog


def _newest_first(logs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(
        logs,
        key=lambda log: (str(log.get("startedAt") or ""), str(log.get("id") or "")),
        reverse=True,
    )


class CallLogService(CollectionService):
    collection = "call_logs"

    def __init__(self, cache: CollectionCache, limit: int = 50) -> None:
        super().__init__(cache)
        self.limit = limit

    async def log_call(self, conversation_id: str, call: dict[str, Any]) -> dict[str, Any]:
        """Insert or update a call by its callId.

        Args:
            conversation_id: Conversation the call happened in
            call: Call body; must carry callId
        """
        call_id = call["callId"]
        async with self.edit() as data:
            logs = data.setdefault(conversation_id, [])
            existing = next((log for log in logs if log.get("callId") == call_id), None)
            if existing is None:
                existing = {
                    "id": new_id("call"),
                    "dmId": conversation_id,
                    "startedAt": call.get("startedAt") or now_iso(),
                }
                logs.append(existing)
            started_at = existing["startedAt"]
            existing.update(call)
            existing["startedAt"] = started_at
        return existing

    async def list_for_conversation(self, conversation_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        logs = await self.cache.get(self.collection, conversation_id, [])
        return _newest_first(logs)[: limit or self.limit]

    async def list_for_user(self, user_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        logs = [
            log
            for conversation in (await self._all()).values()
            for log in conversation
            if user_id in (log.get("participants") or [])
        ]
        return _newest_first(logs)[: limit or self.limit]

    async def get_by_call_id(self, call_id: str) -> dict[str, Any] | None:
        for conversation in (await self._all()).values():
            for log in conversation:
                if log.get("callId") == call_id:
                    return log
        return None

    async def get_record(self, call_id: str) -> CallLog | None:
        log = await self.get_by_call_id(call_id)
        return CallLog.from_dict(log) if log is not None else None

    async def update(self, call_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Merge changes into a logged call (startedAt is kept).

        Raises:
            NotFoundError: If no call has this callId
        """
        async with self.edit() as data:
            for conversation in data.values():
                for log in conversation:
                    if log.get("callId") == call_id:
                        started_at = log.get("startedAt")
                        log.update(changes)
                        log["startedAt"] = started_at
                        return log
            raise NotFoundError(f"Call not found: {call_id}", collection=self.collection, record_id=call_id)
