"""
Per-user system inbox.

Layout:
    system_messages: {userId: [message, ...]}

Invariants:
    - send() with a dedupeKey skips every recipient whose inbox already
      holds a message with that key
    - Listing is newest first
"""

from __future__ import annotations

import logging
from typing import Any

from .base import CollectionService, new_id, now_iso, sort_key
from .records import SystemMessage

logger = logging.getLogger(__name__)


class SystemMessageService(CollectionService):
    collection = "system_messages"

    async def send(
        self,
        recipients: list[str],
        category: str,
        title: str,
        body: str,
        severity: str = "info",
        icon: str | None = None,
        dedupe_key: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Fan a message out to every recipient.

        Returns:
            The messages actually created, one per recipient that received it
        """
        created: list[dict[str, Any]] = []
        now = now_iso()
        async with self.edit() as inboxes:
            for user_id in dict.fromkeys(recipients):
                inbox = inboxes.setdefault(user_id, [])
                if dedupe_key and any(m.get("dedupeKey") == dedupe_key for m in inbox):
                    continue
                message = {
                    "id": new_id("sys"),
                    "userId": user_id,
                    "category": category,
                    "title": title,
                    "body": body,
                    "icon": icon,
                    "severity": severity,
                    "dedupeKey": dedupe_key,
                    "meta": meta or {},
                    "read": False,
                    "createdAt": now,
                }
                inbox.append(message)
                created.append(message)
        logger.info(
            f"System message fanned out to {len(created)} users",
            extra={"category": category, "recipients": len(recipients), "created": len(created)},
        )
        return created

    async def list_for_user(self, user_id: str) -> list[dict[str, Any]]:
        inbox = await self.cache.get(self.collection, user_id, [])
        return sorted(inbox, key=sort_key, reverse=True)

    async def list_records(self, user_id: str) -> list[SystemMessage]:
        return [SystemMessage.from_dict(m) for m in await self.list_for_user(user_id)]

    async def unread_count(self, user_id: str) -> int:
        return sum(1 for m in await self.cache.get(self.collection, user_id, []) if not m.get("read"))

    async def mark_read(self, user_id: str, message_id: str) -> bool:
        async with self.edit() as inboxes:
            for message in inboxes.get(user_id, []):
                if message.get("id") == message_id:
                    message["read"] = True
                    return True
        return False

    async def mark_all_read(self, user_id: str) -> int:
        marked = 0
        async with self.edit() as inboxes:
            for message in inboxes.get(user_id, []):
                if not message.get("read"):
                    message["read"] = True
                    marked += 1
        return marked

    async def delete(self, user_id: str, message_id: str) -> bool:
        async with self.edit() as inboxes:
            inbox = inboxes.get(user_id, [])
            kept = [m for m in inbox if m.get("id") != message_id]
            if user_id in inboxes:
                inboxes[user_id] = kept
            return len(kept) != len(inbox)

    async def clear_all(self, user_id: str) -> None:
        async with self.edit() as inboxes:
            inboxes.pop(user_id, None)
