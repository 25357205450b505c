"""
Direct-message conversations and their messages.

Layouts:
    dms:          {userId: [conversation, ...]}  one copy per participant
    dm_messages:  {conversationId: [message, ...]}  append order

Invariants:
    - A pairwise conversation is identified by participantKey, the sorted
      participant ids joined with ':'; get_or_create is idempotent under it
    - Group conversations have at least three participants including the
      owner
    - Every participant's copy carries the same id and lastMessageAt
    - Only the author may edit or delete a message
"""

from __future__ import annotations

import logging
from typing import Any

from ..cache import CollectionCache
from ..errors import InvalidError, NotFoundError, NotOwnerError
from .base import CollectionService, new_id, now_iso
from .records import Conversation, DirectMessage

logger = logging.getLogger(__name__)

GROUP_MIN_PARTICIPANTS = 3


def participant_key(participants: list[str]) -> str:
    return ":".join(sorted(participants))


class DmService(CollectionService):
    collection = "dms"

    async def list(self, user_id: str) -> list[dict[str, Any]]:
        return await self.cache.get(self.collection, user_id, [])

    async def list_records(self, user_id: str) -> list[Conversation]:
        return [Conversation.from_dict(c) for c in await self.list(user_id)]

    async def get(self, user_id: str, conversation_id: str) -> dict[str, Any] | None:
        return next((c for c in await self.list(user_id) if c.get("id") == conversation_id), None)

    async def get_or_create(self, user_id: str, other_id: str) -> dict[str, Any]:
        """Return the pairwise conversation between two users, creating it once.

        Both participants get a copy; ``recipientId`` on each copy names
        the other participant.
        """
        key = participant_key([user_id, other_id])
        found = [c for c in await self.list(user_id) if c.get("participantKey") == key]
        if found and any(c.get("participantKey") == key for c in await self.list(other_id)):
            return found[0]
        async with self.edit() as dms:
            mine = next((c for c in dms.get(user_id, []) if c.get("participantKey") == key), None)
            theirs = next((c for c in dms.get(other_id, []) if c.get("participantKey") == key), None)
            if mine is not None and theirs is not None:
                return mine
            existing = mine or theirs
            if existing is not None:
                base = {k: v for k, v in existing.items() if k != "recipientId"}
            else:
                now = now_iso()
                base = {
                    "id": new_id("dm"),
                    "participantKey": key,
                    "participants": [user_id, other_id],
                    "createdAt": now,
                    "lastMessageAt": now,
                }
            if mine is None:
                mine = {**base, "recipientId": other_id}
                dms.setdefault(user_id, []).append(mine)
            if theirs is None:
                dms.setdefault(other_id, []).append({**base, "recipientId": user_id})
        return mine

    async def create_group(
        self,
        owner_id: str,
        participants: list[str],
        name: str | None = None,
    ) -> dict[str, Any]:
        """Create a group conversation.

        Args:
            owner_id: Creating user; added to participants if missing
            participants: Member user ids
            name: Optional display name

        Raises:
            InvalidError: If fewer than three distinct participants remain
        """
        members = list(dict.fromkeys([owner_id, *participants]))
        if len(members) < GROUP_MIN_PARTICIPANTS:
            raise InvalidError(
                f"Group conversations need at least {GROUP_MIN_PARTICIPANTS} participants",
                details={"participants": members},
            )
        now = now_iso()
        conversation = {
            "id": new_id("group"),
            "isGroup": True,
            "ownerId": owner_id,
            "name": name,
            "participantKey": participant_key(members),
            "participants": members,
            "createdAt": now,
            "lastMessageAt": now,
        }
        async with self.edit() as dms:
            for member in members:
                dms.setdefault(member, []).append(dict(conversation))
        logger.info(
            f"Group conversation created: {conversation['id']}",
            extra={"conversation_id": conversation["id"], "participants": len(members)},
        )
        return conversation

    async def update_last_message(self, conversation_id: str, at: str | None = None) -> str:
        """Stamp lastMessageAt on every participant's copy."""
        at = at or now_iso()
        async with self.edit() as dms:
            for conversations in dms.values():
                for conversation in conversations:
                    if conversation.get("id") == conversation_id:
                        conversation["lastMessageAt"] = at
        return at


class DmMessageService(CollectionService):
    collection = "dm_messages"

    def __init__(self, cache: CollectionCache, dms: DmService, page_size: int = 50) -> None:
        super().__init__(cache)
        self.dms = dms
        self.page_size = page_size

    async def list(self, conversation_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        """The newest ``limit`` messages, oldest first."""
        messages = await self.cache.get(self.collection, conversation_id, [])
        limit = limit or self.page_size
        return messages[-limit:]

    async def list_records(self, conversation_id: str, limit: int | None = None) -> list[DirectMessage]:
        return [DirectMessage.from_dict(m) for m in await self.list(conversation_id, limit)]

    async def append(self, conversation_id: str, message: dict[str, Any]) -> dict[str, Any]:
        """Append a message and bump the conversation's lastMessageAt."""
        message = dict(message)
        message.setdefault("id", new_id("dmmsg"))
        message.setdefault("timestamp", now_iso())
        message["conversationId"] = conversation_id
        async with self.edit() as data:
            data.setdefault(conversation_id, []).append(message)
        await self.dms.update_last_message(conversation_id, message["timestamp"])
        return message

    def _find(self, data: dict[str, Any], conversation_id: str, message_id: str, user_id: str) -> int:
        messages = data.get(conversation_id, [])
        for index, message in enumerate(messages):
            if message.get("id") == message_id:
                author = message.get("userId", message.get("senderId"))
                if author != user_id:
                    raise NotOwnerError(
                        f"User {user_id} does not own message {message_id}",
                        user_id=user_id,
                        record_id=message_id,
                    )
                return index
        raise NotFoundError(
            f"Message not found: {message_id}",
            collection=self.collection,
            record_id=message_id,
        )

    async def edit_message(
        self,
        conversation_id: str,
        message_id: str,
        user_id: str,
        content: str,
    ) -> dict[str, Any]:
        """Replace a message's content.

        Raises:
            NotFoundError: If the message does not exist
            NotOwnerError: If user_id is not the author
        """
        async with self.edit() as data:
            index = self._find(data, conversation_id, message_id, user_id)
            message = data[conversation_id][index]
            message["content"] = content
            message["edited"] = True
            message["editedAt"] = now_iso()
        return message

    async def delete(self, conversation_id: str, message_id: str, user_id: str) -> None:
        async with self.edit() as data:
            index = self._find(data, conversation_id, message_id, user_id)
            del data[conversation_id][index]
