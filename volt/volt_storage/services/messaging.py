"""
Servers, channels, channel messages and reactions.

Layouts:
    servers:    {serverId: server}
    channels:   {channelId: channel}                keyed-map
                {serverId: [channel, ...]}          legacy server-bucketed
    messages:   {messageId: message}
    reactions:  {messageId: {emoji: [userId, ...]}}

Invariants:
    - channels is read in whichever shape it was stored in, and every
      mutation writes the same shape back
    - Channel message listing is ordered by (createdAt, id) ascending
    - A reaction bucket that becomes empty is removed
    - Deleting a server deletes its channels
"""

from __future__ import annotations

import logging
from typing import Any

from ..cache import CollectionCache
from ..errors import NotFoundError
from .base import CollectionService, KeyedService, new_id, now_iso, sort_key
from .records import Message

logger = logging.getLogger(__name__)


def is_server_bucketed(channels: dict[str, Any]) -> bool:
    """True for the legacy ``{serverId: [channel]}`` layout."""
    return any(isinstance(value, list) for value in channels.values())


def _iter_channels(channels: dict[str, Any]) -> list[dict[str, Any]]:
    if is_server_bucketed(channels):
        return [c for bucket in channels.values() if isinstance(bucket, list) for c in bucket]
    return list(channels.values())


class ChannelService(CollectionService):
    collection = "channels"

    async def get(self, channel_id: str) -> dict[str, Any] | None:
        channels = await self._all()
        return next((c for c in _iter_channels(channels) if c.get("id") == channel_id), None)

    async def list_by_server(self, server_id: str) -> list[dict[str, Any]]:
        return [c for c in _iter_channels(await self._all()) if c.get("serverId") == server_id]

    async def create(self, channel: dict[str, Any]) -> dict[str, Any]:
        channel = dict(channel)
        channel.setdefault("id", new_id("ch"))
        channel.setdefault("createdAt", now_iso())
        async with self.edit() as channels:
            if is_server_bucketed(channels):
                bucket = channels.setdefault(channel.get("serverId") or "", [])
                bucket[:] = [c for c in bucket if c.get("id") != channel["id"]]
                bucket.append(channel)
            else:
                channels[channel["id"]] = channel
        return channel

    async def update(self, channel_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Merge changes into a channel.

        Raises:
            NotFoundError: If the channel does not exist
        """
        async with self.edit() as channels:
            target = next(
                (c for c in _iter_channels(channels) if c.get("id") == channel_id), None
            )
            if target is None:
                raise NotFoundError(
                    f"Channel not found: {channel_id}", collection=self.collection, record_id=channel_id
                )
            target.update(changes)
        return target

    async def delete(self, channel_id: str) -> bool:
        async with self.edit() as channels:
            if is_server_bucketed(channels):
                removed = False
                for server_id, bucket in channels.items():
                    kept = [c for c in bucket if c.get("id") != channel_id]
                    removed = removed or len(kept) != len(bucket)
                    channels[server_id] = kept
                return removed
            return channels.pop(channel_id, None) is not None

    async def delete_by_server(self, server_id: str) -> int:
        async with self.edit() as channels:
            if is_server_bucketed(channels):
                removed = channels.get(server_id) or []
                if server_id in channels:
                    channels[server_id] = []
                return len(removed)
            doomed = [cid for cid, c in channels.items() if c.get("serverId") == server_id]
            for cid in doomed:
                del channels[cid]
            return len(doomed)


class ServerService(KeyedService):
    collection = "servers"

    def __init__(self, cache: CollectionCache, channels: ChannelService) -> None:
        super().__init__(cache)
        self.channels = channels

    async def create(self, server: dict[str, Any]) -> dict[str, Any]:
        server = dict(server)
        server.setdefault("id", new_id("srv"))
        now = now_iso()
        server.setdefault("createdAt", now)
        server["updatedAt"] = now
        return await self.put(server["id"], server)

    async def update(self, record_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        return await super().update(record_id, {**changes, "updatedAt": now_iso()})

    async def delete(self, record_id: str) -> bool:
        """Delete a server and every channel that belongs to it."""
        existed = await super().delete(record_id)
        removed = await self.channels.delete_by_server(record_id)
        logger.info(
            f"Server deleted: {record_id}",
            extra={"server_id": record_id, "channels_removed": removed},
        )
        return existed


class MessageService(KeyedService):
    collection = "messages"

    def __init__(self, cache: CollectionCache, page_size: int = 50) -> None:
        super().__init__(cache)
        self.page_size = page_size

    async def get_record(self, message_id: str) -> Message | None:
        message = await self.get(message_id)
        return Message.from_dict(message) if message is not None else None

    async def list_channel(
        self,
        channel_id: str,
        limit: int | None = None,
        before: str | None = None,
    ) -> list[dict[str, Any]]:
        """Tail of a channel's messages in (createdAt, id) order.

        Args:
            channel_id: Channel to list
            limit: Maximum messages returned (default: page size)
            before: Only messages ordered before this message id; an
                unknown id leaves the listing unfiltered
        """
        messages = sorted(
            (m for m in (await self._all()).values() if m.get("channelId") == channel_id),
            key=sort_key,
        )
        if before is not None:
            index = next((i for i, m in enumerate(messages) if m.get("id") == before), None)
            if index is not None:
                messages = messages[:index]
        limit = limit or self.page_size
        return messages[-limit:]

    async def create(self, message: dict[str, Any]) -> dict[str, Any]:
        message = dict(message)
        message.setdefault("id", new_id("msg"))
        message.setdefault("createdAt", now_iso())
        return await self.put(message["id"], message)

    async def edit_message(self, message_id: str, content: str) -> dict[str, Any]:
        return await super().update(
            message_id, {"content": content, "edited": True, "editedAt": now_iso()}
        )


class ReactionService(CollectionService):
    collection = "reactions"

    async def get(self, message_id: str) -> dict[str, list[str]]:
        return await self.cache.get(self.collection, message_id, {})

    async def add(self, message_id: str, user_id: str, emoji: str) -> dict[str, list[str]]:
        async with self.edit() as reactions:
            bucket = reactions.setdefault(message_id, {}).setdefault(emoji, [])
            if user_id not in bucket:
                bucket.append(user_id)
            result = reactions[message_id]
        return result

    async def remove(self, message_id: str, user_id: str, emoji: str) -> dict[str, list[str]]:
        async with self.edit() as reactions:
            per_message = reactions.get(message_id)
            if per_message and emoji in per_message:
                per_message[emoji] = [uid for uid in per_message[emoji] if uid != user_id]
                if not per_message[emoji]:
                    del per_message[emoji]
                if not per_message:
                    del reactions[message_id]
            result = per_message or {}
        return result
