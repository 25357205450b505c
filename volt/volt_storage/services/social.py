"""
Friendships, friend requests and blocks.

Layouts:
    friends:          {userId: [friendId, ...]}
    friend_requests:  {"incoming": {userId: [request]}, "outgoing": {userId: [request]}}
    blocked:          {userId: [blockedUserId, ...]}

Invariants:
    - Friendship is symmetric; add and remove touch both sides
    - A request lives in the recipient's incoming and the sender's outgoing
      list with the same id; every transition removes both copies
    - Blocking a user removes the friendship
    - Cross-collection operations edit one collection at a time and never
      hold two collection locks at once
"""

from __future__ import annotations

import logging
from typing import Any

from ..cache import CollectionCache
from ..errors import AlreadyExistsError, InvalidError, NotFoundError
from .base import CollectionService, new_id, now_iso

logger = logging.getLogger(__name__)


def _link(data: dict[str, list[str]], user_id: str, other_id: str) -> None:
    bucket = data.setdefault(user_id, [])
    if other_id not in bucket:
        bucket.append(other_id)


def _unlink(data: dict[str, list[str]], user_id: str, other_id: str) -> None:
    if user_id in data:
        data[user_id] = [uid for uid in data[user_id] if uid != other_id]


class FriendService(CollectionService):
    collection = "friends"

    async def list(self, user_id: str) -> list[str]:
        return await self.cache.get(self.collection, user_id, [])

    async def add(self, user_id: str, friend_id: str) -> None:
        """Make two users friends. Idempotent."""
        async with self.edit() as friends:
            _link(friends, user_id, friend_id)
            _link(friends, friend_id, user_id)

    async def remove(self, user_id: str, friend_id: str) -> None:
        async with self.edit() as friends:
            _unlink(friends, user_id, friend_id)
            _unlink(friends, friend_id, user_id)

    async def are_friends(self, user_id: str, other_id: str) -> bool:
        return other_id in await self.list(user_id)


class FriendRequestService(CollectionService):
    collection = "friend_requests"

    def __init__(self, cache: CollectionCache, friends: FriendService) -> None:
        super().__init__(cache)
        self.friends = friends

    @staticmethod
    def _buckets(data: dict[str, Any]) -> tuple[dict[str, list], dict[str, list]]:
        return data.setdefault("incoming", {}), data.setdefault("outgoing", {})

    async def list(self, user_id: str) -> dict[str, list[dict[str, Any]]]:
        data = await self._all()
        return {
            "incoming": (data.get("incoming") or {}).get(user_id, []),
            "outgoing": (data.get("outgoing") or {}).get(user_id, []),
        }

    async def send(
        self,
        from_user_id: str,
        to_user_id: str,
        from_username: str | None = None,
        to_username: str | None = None,
    ) -> dict[str, Any]:
        """Send a friend request.

        Raises:
            InvalidError: If a user sends a request to themself
            AlreadyExistsError: If the recipient already holds a request
                from this sender
        """
        if from_user_id == to_user_id:
            raise InvalidError("Cannot send a friend request to yourself")
        async with self.edit() as data:
            incoming, outgoing = self._buckets(data)
            if any(r.get("from") == from_user_id for r in incoming.get(to_user_id, [])):
                raise AlreadyExistsError(
                    "Request already sent",
                    details={"from": from_user_id, "to": to_user_id},
                )
            request = {
                "id": new_id("fr"),
                "from": from_user_id,
                "fromUsername": from_username,
                "to": to_user_id,
                "toUsername": to_username,
                "createdAt": now_iso(),
            }
            incoming.setdefault(to_user_id, []).append(request)
            outgoing.setdefault(from_user_id, []).append(dict(request))
        return request

    def _take(self, data: dict[str, Any], side: str, user_id: str, request_id: str) -> dict[str, Any]:
        incoming, outgoing = self._buckets(data)
        own, other = (incoming, outgoing) if side == "incoming" else (outgoing, incoming)
        request = next((r for r in own.get(user_id, []) if r.get("id") == request_id), None)
        if request is None:
            raise NotFoundError(
                f"Friend request not found: {request_id}",
                collection=self.collection,
                record_id=request_id,
            )
        own[user_id] = [r for r in own[user_id] if r.get("id") != request_id]
        counterpart = request.get("from") if side == "incoming" else request.get("to")
        if counterpart in other:
            other[counterpart] = [r for r in other[counterpart] if r.get("id") != request_id]
        return request

    async def accept(self, user_id: str, request_id: str) -> str:
        """Accept an incoming request and create the friendship.

        Returns:
            The new friend's user id

        Raises:
            NotFoundError: If the request is not in the user's incoming list
        """
        async with self.edit() as data:
            request = self._take(data, "incoming", user_id, request_id)
        await self.friends.add(user_id, request["from"])
        return request["from"]

    async def reject(self, user_id: str, request_id: str) -> None:
        async with self.edit() as data:
            self._take(data, "incoming", user_id, request_id)

    async def cancel(self, user_id: str, request_id: str) -> None:
        async with self.edit() as data:
            self._take(data, "outgoing", user_id, request_id)


class BlockService(CollectionService):
    collection = "blocked"

    def __init__(self, cache: CollectionCache, friends: FriendService) -> None:
        super().__init__(cache)
        self.friends = friends

    async def list(self, user_id: str) -> list[str]:
        return await self.cache.get(self.collection, user_id, [])

    async def block(self, user_id: str, blocked_user_id: str) -> None:
        async with self.edit() as blocked:
            _link(blocked, user_id, blocked_user_id)
        await self.friends.remove(user_id, blocked_user_id)

    async def unblock(self, user_id: str, blocked_user_id: str) -> None:
        async with self.edit() as blocked:
            _unlink(blocked, user_id, blocked_user_id)

    async def is_blocked(self, user_id: str, target_id: str) -> bool:
        """True if either user has blocked the other."""
        blocked = await self._all()
        return target_id in blocked.get(user_id, []) or user_id in blocked.get(target_id, [])
