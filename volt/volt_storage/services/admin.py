"""
Cross-collection administration: counts and user removal.
"""

from __future__ import annotations

import logging
from typing import Any

from ..cache import CollectionCache
from .base import now_iso
from .moderation import GlobalBanService
from .social import BlockService, FriendService
from .users import UserService

logger = logging.getLogger(__name__)

STAT_COLLECTIONS = {
    "totalUsers": "users",
    "totalServers": "servers",
    "totalChannels": "channels",
    "totalMessages": "messages",
    "totalDms": "dms",
    "totalBans": "global_bans",
}


class AdminService:
    def __init__(
        self,
        cache: CollectionCache,
        users: UserService,
        friends: FriendService,
        blocked: BlockService,
        global_bans: GlobalBanService,
    ) -> None:
        self.cache = cache
        self.users = users
        self.friends = friends
        self.blocked = blocked
        self.global_bans = global_bans

    async def stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            key: await self.cache.count(collection) for key, collection in STAT_COLLECTIONS.items()
        }
        stats["timestamp"] = now_iso()
        return stats

    async def delete_user(self, user_id: str) -> bool:
        """Remove a user and every social edge that points at them.

        Touches users, friends, blocked, friend_requests and global_bans,
        one collection at a time.

        Returns:
            True if the user record existed
        """
        existed = await self.users.delete(user_id)

        async with self.friends.edit() as friends:
            friends.pop(user_id, None)
            for uid in list(friends):
                friends[uid] = [f for f in friends[uid] if f != user_id]

        async with self.blocked.edit() as blocked:
            blocked.pop(user_id, None)
            for uid in list(blocked):
                blocked[uid] = [b for b in blocked[uid] if b != user_id]

        async with self.cache.edit("friend_requests") as requests:
            for side in ("incoming", "outgoing"):
                buckets = requests.get(side) or {}
                buckets.pop(user_id, None)
                for uid in list(buckets):
                    buckets[uid] = [
                        r for r in buckets[uid] if user_id not in (r.get("from"), r.get("to"))
                    ]

        await self.global_bans.unban(user_id)
        logger.info(f"User deleted: {user_id}", extra={"user_id": user_id, "existed": existed})
        return existed
