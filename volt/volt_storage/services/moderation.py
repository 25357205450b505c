"""
Bans and the admin audit log.

Layouts:
    global_bans:  {userId: ban}
    server_bans:  {serverId: ban}       platform-wide ban of a whole server
    admin_logs:   {logId: entry}, read back newest first
"""

from __future__ import annotations

from typing import Any

from ..cache import CollectionCache
from .base import CollectionService, KeyedService, new_id, now_iso, sort_key


class GlobalBanService(KeyedService):
    collection = "global_bans"

    async def is_banned(self, user_id: str) -> bool:
        return await self.exists(user_id)

    async def ban(
        self,
        user_id: str,
        reason: str | None = None,
        banned_by: str | None = None,
    ) -> dict[str, Any]:
        ban = {"userId": user_id, "reason": reason, "bannedBy": banned_by, "bannedAt": now_iso()}
        return await self.put(user_id, ban)

    async def unban(self, user_id: str) -> bool:
        return await self.delete(user_id)


class ServerBanService(KeyedService):
    collection = "server_bans"

    async def is_banned(self, server_id: str) -> bool:
        return await self.exists(server_id)

    async def ban(
        self,
        server_id: str,
        reason: str | None = None,
        banned_by: str | None = None,
    ) -> dict[str, Any]:
        ban = {"serverId": server_id, "reason": reason, "bannedBy": banned_by, "bannedAt": now_iso()}
        return await self.put(server_id, ban)

    async def unban(self, server_id: str) -> bool:
        return await self.delete(server_id)


class AdminLogService(CollectionService):
    collection = "admin_logs"

    def __init__(self, cache: CollectionCache, limit: int = 100) -> None:
        super().__init__(cache)
        self.limit = limit

    async def append(
        self,
        action: str,
        user_id: str,
        target_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        entry = {
            "id": new_id("log"),
            "action": action,
            "userId": user_id,
            "targetId": target_id,
            "details": details or {},
            "createdAt": now_iso(),
        }
        async with self.edit() as logs:
            logs[entry["id"]] = entry
        return entry

    async def tail(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Newest entries first, at most ``limit``."""
        entries = sorted((await self._all()).values(), key=sort_key, reverse=True)
        return entries[: limit or self.limit]
