"""
Server invites.

Layout:
    invites: {code: invite}

Older data sets bucket invites by server (``{serverId: [invite]}``);
those buckets are flattened to the keyed-map the first time the
collection is written.

Invariants:
    - Codes are 8 characters of uppercase base-36 and unique
    - use() checks and increments under the collection lock, so N
      concurrent uses of an invite with maxUses=K succeed exactly K times
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from ..errors import ExpiredError, NotFoundError
from .base import CollectionService, now_iso, parse_iso, random_base36
from .records import Invite

logger = logging.getLogger(__name__)

CODE_LENGTH = 8


def _flatten(invites: dict[str, Any]) -> dict[str, Any]:
    if not any(isinstance(v, list) for v in invites.values()):
        return invites
    flat: dict[str, Any] = {}
    for key, value in invites.items():
        if isinstance(value, list):
            for invite in value:
                flat[invite["code"]] = invite
        else:
            flat[key] = value
    return flat


class InviteService(CollectionService):
    collection = "invites"

    async def _invites(self) -> dict[str, Any]:
        return _flatten(await self._all())

    def _normalize(self, data: dict[str, Any]) -> dict[str, Any]:
        flat = _flatten(data)
        if flat is not data:
            data.clear()
            data.update(flat)
        return data

    async def create(
        self,
        server_id: str,
        created_by: str,
        max_uses: int = 0,
        expires_at: str | None = None,
        code: str | None = None,
    ) -> dict[str, Any]:
        """Create an invite.

        Args:
            server_id: Server the invite admits to
            created_by: Creating user
            max_uses: 0 for unlimited
            expires_at: ISO timestamp after which the invite is dead
            code: Explicit code (generated when omitted)
        """
        async with self.edit() as data:
            invites = self._normalize(data)
            if code is None:
                code = random_base36(CODE_LENGTH).upper()
                while code in invites:
                    code = random_base36(CODE_LENGTH).upper()
            invite = {
                "code": code,
                "serverId": server_id,
                "createdBy": created_by,
                "uses": 0,
                "maxUses": max_uses,
                "expiresAt": expires_at,
                "createdAt": now_iso(),
            }
            invites[code] = invite
        return invite

    async def get(self, code: str) -> dict[str, Any] | None:
        return (await self._invites()).get(code)

    async def get_record(self, code: str) -> Invite | None:
        invite = await self.get(code)
        return Invite.from_dict(invite) if invite is not None else None

    async def use(self, code: str) -> str:
        """Consume one use of an invite.

        Returns:
            The invite's server id

        Raises:
            NotFoundError: If no invite has this code
            ExpiredError: If the invite is used up or past expiresAt
        """
        async with self.edit() as data:
            invite = self._normalize(data).get(code)
            if invite is None:
                raise NotFoundError(f"Invite not found: {code}", collection=self.collection, record_id=code)
            max_uses = invite.get("maxUses") or 0
            uses = invite.get("uses") or 0
            if max_uses > 0 and uses >= max_uses:
                raise ExpiredError(f"Invite {code} has no uses left", details={"code": code})
            expires_at = parse_iso(invite.get("expiresAt"))
            if expires_at is not None and expires_at < datetime.now(timezone.utc):
                raise ExpiredError(f"Invite {code} has expired", details={"code": code})
            invite["uses"] = uses + 1
            server_id = invite["serverId"]
        return server_id

    async def delete(self, code: str) -> bool:
        async with self.edit() as data:
            return self._normalize(data).pop(code, None) is not None

    async def list_by_server(self, server_id: str) -> list[dict[str, Any]]:
        return [i for i in (await self._invites()).values() if i.get("serverId") == server_id]
