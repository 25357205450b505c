"""
User profiles.

Invariants:
    - updatedAt is stamped on every mutation
    - createdAt is set once, on the first write, and never changed
    - Age verification category is adult or child; adult never expires,
      child expires after the configured number of days
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from ..cache import CollectionCache
from ..errors import InvalidError, NotFoundError
from .base import KeyedService, now_iso, parse_iso
from .records import User

logger = logging.getLogger(__name__)

AGE_CATEGORIES = ("adult", "child")


class UserService(KeyedService):
    """users: ``{userId: profile}``."""

    collection = "users"

    def __init__(self, cache: CollectionCache, child_verification_days: int = 30) -> None:
        super().__init__(cache)
        self.child_verification_days = child_verification_days

    @staticmethod
    def _stamp(profile: dict[str, Any], user_id: str) -> dict[str, Any]:
        now = now_iso()
        profile["id"] = user_id
        profile.setdefault("createdAt", now)
        profile["updatedAt"] = now
        return profile

    async def get_record(self, user_id: str) -> User | None:
        profile = await self.get(user_id)
        return User.from_dict(profile) if profile is not None else None

    async def upsert(self, user_id: str, profile: dict[str, Any]) -> dict[str, Any]:
        """Merge profile fields into the stored user, creating it if absent."""
        async with self.edit() as users:
            current = users.get(user_id) or {}
            current.update(profile)
            users[user_id] = self._stamp(current, user_id)
        return current

    async def put(self, record_id: str, record: Any) -> Any:
        return await self.upsert(record_id, record)

    async def patch(self, user_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Merge changes into an existing user.

        Unlike upsert, patch never creates a profile; callers that want
        create-or-merge use upsert.

        Raises:
            NotFoundError: If the user does not exist
        """
        async with self.edit() as users:
            current = users.get(user_id)
            if current is None:
                raise NotFoundError(f"User not found: {user_id}", collection="users", record_id=user_id)
            current.update(changes)
            self._stamp(current, user_id)
        return current

    async def update(self, record_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        return await self.patch(record_id, changes)

    async def set_status(
        self,
        user_id: str,
        status: str,
        custom_status: str | None = None,
    ) -> dict[str, Any]:
        async with self.edit() as users:
            current = users.setdefault(user_id, {})
            current["status"] = status
            if custom_status is not None:
                current["customStatus"] = custom_status
            self._stamp(current, user_id)
        return current

    async def set_age_verification(
        self,
        user_id: str,
        category: str,
        method: str | None = None,
        **details: Any,
    ) -> dict[str, Any]:
        """Record an age verification outcome.

        Args:
            user_id: User being verified
            category: ``adult`` or ``child``
            method: Verification method label
            **details: Extra verification fields (birthYear, age, device, ...)

        Returns:
            The updated user

        Raises:
            InvalidError: If the category is unknown
        """
        if category not in AGE_CATEGORIES:
            raise InvalidError(f"Unknown age verification category: {category}")
        now = datetime.now(timezone.utc)
        expires_at = None
        if category == "child":
            expires_at = (now + timedelta(days=self.child_verification_days)).isoformat(
                timespec="milliseconds"
            ).replace("+00:00", "Z")
        verification = {
            **details,
            "verified": True,
            "method": method,
            "category": category,
            "verifiedAt": now_iso(),
            "expiresAt": expires_at,
        }
        async with self.edit() as users:
            current = users.setdefault(user_id, {})
            current["ageVerification"] = verification
            self._stamp(current, user_id)
        logger.info(
            f"Age verification recorded for {user_id}",
            extra={"user_id": user_id, "category": category},
        )
        return current

    async def is_age_verified(self, user_id: str, at: datetime | None = None) -> bool:
        """True while the user holds an unexpired verification."""
        profile = await self.get(user_id)
        verification = (profile or {}).get("ageVerification") or {}
        if not verification.get("verified"):
            return False
        expires_at = parse_iso(verification.get("expiresAt"))
        if expires_at is None:
            return verification.get("category") == "adult"
        return (at or datetime.now(timezone.utc)) < expires_at
