"""
Server discovery listings.

Layout (one keyed-map with two sequences):
    discovery: {"submissions": [submission, ...], "approved": [entry, ...]}

Invariants:
    - A server has at most one pending submission or approved entry
    - approve() moves a submission into approved; reject() drops it
"""

from __future__ import annotations

import logging
from typing import Any

from ..errors import AlreadyExistsError, NotFoundError
from .base import CollectionService, new_id, now_iso

logger = logging.getLogger(__name__)

CATEGORIES = (
    {"id": "gaming", "name": "Gaming"},
    {"id": "music", "name": "Music"},
    {"id": "education", "name": "Education"},
    {"id": "science", "name": "Science & Tech"},
    {"id": "entertainment", "name": "Entertainment"},
    {"id": "art", "name": "Art & Creativity"},
    {"id": "community", "name": "Community"},
    {"id": "other", "name": "Other"},
)

DEFAULT_CATEGORY = "community"


class DiscoveryService(CollectionService):
    collection = "discovery"

    @staticmethod
    def _lists(data: dict[str, Any]) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        return data.setdefault("submissions", []), data.setdefault("approved", [])

    async def categories(self) -> list[dict[str, str]]:
        return [dict(c) for c in CATEGORIES]

    async def submit(
        self,
        server_id: str,
        submitted_by: str,
        description: str | None = None,
        category: str | None = None,
        name: str | None = None,
    ) -> dict[str, Any]:
        """Queue a server for review.

        Raises:
            AlreadyExistsError: If the server is pending or already listed
        """
        async with self.edit() as data:
            submissions, approved = self._lists(data)
            if any(s.get("serverId") == server_id for s in submissions + approved):
                raise AlreadyExistsError(
                    f"Server {server_id} is already submitted or listed",
                    details={"server_id": server_id},
                )
            submission = {
                "id": new_id("sub"),
                "serverId": server_id,
                "name": name,
                "description": description or "",
                "category": category or DEFAULT_CATEGORY,
                "submittedBy": submitted_by,
                "submittedAt": now_iso(),
                "status": "pending",
            }
            submissions.append(submission)
        return submission

    def _pop_submission(self, data: dict[str, Any], submission_id: str) -> dict[str, Any]:
        submissions, _ = self._lists(data)
        for index, submission in enumerate(submissions):
            if submission.get("id") == submission_id:
                return submissions.pop(index)
        raise NotFoundError(
            f"Submission not found: {submission_id}",
            collection=self.collection,
            record_id=submission_id,
        )

    async def approve(self, submission_id: str) -> dict[str, Any]:
        async with self.edit() as data:
            submission = self._pop_submission(data, submission_id)
            entry = {**submission, "status": "approved", "approvedAt": now_iso()}
            self._lists(data)[1].append(entry)
        logger.info(
            f"Discovery submission approved: {submission_id}",
            extra={"server_id": entry["serverId"]},
        )
        return entry

    async def reject(self, submission_id: str) -> dict[str, Any]:
        async with self.edit() as data:
            submission = self._pop_submission(data, submission_id)
        return {**submission, "status": "rejected"}

    async def remove(self, server_id: str) -> bool:
        """Drop a server from both the listing and the review queue."""
        async with self.edit() as data:
            submissions, approved = self._lists(data)
            before = len(submissions) + len(approved)
            data["submissions"] = [s for s in submissions if s.get("serverId") != server_id]
            data["approved"] = [a for a in approved if a.get("serverId") != server_id]
            return len(data["submissions"]) + len(data["approved"]) != before

    async def pending(self) -> list[dict[str, Any]]:
        return list((await self._all()).get("submissions") or [])

    async def get_entry(self, server_id: str) -> dict[str, Any] | None:
        approved = (await self._all()).get("approved") or []
        return next((a for a in approved if a.get("serverId") == server_id), None)

    async def is_listed(self, server_id: str) -> bool:
        return await self.get_entry(server_id) is not None

    async def list_approved(
        self,
        limit: int = 50,
        offset: int = 0,
        category: str | None = None,
        search: str | None = None,
    ) -> dict[str, Any]:
        """Page through approved servers.

        Args:
            limit: Page size
            offset: Entries to skip
            category: Only entries in this category
            search: Case-insensitive substring of name or description

        Returns:
            ``{"servers": [...], "total": n}`` where total counts every
            match before paging
        """
        entries = list((await self._all()).get("approved") or [])
        if category:
            entries = [e for e in entries if e.get("category") == category]
        if search:
            needle = search.lower()
            entries = [
                e
                for e in entries
                if needle in str(e.get("name") or "").lower()
                or needle in str(e.get("description") or "").lower()
            ]
        return {"servers": entries[offset : offset + limit], "total": len(entries)}
