"""
Uploaded file metadata and per-message attachment lists.

Layouts:
    files:        {fileId: file}
    attachments:  {messageId: [attachment, ...]}
"""

from __future__ import annotations

from typing import Any

from .base import CollectionService, KeyedService, new_id, now_iso


class FileService(KeyedService):
    collection = "files"

    async def save(self, file: dict[str, Any]) -> dict[str, Any]:
        file = dict(file)
        file.setdefault("id", new_id("file"))
        file.setdefault("createdAt", now_iso())
        return await self.put(file["id"], file)


class AttachmentService(CollectionService):
    collection = "attachments"

    async def list(self, message_id: str) -> list[dict[str, Any]]:
        return await self.cache.get(self.collection, message_id, [])

    async def add(self, message_id: str, attachment: dict[str, Any]) -> list[dict[str, Any]]:
        attachment = dict(attachment)
        attachment.setdefault("id", new_id("att"))
        async with self.edit() as data:
            data.setdefault(message_id, []).append(attachment)
            result = data[message_id]
        return result

    async def remove(self, message_id: str, attachment_id: str) -> bool:
        async with self.edit() as data:
            current = data.get(message_id)
            if not current:
                return False
            kept = [a for a in current if a.get("id") != attachment_id]
            if kept:
                data[message_id] = kept
            else:
                del data[message_id]
            return len(kept) != len(current)

    async def delete_for_message(self, message_id: str) -> bool:
        async with self.edit() as data:
            return data.pop(message_id, None) is not None
