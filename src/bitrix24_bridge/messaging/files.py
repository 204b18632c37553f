"""File transfer between dialogs and Bitrix24 Disk."""

from __future__ import annotations

import logging
import mimetypes
from typing import Any

from bitrix24_bridge.api.client import Bitrix24Client
from bitrix24_bridge.api.models import DiskFile, MediaAttachment

logger = logging.getLogger(__name__)


class StorageNotFoundError(Exception):
    """The portal exposes no Disk storage the bot can upload into."""


class DiskStorageCache:
    """Maps a portal domain to the Disk storage id used for uploads.

    Entries live for the life of the process and are never invalidated:
    a portal's common storage practically never changes.
    """

    def __init__(self) -> None:
        self._ids: dict[str, int] = {}

    def get(self, domain: str) -> int | None:
        return self._ids.get(domain)

    async def resolve(self, client: Bitrix24Client) -> int:
        cached = self._ids.get(client.domain)
        if cached is not None:
            return cached

        storages = await client.call_method(
            "disk.storage.getlist", {"filter": {"ENTITY_TYPE": "common"}}
        )
        if not storages:
            storages = await client.call_method("disk.storage.getlist")
        if not storages:
            raise StorageNotFoundError(
                'No Disk storage found. Ensure the "disk" scope is enabled.'
            )

        storage_id = int(storages[0]["ID"])
        self._ids[client.domain] = storage_id
        logger.debug("Using Disk storage %d for %s", storage_id, client.domain)
        return storage_id


async def send_file(
    client: Bitrix24Client,
    storage: DiskStorageCache,
    chat_id: int,
    file_name: str,
    content: bytes,
    message: str | None = None,
) -> DiskFile:
    """Upload a file to Disk and publish it into a chat (scopes: disk, im)."""
    storage_id = await storage.resolve(client)
    disk_file = await client.upload_file(storage_id, file_name, content)

    params: dict[str, Any] = {"CHAT_ID": chat_id, "UPLOAD_ID": disk_file.ID}
    if message:
        params["MESSAGE"] = message
    await client.call_method("im.disk.file.commit", params)
    return disk_file


async def download_attachment(client: Bitrix24Client, file_id: str) -> MediaAttachment:
    """Fetch a file attached to an inbound message."""
    info = DiskFile.model_validate(await client.call_method("disk.file.get", {"id": file_id}))
    if not info.DOWNLOAD_URL:
        raise ValueError(f"File {file_id} has no download URL")
    content = await client.download_file(info.DOWNLOAD_URL)
    return MediaAttachment(content=content, file_name=info.NAME, mime_type=guess_mime_type(info.NAME))


def guess_mime_type(file_name: str) -> str:
    mime_type, _ = mimetypes.guess_type(file_name)
    return mime_type or "application/octet-stream"


def media_kind(mime_type: str) -> str:
    """Coarse media category: image, video, audio or document."""
    for kind in ("image", "video", "audio"):
        if mime_type.startswith(f"{kind}/"):
            return kind
    return "document"
