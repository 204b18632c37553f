"""Outbound bot messages: Markdown in, BB-code chunks out."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from bitrix24_bridge.api.client import Bitrix24Client, Bitrix24Error
from bitrix24_bridge.api.models import KeyboardMarkup, OutgoingMessage
from bitrix24_bridge.messaging.files import DiskStorageCache, send_file
from bitrix24_bridge.messaging.format import chunk_text, markdown_to_bbcode
from bitrix24_bridge.messaging.targets import extract_chat_id

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_LIMIT = 4000


async def send_typing(client: Bitrix24Client, bot_id: int, dialog_id: str) -> None:
    await client.call_method("imbot.chat.sendTyping", {"BOT_ID": bot_id, "DIALOG_ID": dialog_id})


async def send_text(
    client: Bitrix24Client,
    bot_id: int,
    dialog_id: str,
    text: str,
    keyboard: KeyboardMarkup | None = None,
) -> str:
    """Send one already-formatted message. Returns the new message id."""
    payload: dict[str, Any] = {"BOT_ID": bot_id, "DIALOG_ID": dialog_id, "MESSAGE": text}
    if keyboard:
        payload["KEYBOARD"] = [
            [button.model_dump(exclude_none=True) for button in row] for row in keyboard.buttons
        ]
    result = await client.call_method("imbot.message.add", payload)
    return str(result)


async def send_message(
    client: Bitrix24Client,
    msg: OutgoingMessage,
    text_chunk_limit: int = DEFAULT_CHUNK_LIMIT,
    to_chat_id: int | None = None,
    storage: DiskStorageCache | None = None,
) -> list[str]:
    """Send an agent reply to a dialog.

    Shows the typing indicator, converts Markdown to BB-code, sends the text
    in chunks (keyboard on the last one), then uploads any media. Media is
    skipped when no chat id can be resolved for a direct dialog.

    Returns the ids of the text messages sent.
    """
    try:
        await send_typing(client, msg.bot_id, msg.dialog_id)
    except (Bitrix24Error, httpx.HTTPError) as exc:
        logger.debug("Typing indicator failed for %s: %s", msg.dialog_id, exc)

    chunks = chunk_text(markdown_to_bbcode(msg.text), text_chunk_limit) if msg.text else []
    message_ids: list[str] = []
    for index, chunk in enumerate(chunks):
        is_last = index == len(chunks) - 1
        message_ids.append(await send_text(
            client,
            msg.bot_id,
            msg.dialog_id,
            chunk,
            keyboard=msg.keyboard if is_last else None,
        ))

    if msg.media:
        chat_id = extract_chat_id(msg.dialog_id, to_chat_id)
        if chat_id is None:
            logger.warning("No chat id for dialog %s, dropping %d file(s)", msg.dialog_id, len(msg.media))
        else:
            storage = storage or DiskStorageCache()
            for media in msg.media:
                await send_file(client, storage, chat_id, media.file_name, media.content)

    return message_ids


async def update_message(client: Bitrix24Client, bot_id: int, message_id: str, text: str) -> None:
    await client.call_method("imbot.message.update", {
        "BOT_ID": bot_id,
        "MESSAGE_ID": message_id,
        "MESSAGE": markdown_to_bbcode(text),
    })


async def delete_message(client: Bitrix24Client, bot_id: int, message_id: str) -> None:
    await client.call_method("imbot.message.delete", {"BOT_ID": bot_id, "MESSAGE_ID": message_id})
