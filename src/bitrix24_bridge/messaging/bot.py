"""Chat bot registration in a Bitrix24 portal."""

from __future__ import annotations

import logging
from typing import Any

from bitrix24_bridge.api.client import Bitrix24Client
from bitrix24_bridge.config import BotSettings

logger = logging.getLogger(__name__)

BOT_CODE_PREFIX = "agent_"


def event_urls(public_url: str, account_id: str) -> dict[str, str]:
    """Handler URLs the portal posts bot events to."""
    base = f"{public_url.rstrip('/')}/webhook/bitrix24/{account_id}"
    return {
        "EVENT_MESSAGE_ADD": f"{base}/message",
        "EVENT_WELCOME_MESSAGE": f"{base}/welcome",
        "EVENT_BOT_DELETE": f"{base}/delete",
    }


async def register_bot(
    client: Bitrix24Client,
    account_id: str,
    public_url: str,
    bot: BotSettings,
) -> tuple[int, str]:
    """Register the chat bot. Returns (bot_id, bot_code)."""
    code = f"{BOT_CODE_PREFIX}{account_id}"
    result = await client.call_method("imbot.register", {
        "CODE": code,
        "TYPE": "B",
        **event_urls(public_url, account_id),
        "PROPERTIES": {
            "NAME": bot.name,
            "LAST_NAME": bot.last_name or "",
            "COLOR": bot.color,
            "WORK_POSITION": bot.work_position,
            "EMAIL": bot.email or f"{code}@bots.local",
            "PERSONAL_PHOTO": bot.avatar,
        },
    })
    # The portal answers with a bare id or with {"BOT_ID": id}
    bot_id = result.get("BOT_ID") if isinstance(result, dict) else result
    logger.info("Registered bot %s (ID: %s) on %s", code, bot_id, client.domain)
    return int(bot_id), code


async def update_bot(client: Bitrix24Client, bot_id: int, **changes: Any) -> bool:
    """Update bot properties. Only the given fields are sent.

    Accepts BotSettings field names (name, last_name, color, work_position,
    avatar). Returns False without calling the API when nothing changed.
    """
    field_map = {
        "name": "NAME",
        "last_name": "LAST_NAME",
        "color": "COLOR",
        "work_position": "WORK_POSITION",
        "avatar": "PERSONAL_PHOTO",
    }
    fields = {field_map[key]: value for key, value in changes.items()
              if key in field_map and value is not None}
    if not fields:
        return False
    await client.call_method("imbot.update", {"BOT_ID": bot_id, "FIELDS": fields})
    return True


async def unregister_bot(client: Bitrix24Client, bot_id: int) -> None:
    await client.call_method("imbot.unregister", {"BOT_ID": bot_id})
