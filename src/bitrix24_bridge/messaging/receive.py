"""Normalization of inbound imbot events."""

from __future__ import annotations

import hmac
from typing import Any

from bitrix24_bridge.api.models import (
    BotDeleteEvent,
    BotDeleteEventPayload,
    FileAttachment,
    IncomingMessage,
    MessageEventPayload,
    WelcomeEvent,
    WelcomeEventPayload,
)
from bitrix24_bridge.messaging.format import bbcode_to_markdown, extract_mentions


def parse_message_event(body: dict[str, Any]) -> IncomingMessage | None:
    """Parse an ONIMBOTMESSAGEADD body.

    Returns None for messages the bot must not answer: ones written by a bot
    (loop protection) and events without a bot block.
    """
    event = MessageEventPayload.model_validate(body)
    data = event.data
    if data.USER.IS_BOT == "Y" or not data.BOT:
        return None

    bot = data.BOT[0]
    params = data.PARAMS
    auth = event.auth
    return IncomingMessage(
        message_id=params.MESSAGE_ID,
        dialog_id=params.DIALOG_ID,
        chat_id=params.TO_CHAT_ID,
        text=bbcode_to_markdown(params.MESSAGE),
        from_user_id=params.FROM_USER_ID,
        from_user_name=data.USER.FIRST_NAME or data.USER.NAME,
        from_user_last_name=data.USER.LAST_NAME,
        chat_type=params.CHAT_TYPE,
        files=[
            FileAttachment(id=f.id, name=f.name, size=f.size, type=f.type)
            for f in params.FILES or []
        ],
        mentions=extract_mentions(params.MESSAGE),
        domain=auth.domain if auth else "",
        application_token=auth.application_token if auth else None,
        bot_id=bot.BOT_ID,
        bot_code=bot.BOT_CODE,
    )


def parse_welcome_event(body: dict[str, Any]) -> WelcomeEvent | None:
    """Parse an ONIMJOINCHAT body (bot added to a chat / dialog opened)."""
    event = WelcomeEventPayload.model_validate(body)
    if not event.data.BOT:
        return None
    bot = event.data.BOT[0]
    return WelcomeEvent(
        dialog_id=event.data.PARAMS.DIALOG_ID,
        chat_type=event.data.PARAMS.CHAT_TYPE,
        user_id=event.data.PARAMS.USER_ID,
        bot_id=bot.BOT_ID,
        bot_code=bot.BOT_CODE,
        domain=event.auth.domain if event.auth else "",
    )


def parse_bot_delete_event(body: dict[str, Any]) -> BotDeleteEvent | None:
    """Parse an ONIMBOTDELETE body."""
    event = BotDeleteEventPayload.model_validate(body)
    if not event.data.BOT:
        return None
    bot = event.data.BOT[0]
    return BotDeleteEvent(
        bot_id=bot.BOT_ID,
        bot_code=bot.BOT_CODE,
        domain=event.auth.domain if event.auth else "",
    )


def verify_application_token(body: dict[str, Any], expected_token: str | None) -> bool:
    """Check the event's auth.application_token against the stored one."""
    if not expected_token:
        return True  # No token stored, accept all
    auth = body.get("auth")
    token = auth.get("application_token") if isinstance(auth, dict) else None
    if not isinstance(token, str):
        return False
    return hmac.compare_digest(expected_token, token)
