"""Receiver for Bitrix24 chat-bot events (ONIMBOTMESSAGEADD and friends)."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import orjson
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from bitrix24_bridge.messaging.receive import (
    parse_bot_delete_event,
    parse_message_event,
    parse_welcome_event,
    verify_application_token,
)

if TYPE_CHECKING:
    from bitrix24_bridge.channel import Bitrix24Channel

logger = logging.getLogger(__name__)

WEBHOOK_PREFIX = "/webhook/bitrix24"

_KEY_HEAD = re.compile(r"^[^\[]+")
_KEY_PART = re.compile(r"\[([^\]]*)\]")


class InvalidPayloadError(ValueError):
    pass


def parse_bracketed_form(items: Iterable[tuple[str, Any]]) -> dict[str, Any]:
    """Nest PHP-style form keys: data[PARAMS][MESSAGE]=hi -> {"data": {"PARAMS": {...}}}.

    List-like keys stay dicts keyed by index; the event models turn them
    into lists.
    """
    result: dict[str, Any] = {}
    for key, value in items:
        head = _KEY_HEAD.match(key)
        if head is None:
            continue
        path = [head.group(0), *_KEY_PART.findall(key[head.end():])]
        node = result
        for part in path[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[path[-1]] = value
    return result


class WebhookHandler:
    """Handles incoming Bitrix24 bot events and routes them to the channel."""

    def __init__(self, channel: Bitrix24Channel) -> None:
        self.channel = channel

    def routes(self) -> list[Route]:
        return [
            Route(f"{WEBHOOK_PREFIX}/{{account_id}}/message", self.handle_message, methods=["POST"]),
            Route(f"{WEBHOOK_PREFIX}/{{account_id}}/welcome", self.handle_welcome, methods=["POST"]),
            Route(f"{WEBHOOK_PREFIX}/{{account_id}}/delete", self.handle_delete, methods=["POST"]),
        ]

    async def _read_body(self, request: Request) -> dict[str, Any]:
        content_type = request.headers.get("content-type", "")
        if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
            form = await request.form()
            return parse_bracketed_form(form.multi_items())
        try:
            body = orjson.loads(await request.body())
        except orjson.JSONDecodeError as exc:
            raise InvalidPayloadError("body is not JSON") from exc
        if not isinstance(body, dict):
            raise InvalidPayloadError("body is not an object")
        return body

    @staticmethod
    def _check_event(body: dict[str, Any], expected: str, account_id: str) -> None:
        event = body.get("event")
        if event and event != expected:
            logger.warning("Unexpected webhook event %s on %s route for %s", event, expected, account_id)

    async def handle_message(self, request: Request) -> Response:
        """ONIMBOTMESSAGEADD: a user wrote to the bot."""
        account_id = request.path_params["account_id"]
        try:
            body = await self._read_body(request)
        except InvalidPayloadError:
            logger.warning("Invalid message payload for %s", account_id)
            return JSONResponse({"error": "invalid payload"}, status_code=400)

        if not verify_application_token(body, self.channel.get_application_token(account_id)):
            logger.warning("Application token verification failed for %s", account_id)
            return JSONResponse({"error": "Invalid application token"}, status_code=403)
        self._check_event(body, "ONIMBOTMESSAGEADD", account_id)

        try:
            msg = parse_message_event(body)
        except ValidationError:
            logger.warning("Malformed ONIMBOTMESSAGEADD for %s", account_id, exc_info=True)
            return JSONResponse({"error": "invalid payload"}, status_code=400)

        try:
            if msg is not None:
                await self.channel.handle_incoming_message(account_id, msg)
        except Exception:
            logger.exception("Message handler failed for %s", account_id)
            return JSONResponse({"error": "Internal error"}, status_code=500)
        return JSONResponse({"success": True})

    async def handle_welcome(self, request: Request) -> Response:
        """ONIMJOINCHAT: the bot was added to a chat or a dialog was opened."""
        account_id = request.path_params["account_id"]
        try:
            event = parse_welcome_event(await self._read_body(request))
        except (InvalidPayloadError, ValidationError):
            logger.warning("Invalid welcome payload for %s", account_id)
            return JSONResponse({"error": "invalid payload"}, status_code=400)

        try:
            if event is not None:
                await self.channel.handle_welcome(account_id, event)
        except Exception:
            logger.exception("Welcome handler failed for %s", account_id)
            return JSONResponse({"error": "Internal error"}, status_code=500)
        return JSONResponse({"success": True})

    async def handle_delete(self, request: Request) -> Response:
        """ONIMBOTDELETE: the bot was removed from the portal."""
        account_id = request.path_params["account_id"]
        try:
            event = parse_bot_delete_event(await self._read_body(request))
        except (InvalidPayloadError, ValidationError):
            logger.warning("Invalid bot-delete payload for %s", account_id)
            return JSONResponse({"error": "invalid payload"}, status_code=400)

        try:
            if event is not None:
                await self.channel.handle_bot_delete(account_id, event)
        except Exception:
            logger.exception("Bot-delete handler failed for %s", account_id)
            return JSONResponse({"error": "Internal error"}, status_code=500)
        return JSONResponse({"success": True})
