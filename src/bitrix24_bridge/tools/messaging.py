"""MCP tools for reading and sending Bitrix24 chat messages."""

from __future__ import annotations

import base64
from typing import Any, Literal

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.session import ServerSession

from bitrix24_bridge.accounts import AccountNotFoundError
from bitrix24_bridge.api.client import Bitrix24Error
from bitrix24_bridge.api.models import MediaAttachment
from bitrix24_bridge.channel import Bitrix24Channel, BotNotRegisteredError
from bitrix24_bridge.messaging.files import guess_mime_type
from bitrix24_bridge.messaging.format import bbcode_to_markdown, markdown_to_bbcode
from bitrix24_bridge.messaging.targets import DialogIdError, parse_dialog_id


def _get_channel(ctx: Context) -> Bitrix24Channel:  # type: ignore[type-arg]
    return ctx.request_context.lifespan_context.channel


def register_messaging_tools(mcp: FastMCP) -> None:
    """Register chat messaging MCP tools."""

    @mcp.tool()
    async def get_new_messages(
        ctx: Context[ServerSession, Any],
        account_id: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Fetch and remove inbound messages buffered since the last call.

        Text is already converted to Markdown. Mentions keep the user ids.

        Args:
            account_id: Only this account's messages (all accounts if omitted).
            limit: Max messages to return (default 50).
        """
        channel = _get_channel(ctx)
        return [msg.model_dump() for msg in channel.drain_messages(account_id, limit=limit)]

    @mcp.tool()
    async def send_message(
        ctx: Context[ServerSession, Any],
        dialog_id: str,
        text: str,
        account_id: str | None = None,
        attachments: list[dict[str, str]] | None = None,
    ) -> dict[str, Any]:
        """Send a Markdown message from the bot to a dialog.

        Long text is split into several messages.

        Args:
            dialog_id: "123" for a direct message to user 123, "chat456" for group chat 456.
            text: Message text in Markdown.
            account_id: Sending account (default account if omitted).
            attachments: Files as {"file_name": ..., "content_base64": ...}.

        Returns:
            Ids of the sent messages.
        """
        channel = _get_channel(ctx)
        account_id = account_id or channel.accounts.resolve_default_account_id()
        try:
            target = parse_dialog_id(dialog_id)
        except DialogIdError as e:
            return {"sent": False, "error": str(e)}

        media = [
            MediaAttachment(
                content=base64.b64decode(item["content_base64"]),
                file_name=item["file_name"],
                mime_type=guess_mime_type(item["file_name"]),
            )
            for item in attachments or []
        ]
        try:
            message_ids = await channel.send_text_message(account_id, target.dialog_id, text, media)
        except BotNotRegisteredError as e:
            return {"sent": False, "error": str(e)}
        return {"sent": True, "message_ids": message_ids}

    @mcp.tool()
    async def call_method(
        ctx: Context[ServerSession, Any],
        method: str,
        params: dict[str, Any] | None = None,
        account_id: str | None = None,
    ) -> dict[str, Any]:
        """Call any Bitrix24 REST method (e.g. crm.deal.list, user.get).

        Args:
            method: REST method name.
            params: Method parameters.
            account_id: Account to call as (default account if omitted).

        Returns:
            The method's result.
        """
        channel = _get_channel(ctx)
        account_id = account_id or channel.accounts.resolve_default_account_id()
        try:
            client = channel.accounts.get_client(account_id)
        except AccountNotFoundError as e:
            return {"error": str(e)}
        try:
            return {"result": await client.call_method(method, params or {})}
        except Bitrix24Error as e:
            return {"error": e.code, "error_description": e.description}

    @mcp.tool()
    async def download_attachment(
        ctx: Context[ServerSession, Any],
        file_id: str,
        account_id: str | None = None,
    ) -> dict[str, Any]:
        """Download a file attached to an inbound message.

        Args:
            file_id: The file id from a message's files list.
            account_id: Account the message came from (default account if omitted).
        """
        channel = _get_channel(ctx)
        account_id = account_id or channel.accounts.resolve_default_account_id()
        attachment = await channel.download_attachment(account_id, file_id)
        return {
            "file_name": attachment.file_name,
            "mime_type": attachment.mime_type,
            "size": len(attachment.content),
            "content_base64": base64.b64encode(attachment.content).decode("ascii"),
        }

    @mcp.tool()
    async def convert_text(
        text: str,
        direction: Literal["to_bbcode", "to_markdown"] = "to_bbcode",
    ) -> dict[str, str]:
        """Convert text between Markdown and Bitrix24 BB-code.

        Args:
            text: The text to convert.
            direction: "to_bbcode" (Markdown in) or "to_markdown" (BB-code in).
        """
        if direction == "to_markdown":
            return {"text": bbcode_to_markdown(text)}
        return {"text": markdown_to_bbcode(text)}
