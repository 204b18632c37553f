"""MCP tools for portal accounts."""

from __future__ import annotations

from typing import Any

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.session import ServerSession

from bitrix24_bridge.channel import Bitrix24Channel


def _get_channel(ctx: Context) -> Bitrix24Channel:  # type: ignore[type-arg]
    return ctx.request_context.lifespan_context.channel


def register_account_tools(mcp: FastMCP) -> None:
    """Register account-related MCP tools."""

    @mcp.tool()
    async def list_accounts(
        ctx: Context[ServerSession, Any],
    ) -> list[dict[str, Any]]:
        """List configured Bitrix24 portal accounts.

        Returns:
            Accounts with id, domain, auth type, enabled flag, bot id and
            the number of inbound messages waiting.
        """
        channel = _get_channel(ctx)
        return [
            {
                "id": account.id,
                "domain": account.domain,
                "auth_type": account.credential.type,
                "enabled": account.enabled,
                "bot_id": account.bot_id,
                "pending_messages": channel.pending_count(account.id),
            }
            for account in channel.accounts.list_accounts()
        ]

    @mcp.tool()
    async def probe_account(
        ctx: Context[ServerSession, Any],
        account_id: str | None = None,
    ) -> dict[str, Any]:
        """Check that a portal is reachable with the account's credentials.

        Args:
            account_id: Account to probe (default account if omitted).
        """
        channel = _get_channel(ctx)
        account_id = account_id or channel.accounts.resolve_default_account_id()
        result = await channel.probe_account(account_id)
        return {"account_id": account_id, **result.model_dump()}
