"""Bitrix24 Bridge MCP Server -- Streamable HTTP entry point plus bot webhooks."""

from __future__ import annotations

import contextlib
import logging
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path

import httpx
from mcp.server.fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.routing import Mount

from bitrix24_bridge.accounts import AccountManager
from bitrix24_bridge.api.client import Bitrix24Error
from bitrix24_bridge.auth.oauth import OAuthError
from bitrix24_bridge.auth.token_store import TokenStore
from bitrix24_bridge.channel import Bitrix24Channel
from bitrix24_bridge.config import load_config
from bitrix24_bridge.tools.accounts import register_account_tools
from bitrix24_bridge.tools.messaging import register_messaging_tools
from bitrix24_bridge.webhook.handler import WebhookHandler

logger = logging.getLogger(__name__)

HOST = "127.0.0.1"
PORT = 8787
# Where the portal can reach the webhook routes (usually a tunnel or reverse proxy)
PUBLIC_URL = os.environ.get("BITRIX24_BRIDGE_PUBLIC_URL", f"http://{HOST}:{PORT}")


@dataclass
class AppContext:
    """Shared application context available to all MCP tools."""

    channel: Bitrix24Channel


def build_channel(config_path: Path | None = None, token_store: TokenStore | None = None) -> Bitrix24Channel:
    """Load accounts from the config file and wrap them in a channel."""
    accounts = AccountManager(token_store=token_store or TokenStore())
    accounts.load_from_config(load_config(config_path))
    return Bitrix24Channel(accounts, public_url=PUBLIC_URL)


_channel: Bitrix24Channel | None = None


def get_channel() -> Bitrix24Channel:
    global _channel
    if _channel is None:
        _channel = build_channel()
    return _channel


async def startup_accounts(channel: Bitrix24Channel) -> None:
    """Register bots for every enabled account. Failures are logged per account."""
    for account in channel.accounts.list_enabled_accounts():
        try:
            await channel.startup_account(account.id)
        except (Bitrix24Error, OAuthError, httpx.HTTPError) as exc:
            logger.warning("Could not start account %s: %s", account.id, exc)


# -- Lifespan --

@contextlib.asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Expose the shared channel to MCP tools."""
    yield AppContext(channel=get_channel())


# -- MCP Server --

mcp = FastMCP(
    name="Bitrix24 Bridge",
    instructions=(
        "Bitrix24 chat bridge. Use get_new_messages to read what users wrote to the bot, "
        "send_message to reply (Markdown is converted to Bitrix24 formatting), and "
        "call_method for any other Bitrix24 REST method."
    ),
    host=HOST,
    port=PORT,
    lifespan=app_lifespan,
)

register_account_tools(mcp)
register_messaging_tools(mcp)


# -- Composite ASGI App (MCP + bot webhooks) --

def create_app(channel: Bitrix24Channel | None = None) -> Starlette:
    """Create the full ASGI application with MCP and webhook routes."""
    global _channel
    if channel is not None:
        _channel = channel
    channel = get_channel()
    mcp_app = mcp.streamable_http_app()
    webhook_handler = WebhookHandler(channel)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):  # type: ignore[no-untyped-def]
        async with mcp.session_manager.run():
            await startup_accounts(channel)
            try:
                yield
            finally:
                await channel.close()
                logger.info("Server shutdown: clients closed")

    routes = [
        *webhook_handler.routes(),
        # MCP endpoint (mounted as sub-application)
        Mount("/", mcp_app),
    ]

    return Starlette(routes=routes, lifespan=lifespan)


def main() -> None:
    """Entry point: start the Bitrix24 Bridge server."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    logger.info("Starting Bitrix24 Bridge on http://%s:%d (public URL %s)", HOST, PORT, PUBLIC_URL)
    app = create_app()
    uvicorn.run(app, host=HOST, port=PORT, log_level="info")


if __name__ == "__main__":
    main()
