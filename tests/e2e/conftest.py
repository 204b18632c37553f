"""E2E test fixtures: in-process ASGI app with MCP client session."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncGenerator, AsyncIterator

import httpx
import pytest
from mcp.client.session import ClientSession
from mcp.client.streamable_http import streamable_http_client
from mcp.server.fastmcp import FastMCP
from mcp.server.transport_security import TransportSecuritySettings
from starlette.applications import Starlette
from starlette.routing import Mount

from bitrix24_bridge.accounts import AccountManager
from bitrix24_bridge.api.models import IncomingMessage, Mention
from bitrix24_bridge.channel import Bitrix24Channel
from bitrix24_bridge.config import AccountSettings, ChannelConfig
from bitrix24_bridge.server import AppContext
from bitrix24_bridge.tools.accounts import register_account_tools
from bitrix24_bridge.tools.messaging import register_messaging_tools
from bitrix24_bridge.webhook.handler import WebhookHandler

TEST_SERVER_URL = "http://testserver"
WEBHOOK_URL = "https://test.bitrix24.ru/rest/1/abc/"


# -- Component fixtures --


@pytest.fixture
async def e2e_channel() -> AsyncGenerator[Bitrix24Channel]:
    """Channel with one webhook account and two buffered inbound messages."""
    accounts = AccountManager()
    accounts.load_from_config(ChannelConfig(accounts=[
        AccountSettings(id="default", webhook_url=WEBHOOK_URL, bot_id=42, bot_code="agent_default"),
        AccountSettings(id="sales", webhook_url="https://sales.bitrix24.ru/rest/3/xyz/"),
    ]))
    channel = Bitrix24Channel(accounts, public_url=TEST_SERVER_URL)

    await channel.handle_incoming_message("default", IncomingMessage(
        message_id=1,
        dialog_id="101",
        text="**Hi**, can you check deal 5?",
        from_user_id=7,
        from_user_name="Ivan",
        mentions=[Mention(user_id=42, name="Agent")],
        bot_id=42,
        bot_code="agent_default",
        domain="test.bitrix24.ru",
    ))
    await channel.handle_incoming_message("default", IncomingMessage(
        message_id=2,
        dialog_id="chat9",
        chat_id=9,
        text="Team chat question",
        from_user_id=8,
        from_user_name="Olga",
        bot_id=42,
        bot_code="agent_default",
        domain="test.bitrix24.ru",
    ))
    yield channel
    await channel.close()


def _build_mcp_server_and_app(channel: Bitrix24Channel) -> tuple[FastMCP, Starlette]:
    """Build the FastMCP server and Starlette app (shared by fixtures)."""

    @contextlib.asynccontextmanager
    async def test_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
        yield AppContext(channel=channel)

    mcp_server = FastMCP(
        name="Bitrix24 Bridge",
        instructions="Test MCP server",
        lifespan=test_lifespan,
        transport_security=TransportSecuritySettings(
            enable_dns_rebinding_protection=False,
        ),
    )

    register_account_tools(mcp_server)
    register_messaging_tools(mcp_server)

    mcp_app = mcp_server.streamable_http_app()

    # No lifespan on the Starlette app -- session_manager.run() is managed
    # explicitly in the e2e_mcp_session fixture (httpx.ASGITransport doesn't
    # trigger ASGI lifespan events).
    routes = [
        *WebhookHandler(channel).routes(),
        Mount("/", mcp_app),
    ]
    return mcp_server, Starlette(routes=routes)


@pytest.fixture
def e2e_app(e2e_channel: Bitrix24Channel) -> Starlette:
    """ASGI app for raw HTTP tests (webhook routes)."""
    _, app = _build_mcp_server_and_app(e2e_channel)
    return app


@pytest.fixture
async def e2e_mcp_session(e2e_channel: Bitrix24Channel) -> AsyncGenerator[ClientSession]:
    """Connected and initialized MCP ClientSession over in-process ASGI transport.

    Runs the full MCP client stack in a dedicated asyncio task so that all
    anyio cancel scopes are entered and exited within the same task.
    pytest-asyncio tears down async generator fixtures in a different task
    from setup, which causes anyio to raise 'Attempted to exit cancel scope
    in a different task' during teardown of nested context managers.
    """
    mcp_server, app = _build_mcp_server_and_app(e2e_channel)

    ready: asyncio.Event = asyncio.Event()
    done: asyncio.Event = asyncio.Event()
    session_ref: dict[str, ClientSession] = {}

    async def _run() -> None:
        async with mcp_server.session_manager.run():
            transport = httpx.ASGITransport(app=app)  # type: ignore[arg-type]
            async with httpx.AsyncClient(transport=transport, base_url=TEST_SERVER_URL) as http_client:
                async with streamable_http_client(
                    f"{TEST_SERVER_URL}/mcp",
                    http_client=http_client,
                ) as (read_stream, write_stream, _):
                    async with ClientSession(read_stream, write_stream) as session:
                        await session.initialize()
                        session_ref["session"] = session
                        ready.set()
                        await done.wait()

    task = asyncio.create_task(_run())
    await ready.wait()

    yield session_ref["session"]

    done.set()
    try:
        await asyncio.wait_for(task, timeout=5.0)
    except (TimeoutError, RuntimeError, BaseExceptionGroup):
        pass
    if not task.done():
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
