"""Bitrix24 chat channel: account lifecycle, outbound sends, inbound buffering."""

from __future__ import annotations

import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable

import httpx

from bitrix24_bridge.accounts import Account, AccountManager, AccountNotFoundError
from bitrix24_bridge.api.client import Bitrix24Error
from bitrix24_bridge.api.models import (
    BotDeleteEvent,
    IncomingMessage,
    MediaAttachment,
    OutgoingMessage,
    ProbeResult,
    WelcomeEvent,
)
from bitrix24_bridge.auth.oauth import OAuthError
from bitrix24_bridge.messaging import files
from bitrix24_bridge.messaging.bot import register_bot, unregister_bot
from bitrix24_bridge.messaging.send import send_message

logger = logging.getLogger(__name__)

INBOX_SIZE = 500

MessageCallback = Callable[[str, IncomingMessage], Awaitable[None] | None]


class BotNotRegisteredError(RuntimeError):
    def __init__(self, account_id: str) -> None:
        super().__init__(f'Account "{account_id}" not configured or bot not registered')
        self.account_id = account_id


class Bitrix24Channel:
    """Connects agents to Bitrix24 dialogs through per-account chat bots.

    Inbound messages are kept in a bounded per-account inbox until an agent
    drains them, and are also handed to the ``on_message`` callback if set.
    """

    def __init__(
        self,
        accounts: AccountManager,
        public_url: str,
        on_message: MessageCallback | None = None,
        inbox_size: int = INBOX_SIZE,
    ) -> None:
        self.accounts = accounts
        self.public_url = public_url
        self.on_message = on_message
        self._inbox_size = inbox_size
        self._inboxes: dict[str, deque[IncomingMessage]] = {}
        self._last_chat_ids: dict[tuple[str, str], int] = {}

    def _require_account(self, account_id: str) -> Account:
        account = self.accounts.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    # -- Outbound --

    async def send_text_message(
        self,
        account_id: str,
        dialog_id: str,
        text: str,
        media: list[MediaAttachment] | None = None,
    ) -> list[str]:
        """Send an agent reply (Markdown) to a dialog. Returns message ids."""
        account = self.accounts.get_account(account_id)
        if account is None or not account.bot_id:
            raise BotNotRegisteredError(account_id)

        return await send_message(
            self.accounts.get_client(account_id),
            OutgoingMessage(bot_id=account.bot_id, dialog_id=dialog_id, text=text, media=media or []),
            text_chunk_limit=account.text_chunk_limit,
            to_chat_id=self._last_chat_ids.get((account_id, dialog_id)),
            storage=self.accounts.storage,
        )

    async def download_attachment(self, account_id: str, file_id: str) -> MediaAttachment:
        return await files.download_attachment(self.accounts.get_client(account_id), file_id)

    # -- Inbound --

    async def handle_incoming_message(self, account_id: str, msg: IncomingMessage) -> None:
        """Buffer an inbound message and notify the callback."""
        if msg.chat_id is not None:
            # Direct dialogs only learn their chat id from inbound events
            self._last_chat_ids[(account_id, msg.dialog_id)] = msg.chat_id

        inbox = self._inboxes.setdefault(account_id, deque(maxlen=self._inbox_size))
        inbox.append(msg)
        logger.debug("Buffered message %d from dialog %s (%s)", msg.message_id, msg.dialog_id, account_id)

        if self.on_message is not None:
            result = self.on_message(account_id, msg)
            if inspect.isawaitable(result):
                await result

    def drain_messages(self, account_id: str | None = None, limit: int = 50) -> list[IncomingMessage]:
        """Pop up to ``limit`` buffered messages, oldest first."""
        inboxes = [self._inboxes.get(account_id)] if account_id else list(self._inboxes.values())
        drained: list[IncomingMessage] = []
        for inbox in inboxes:
            while inbox and len(drained) < limit:
                drained.append(inbox.popleft())
        return drained

    def pending_count(self, account_id: str | None = None) -> int:
        if account_id:
            return len(self._inboxes.get(account_id, ()))
        return sum(len(inbox) for inbox in self._inboxes.values())

    async def handle_welcome(self, account_id: str, event: WelcomeEvent) -> None:
        logger.info("Bot %d joined dialog %s (%s)", event.bot_id, event.dialog_id, account_id)

    async def handle_bot_delete(self, account_id: str, event: BotDeleteEvent) -> None:
        """The bot was removed in the portal; forget its id so it re-registers."""
        account = self.accounts.get_account(account_id)
        if account is not None and account.bot_id == event.bot_id:
            account.bot_id = None
            account.bot_code = None
        logger.warning("Bot %d deleted on %s (%s)", event.bot_id, event.domain, account_id)

    def get_application_token(self, account_id: str) -> str | None:
        account = self.accounts.get_account(account_id)
        return account.application_token if account else None

    # -- Lifecycle --

    async def startup_account(self, account_id: str) -> int:
        """Register the account's bot unless it already is. Returns the bot id."""
        account = self._require_account(account_id)
        if account.bot_id:
            logger.info("Bot already registered for %s (ID: %d)", account_id, account.bot_id)
            return account.bot_id

        logger.info("Registering bot for %s on %s", account_id, account.domain)
        bot_id, bot_code = await register_bot(
            self.accounts.get_client(account_id),
            account_id,
            self.public_url,
            account.bot,
        )
        self.accounts.set_bot_info(account_id, bot_id, bot_code)
        return bot_id

    async def logout_account(self, account_id: str) -> None:
        """Unregister the account's bot. Failures are logged, not raised."""
        account = self.accounts.get_account(account_id)
        if account is None or not account.bot_id:
            return
        try:
            await unregister_bot(self.accounts.get_client(account_id), account.bot_id)
        except (Bitrix24Error, OAuthError, httpx.HTTPError) as exc:
            logger.warning("Failed to unregister bot for %s: %s", account_id, exc)
            return
        account.bot_id = None
        account.bot_code = None
        logger.info("Bot unregistered for %s", account_id)

    async def probe_account(self, account_id: str) -> ProbeResult:
        return await self.accounts.probe_account(account_id)

    async def close(self) -> None:
        await self.accounts.close()
