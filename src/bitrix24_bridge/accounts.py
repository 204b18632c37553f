"""Multiple Bitrix24 portal connections, one client per account."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Literal

from pydantic import BaseModel, Field

from bitrix24_bridge.api.client import Bitrix24Client
from bitrix24_bridge.api.models import (
    Credential,
    OAuthCredential,
    ProbeResult,
    RefreshedTokens,
    WebhookCredential,
)
from bitrix24_bridge.auth.token_store import TokenStore, TokenStoreError
from bitrix24_bridge.config import (
    DEFAULT_ACCOUNT_ID,
    AccountSettings,
    BotSettings,
    ChannelConfig,
    domain_from_webhook_url,
    is_valid_webhook_url,
    resolve_credential,
)
from bitrix24_bridge.messaging.files import DiskStorageCache

logger = logging.getLogger(__name__)

AccountTokenCallback = Callable[[str, RefreshedTokens], Awaitable[None] | None]


class AccountNotFoundError(KeyError):
    def __init__(self, account_id: str) -> None:
        super().__init__(account_id)
        self.account_id = account_id

    def __str__(self) -> str:
        return f'Account "{self.account_id}" not found'


class Account(BaseModel):
    """A configured portal connection with its resolved credential."""

    id: str
    domain: str
    credential: Credential
    enabled: bool = True
    text_chunk_limit: int = 4000
    rate_limit: int = 2
    bot: BotSettings = Field(default_factory=BotSettings)
    bot_id: int | None = None
    bot_code: str | None = None
    dm_policy: Literal["open", "paired"] = "open"
    application_token: str | None = None


def _domain_for(settings: AccountSettings, credential: WebhookCredential | OAuthCredential) -> str:
    if settings.domain:
        return settings.domain
    if isinstance(credential, WebhookCredential):
        return domain_from_webhook_url(credential.webhook_url)
    return ""


class AccountManager:
    """Registry of portal accounts and their lazily created API clients."""

    def __init__(self, token_store: TokenStore | None = None) -> None:
        self.token_store = token_store
        self.storage = DiskStorageCache()
        self._accounts: dict[str, Account] = {}
        self._clients: dict[str, Bitrix24Client] = {}
        self._token_callback: AccountTokenCallback | None = None
        if token_store is not None:
            self._token_callback = token_store.save_tokens

    def load_from_config(self, config: ChannelConfig) -> None:
        for settings in config.accounts:
            is_default = settings.id == DEFAULT_ACCOUNT_ID
            credential = resolve_credential(settings, config, is_default)
            if credential is None:
                logger.warning("Account %s has no credentials, skipping", settings.id)
                continue
            if isinstance(credential, WebhookCredential) and not is_valid_webhook_url(credential.webhook_url):
                logger.warning("Account %s webhook URL does not look like a Bitrix24 REST webhook", settings.id)
            self._accounts[settings.id] = Account(
                id=settings.id,
                domain=_domain_for(settings, credential),
                credential=credential,
                **settings.model_dump(include={
                    "enabled", "text_chunk_limit", "rate_limit", "bot",
                    "bot_id", "bot_code", "dm_policy", "application_token",
                }),
            )

        if not self._accounts:
            fallback = AccountSettings(id=DEFAULT_ACCOUNT_ID)
            credential = resolve_credential(fallback, config, is_default=True)
            if credential is not None:
                self._accounts[DEFAULT_ACCOUNT_ID] = Account(
                    id=DEFAULT_ACCOUNT_ID,
                    domain=_domain_for(fallback, credential),
                    credential=credential,
                )

        logger.info("Loaded %d Bitrix24 account(s)", len(self._accounts))

    # -- Lookup --

    def list_accounts(self) -> list[Account]:
        return list(self._accounts.values())

    def list_enabled_accounts(self) -> list[Account]:
        return [account for account in self._accounts.values() if account.enabled]

    def list_account_ids(self) -> list[str]:
        return list(self._accounts)

    def get_account(self, account_id: str) -> Account | None:
        return self._accounts.get(account_id)

    def get_default_account(self) -> Account | None:
        """The account named "default", otherwise the first one configured."""
        if DEFAULT_ACCOUNT_ID in self._accounts:
            return self._accounts[DEFAULT_ACCOUNT_ID]
        return next(iter(self._accounts.values()), None)

    def resolve_default_account_id(self) -> str:
        account = self.get_default_account()
        return account.id if account else DEFAULT_ACCOUNT_ID

    def find_by_bot_code(self, bot_code: str) -> Account | None:
        for account in self._accounts.values():
            if account.bot_code == bot_code:
                return account
        return None

    def set_bot_info(self, account_id: str, bot_id: int, bot_code: str) -> None:
        account = self._accounts.get(account_id)
        if account is not None:
            account.bot_id = bot_id
            account.bot_code = bot_code

    # -- Clients --

    def set_token_refresh_callback(self, callback: AccountTokenCallback | None) -> None:
        """Callback for persisting refreshed OAuth tokens, applies to new clients."""
        self._token_callback = callback

    def _credential_with_stored_tokens(self, account: Account) -> WebhookCredential | OAuthCredential:
        credential = account.credential
        if self.token_store is None or not isinstance(credential, OAuthCredential):
            return credential
        try:
            stored = self.token_store.load_tokens(account.id)
        except TokenStoreError:
            logger.warning("Stored tokens unreadable, using configured token for %s", account.id, exc_info=True)
            return credential
        if stored is None:
            return credential
        logger.debug("Using stored tokens for account %s", account.id)
        return credential.model_copy(update=stored.model_dump())

    def get_client(self, account_id: str) -> Bitrix24Client:
        """Get or create the API client for an account."""
        client = self._clients.get(account_id)
        if client is not None:
            return client

        account = self._accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)

        callback = self._token_callback
        client = Bitrix24Client(
            domain=account.domain,
            credential=self._credential_with_stored_tokens(account),
            rate_limit=account.rate_limit,
            on_token_refresh=(lambda tokens: callback(account_id, tokens)) if callback else None,
        )
        self._clients[account_id] = client
        return client

    async def probe_account(self, account_id: str) -> ProbeResult:
        """Check connectivity. Never raises."""
        try:
            client = self.get_client(account_id)
        except AccountNotFoundError as exc:
            return ProbeResult(ok=False, error=str(exc))
        return await client.probe()

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
