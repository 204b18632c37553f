"""Channel configuration: accounts, credentials, bot profiles."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal
from urllib.parse import urlparse

import orjson
from pydantic import BaseModel, Field

from bitrix24_bridge.api.models import OAuthCredential, WebhookCredential

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".bitrix24-bridge"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.json"
WEBHOOK_URL_ENV = "BITRIX24_WEBHOOK_URL"
DEFAULT_ACCOUNT_ID = "default"

BotColor = Literal[
    "RED", "GREEN", "MINT", "LIGHT_BLUE", "DARK_BLUE", "PURPLE", "AQUA", "PINK",
    "LIME", "BROWN", "AZURE", "KHAKI", "SAND", "MARENGO", "GRAY", "GRAPHITE",
]


class BotSettings(BaseModel):
    """Profile of the chat bot registered in a portal."""

    name: str = "Agent"
    last_name: str | None = None
    color: BotColor = "PURPLE"
    work_position: str = "AI Assistant"
    avatar: str | None = None  # base64
    email: str | None = None


class AccountSettings(BaseModel):
    """One portal connection as written in the config file."""

    id: str = DEFAULT_ACCOUNT_ID
    domain: str | None = None
    webhook_url: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: float | None = None
    client_id: str | None = None
    client_secret: str | None = None
    enabled: bool = True
    text_chunk_limit: int = Field(default=4000, ge=1)
    rate_limit: int = Field(default=2, ge=1)
    bot: BotSettings = Field(default_factory=BotSettings)
    bot_id: int | None = None
    bot_code: str | None = None
    dm_policy: Literal["open", "paired"] = "open"
    application_token: str | None = None


class ChannelConfig(BaseModel):
    """Top-level channel config; channel-level values apply to every account."""

    webhook_url: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    accounts: list[AccountSettings] = Field(default_factory=list)


def load_config(path: Path | None = None) -> ChannelConfig:
    """Read the JSON config file. A missing file yields an empty config."""
    config_path = path or DEFAULT_CONFIG_PATH
    if not config_path.exists():
        logger.info("No config at %s, relying on %s", config_path, WEBHOOK_URL_ENV)
        return ChannelConfig()
    return ChannelConfig.model_validate(orjson.loads(config_path.read_bytes()))


def normalize_webhook_url(url: str | None) -> str | None:
    """Trim and add a trailing slash; blank values become None."""
    if not url or not url.strip():
        return None
    trimmed = url.strip()
    return trimmed if trimmed.endswith("/") else f"{trimmed}/"


def _strip(value: str | None) -> str | None:
    return value.strip() if value and value.strip() else None


def resolve_credential(
    account: AccountSettings,
    channel: ChannelConfig,
    is_default: bool,
) -> WebhookCredential | OAuthCredential | None:
    """Pick the credential for an account.

    Order: account webhook URL, account OAuth token, then (default account
    only) the channel webhook URL and the BITRIX24_WEBHOOK_URL variable.
    """
    account_url = normalize_webhook_url(account.webhook_url)
    if account_url:
        return WebhookCredential(webhook_url=account_url)

    access_token = _strip(account.access_token)
    if access_token:
        return OAuthCredential(
            access_token=access_token,
            refresh_token=_strip(account.refresh_token),
            expires_at=account.expires_at,
            client_id=_strip(account.client_id or channel.client_id),
            client_secret=_strip(account.client_secret or channel.client_secret),
        )

    if not is_default:
        return None

    for candidate in (channel.webhook_url, os.environ.get(WEBHOOK_URL_ENV)):
        url = normalize_webhook_url(candidate)
        if url:
            return WebhookCredential(webhook_url=url)
    return None


def domain_from_webhook_url(webhook_url: str) -> str:
    return urlparse(webhook_url).hostname or ""


def is_valid_webhook_url(url: str) -> bool:
    """Loose sanity check: https, a /rest/ path, and a bitrix24 host."""
    parsed = urlparse(url)
    return (
        parsed.scheme == "https"
        and parsed.path.startswith("/rest/")
        and "bitrix24" in (parsed.hostname or "")
    )
