"""Bitrix24 OAuth 2.0 token endpoint helpers.

Bitrix24 applications obtain and refresh tokens through a central endpoint
rather than through the portal itself. Both grants are plain GET requests
with query parameters; failures come back as an ``{error, error_description}``
envelope.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from bitrix24_bridge.api.models import TokenResponse

logger = logging.getLogger(__name__)

OAUTH_URL = "https://oauth.bitrix.info/oauth/token/"
OAUTH_TIMEOUT = 30.0
EXPIRY_BUFFER_SECONDS = 5 * 60


class OAuthError(Exception):
    """The token endpoint rejected a code exchange or refresh."""

    def __init__(self, code: str, description: str = "") -> None:
        super().__init__(f"OAuth error: {code} - {description}")
        self.code = code
        self.description = description


async def _request_tokens(params: dict[str, str]) -> TokenResponse:
    async with httpx.AsyncClient(timeout=OAUTH_TIMEOUT) as http:
        resp = await http.get(OAUTH_URL, params=params)

    try:
        data: Any = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("error"):
        raise OAuthError(data["error"], data.get("error_description") or "")
    resp.raise_for_status()
    return TokenResponse.model_validate(data)


async def exchange_code(code: str, client_id: str, client_secret: str) -> TokenResponse:
    """Exchange an authorization code for tokens (once, at app installation)."""
    logger.info("Exchanging authorization code for tokens")
    return await _request_tokens({
        "grant_type": "authorization_code",
        "client_id": client_id,
        "client_secret": client_secret,
        "code": code,
    })


async def refresh_tokens(refresh_token: str, client_id: str, client_secret: str) -> TokenResponse:
    """Trade a refresh token for a new access/refresh token pair."""
    return await _request_tokens({
        "grant_type": "refresh_token",
        "client_id": client_id,
        "client_secret": client_secret,
        "refresh_token": refresh_token,
    })


def expires_at_from_response(
    expires_in: float, buffer: float = EXPIRY_BUFFER_SECONDS
) -> float:
    """Absolute expiry (unix seconds) with the refresh buffer already subtracted."""
    return time.time() + expires_in - buffer


def is_token_expired(expires_at: float | None) -> bool:
    """True once the clock passes `expires_at`. Unknown expiry never expires."""
    if expires_at is None:
        return False
    return time.time() >= expires_at
