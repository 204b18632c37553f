"""Tests for the Bitrix24 OAuth token endpoint helpers."""

from __future__ import annotations

import time

import httpx
import pytest
import respx

from bitrix24_bridge.auth.oauth import (
    OAUTH_URL,
    OAuthError,
    exchange_code,
    expires_at_from_response,
    is_token_expired,
    refresh_tokens,
)

TOKENS = {
    "access_token": "new_access",
    "refresh_token": "new_refresh",
    "expires_in": 3600,
    "domain": "test.bitrix24.ru",
    "member_id": "m1",
}


@respx.mock
@pytest.mark.asyncio
async def test_refresh_tokens_sends_refresh_grant() -> None:
    route = respx.get(OAUTH_URL).mock(return_value=httpx.Response(200, json=TOKENS))
    tokens = await refresh_tokens("old_refresh", "app.1", "secret")

    assert tokens.access_token == "new_access"
    assert tokens.refresh_token == "new_refresh"
    params = route.calls.last.request.url.params
    assert params["grant_type"] == "refresh_token"
    assert params["refresh_token"] == "old_refresh"
    assert params["client_id"] == "app.1"


@respx.mock
@pytest.mark.asyncio
async def test_exchange_code_sends_authorization_code_grant() -> None:
    route = respx.get(OAUTH_URL).mock(return_value=httpx.Response(200, json=TOKENS))
    tokens = await exchange_code("code123", "app.1", "secret")

    assert tokens.domain == "test.bitrix24.ru"
    params = route.calls.last.request.url.params
    assert params["grant_type"] == "authorization_code"
    assert params["code"] == "code123"


@respx.mock
@pytest.mark.asyncio
async def test_error_envelope_raises_oauth_error() -> None:
    respx.get(OAUTH_URL).mock(return_value=httpx.Response(400, json={
        "error": "invalid_grant",
        "error_description": "Invalid refresh token",
    }))
    with pytest.raises(OAuthError) as exc_info:
        await refresh_tokens("bad", "app.1", "secret")
    assert exc_info.value.code == "invalid_grant"
    assert "Invalid refresh token" in str(exc_info.value)


@respx.mock
@pytest.mark.asyncio
async def test_http_failure_without_envelope_raises_status_error() -> None:
    respx.get(OAUTH_URL).mock(return_value=httpx.Response(502, text="Bad Gateway"))
    with pytest.raises(httpx.HTTPStatusError):
        await refresh_tokens("r", "app.1", "secret")


class TestExpiry:
    def test_expires_at_subtracts_buffer(self) -> None:
        before = time.time()
        expires_at = expires_at_from_response(3600)
        assert before + 3600 - 300 <= expires_at <= time.time() + 3600 - 300

    def test_unknown_expiry_never_expires(self) -> None:
        assert is_token_expired(None) is False

    def test_past_expiry_is_expired(self) -> None:
        assert is_token_expired(time.time() - 1) is True
        assert is_token_expired(time.time() + 60) is False
