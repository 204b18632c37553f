"""Tests for the Bitrix24 API client."""

from __future__ import annotations

import asyncio
import base64
import json
import time

import httpx
import pytest
import respx

from bitrix24_bridge.api.client import Bitrix24Client, Bitrix24Error, create_client_from_webhook
from bitrix24_bridge.api.models import OAuthCredential, RefreshedTokens, WebhookCredential
from bitrix24_bridge.auth.oauth import OAUTH_URL

WEBHOOK_URL = "https://test.bitrix24.ru/rest/1/abc/"
REST = "https://test.bitrix24.ru/rest"


@pytest.fixture
def webhook_client() -> Bitrix24Client:
    return create_client_from_webhook(WEBHOOK_URL, rate_limit=50)


def _oauth_client(**kwargs: object) -> Bitrix24Client:
    credential = OAuthCredential(
        access_token="tok_abc",
        refresh_token="ref_abc",
        expires_at=time.time() + 3600,
        client_id="app.1",
        client_secret="secret",
    )
    return Bitrix24Client(domain="test.bitrix24.ru", credential=credential, rate_limit=50, **kwargs)


def _body(request: httpx.Request) -> dict:
    return json.loads(request.content)


@respx.mock
@pytest.mark.asyncio
async def test_webhook_call_posts_to_method_path(webhook_client: Bitrix24Client) -> None:
    route = respx.post(f"{REST}/1/abc/crm.deal.get").mock(
        return_value=httpx.Response(200, json={"result": {"ID": "5", "TITLE": "Deal"}})
    )
    result = await webhook_client.call_method("crm.deal.get", {"id": 5})

    assert result == {"ID": "5", "TITLE": "Deal"}
    assert _body(route.calls.last.request) == {"id": 5}
    assert webhook_client.domain == "test.bitrix24.ru"
    await webhook_client.close()


@respx.mock
@pytest.mark.asyncio
async def test_oauth_call_sends_auth_param() -> None:
    client = _oauth_client()
    route = respx.post(f"{REST}/user.current").mock(
        return_value=httpx.Response(200, json={"result": {"ID": "1"}})
    )
    await client.call_method("user.current")

    assert _body(route.calls.last.request) == {"auth": "tok_abc"}
    await client.close()


@respx.mock
@pytest.mark.asyncio
async def test_api_error_raises_typed_error(webhook_client: Bitrix24Client) -> None:
    respx.post(f"{REST}/1/abc/crm.deal.get").mock(
        return_value=httpx.Response(200, json={
            "error": "ACCESS_DENIED",
            "error_description": "Access denied",
        })
    )
    with pytest.raises(Bitrix24Error) as exc_info:
        await webhook_client.call_method("crm.deal.get", {"id": 1})

    err = exc_info.value
    assert err.code == "ACCESS_DENIED"
    assert err.description == "Access denied"
    assert err.method == "crm.deal.get"
    assert str(err) == "Bitrix24 API error [crm.deal.get]: ACCESS_DENIED - Access denied"
    await webhook_client.close()


@respx.mock
@pytest.mark.asyncio
async def test_expired_token_refreshes_and_retries_once() -> None:
    saved: list[RefreshedTokens] = []
    client = _oauth_client(on_token_refresh=saved.append)
    route = respx.post(f"{REST}/crm.deal.list").mock(side_effect=[
        httpx.Response(401, json={"error": "expired_token", "error_description": "The access token expired"}),
        httpx.Response(200, json={"result": [{"ID": "1"}]}),
    ])
    oauth_route = respx.get(OAUTH_URL).mock(return_value=httpx.Response(200, json={
        "access_token": "tok_new",
        "refresh_token": "ref_new",
        "expires_in": 3600,
    }))

    result = await client.call_method("crm.deal.list")

    assert result == [{"ID": "1"}]
    assert route.call_count == 2
    assert oauth_route.call_count == 1
    assert _body(route.calls[0].request)["auth"] == "tok_abc"
    assert _body(route.calls[1].request)["auth"] == "tok_new"
    assert client.credential.access_token == "tok_new"
    await client.close()
    assert saved[0].refresh_token == "ref_new"


@respx.mock
@pytest.mark.asyncio
async def test_retry_failure_raises_second_error() -> None:
    client = _oauth_client()
    respx.post(f"{REST}/crm.deal.list").mock(side_effect=[
        httpx.Response(401, json={"error": "invalid_token"}),
        httpx.Response(200, json={"error": "ACCESS_DENIED", "error_description": "nope"}),
    ])
    respx.get(OAUTH_URL).mock(return_value=httpx.Response(200, json={
        "access_token": "tok_new",
        "refresh_token": "ref_new",
        "expires_in": 3600,
    }))

    with pytest.raises(Bitrix24Error) as exc_info:
        await client.call_method("crm.deal.list")
    assert exc_info.value.code == "ACCESS_DENIED"
    await client.close()


@respx.mock
@pytest.mark.asyncio
async def test_other_errors_are_not_retried() -> None:
    client = _oauth_client()
    route = respx.post(f"{REST}/crm.deal.list").mock(
        return_value=httpx.Response(200, json={"error": "QUERY_LIMIT_EXCEEDED"})
    )
    oauth_route = respx.get(OAUTH_URL)

    with pytest.raises(Bitrix24Error):
        await client.call_method("crm.deal.list")
    assert route.call_count == 1
    assert oauth_route.call_count == 0
    await client.close()


@respx.mock
@pytest.mark.asyncio
async def test_token_error_on_webhook_is_not_retried(webhook_client: Bitrix24Client) -> None:
    route = respx.post(f"{REST}/1/abc/profile").mock(
        return_value=httpx.Response(401, json={"error": "NO_AUTH_FOUND"})
    )
    with pytest.raises(Bitrix24Error) as exc_info:
        await webhook_client.call_method("profile")
    assert exc_info.value.code == "NO_AUTH_FOUND"
    assert route.call_count == 1
    await webhook_client.close()


@respx.mock
@pytest.mark.asyncio
async def test_expired_token_is_refreshed_before_call() -> None:
    credential = OAuthCredential(
        access_token="tok_old",
        refresh_token="ref_old",
        expires_at=time.time() - 10,
        client_id="app.1",
        client_secret="secret",
    )
    client = Bitrix24Client(domain="test.bitrix24.ru", credential=credential, rate_limit=50)
    route = respx.post(f"{REST}/user.current").mock(
        return_value=httpx.Response(200, json={"result": {"ID": "1"}})
    )
    respx.get(OAUTH_URL).mock(return_value=httpx.Response(200, json={
        "access_token": "tok_new",
        "refresh_token": "ref_new",
        "expires_in": 3600,
    }))

    await client.call_method("user.current")
    assert route.call_count == 1
    assert _body(route.calls.last.request)["auth"] == "tok_new"
    await client.close()


@respx.mock
@pytest.mark.asyncio
async def test_http_error_without_envelope_propagates(webhook_client: Bitrix24Client) -> None:
    respx.post(f"{REST}/1/abc/user.current").mock(return_value=httpx.Response(503, text="down"))
    with pytest.raises(httpx.HTTPStatusError):
        await webhook_client.call_method("user.current")
    await webhook_client.close()


@respx.mock
@pytest.mark.asyncio
async def test_non_json_success_is_invalid_response(webhook_client: Bitrix24Client) -> None:
    respx.post(f"{REST}/1/abc/user.current").mock(return_value=httpx.Response(200, text="<html>"))
    with pytest.raises(Bitrix24Error) as exc_info:
        await webhook_client.call_method("user.current")
    assert exc_info.value.code == "INVALID_RESPONSE"
    await webhook_client.close()


@respx.mock
@pytest.mark.asyncio
async def test_upload_file_sends_base64_content(webhook_client: Bitrix24Client) -> None:
    route = respx.post(f"{REST}/1/abc/disk.storage.uploadfile").mock(
        return_value=httpx.Response(200, json={"result": {"ID": 77, "NAME": "report.pdf"}})
    )
    disk_file = await webhook_client.upload_file(3, "report.pdf", b"%PDF-1.4")

    assert disk_file.ID == 77
    body = _body(route.calls.last.request)
    assert body["id"] == 3
    assert body["data"] == {"NAME": "report.pdf"}
    assert body["fileContent"] == ["report.pdf", base64.b64encode(b"%PDF-1.4").decode()]
    await webhook_client.close()


@respx.mock
@pytest.mark.asyncio
async def test_download_retries_after_refresh_on_401() -> None:
    client = _oauth_client()
    url = "https://test.bitrix24.ru/disk/downloadFile/77/"
    route = respx.get(url).mock(side_effect=[
        httpx.Response(401),
        httpx.Response(200, content=b"file-bytes"),
    ])
    respx.get(OAUTH_URL).mock(return_value=httpx.Response(200, json={
        "access_token": "tok_new",
        "refresh_token": "ref_new",
        "expires_in": 3600,
    }))

    content = await client.download_file(url)

    assert content == b"file-bytes"
    assert route.call_count == 2
    assert route.calls[1].request.url.params["auth"] == "tok_new"
    await client.close()


@respx.mock
@pytest.mark.asyncio
async def test_download_404_is_not_retried() -> None:
    client = _oauth_client()
    url = "https://test.bitrix24.ru/disk/downloadFile/77/"
    route = respx.get(url).mock(return_value=httpx.Response(404))

    with pytest.raises(httpx.HTTPStatusError):
        await client.download_file(url)
    assert route.call_count == 1
    await client.close()


@respx.mock
@pytest.mark.asyncio
async def test_probe_reports_success_and_failure(webhook_client: Bitrix24Client) -> None:
    respx.post(f"{REST}/1/abc/user.current").mock(side_effect=[
        httpx.Response(200, json={"result": {"ID": 1, "NAME": "Admin"}}),
        httpx.Response(200, json={"error": "ACCESS_DENIED"}),
    ])

    ok = await webhook_client.probe()
    assert ok.ok is True
    assert ok.user_id == "1"

    failed = await webhook_client.probe()
    assert failed.ok is False
    assert "ACCESS_DENIED" in (failed.error or "")
    await webhook_client.close()


def test_webhook_credential_base_url() -> None:
    client = Bitrix24Client(
        domain="test.bitrix24.ru",
        credential=WebhookCredential(webhook_url=WEBHOOK_URL),
    )
    assert client.base_url == "https://test.bitrix24.ru/rest/1/abc"


@respx.mock
@pytest.mark.asyncio
async def test_concurrent_token_errors_trigger_one_refresh() -> None:
    client = _oauth_client()
    rejections = 0
    all_sent = asyncio.Event()

    async def portal(request: httpx.Request) -> httpx.Response:
        nonlocal rejections
        token = _body(request)["auth"]
        if token == "tok_abc":
            # Every call sends the old token; the rejections then arrive one after another
            delay = 0.02 * rejections
            rejections += 1
            if rejections == 4:
                all_sent.set()
            await all_sent.wait()
            await asyncio.sleep(delay)
            return httpx.Response(401, json={"error": "expired_token"})
        return httpx.Response(200, json={"result": {"ID": "1", "TOKEN": token}})

    route = respx.post(f"{REST}/user.current").mock(side_effect=portal)
    oauth_route = respx.get(OAUTH_URL).mock(return_value=httpx.Response(200, json={
        "access_token": "tok_new",
        "refresh_token": "ref_new",
        "expires_in": 3600,
    }))

    results = await asyncio.gather(*(client.call_method("user.current") for _ in range(4)))

    assert oauth_route.call_count == 1
    assert [r["TOKEN"] for r in results] == ["tok_new"] * 4
    assert rejections == 4
    assert route.call_count == 8
    await client.close()


@respx.mock
@pytest.mark.asyncio
async def test_download_keeps_url_query_and_adds_auth() -> None:
    client = _oauth_client()
    url = "https://test.bitrix24.ru/rest/download.json?token=disk%7Cabc&id=77"
    route = respx.get("https://test.bitrix24.ru/rest/download.json").mock(
        return_value=httpx.Response(200, content=b"file-bytes")
    )

    assert await client.download_file(url) == b"file-bytes"

    params = route.calls.last.request.url.params
    assert params["token"] == "disk|abc"
    assert params["id"] == "77"
    assert params["auth"] == "tok_abc"
    await client.close()


@respx.mock
@pytest.mark.asyncio
async def test_download_follows_redirect_to_storage() -> None:
    client = _oauth_client()
    url = "https://test.bitrix24.ru/disk/downloadFile/77/"
    respx.get(url).mock(return_value=httpx.Response(302, headers={"Location": "https://cdn.test/file"}))
    respx.get("https://cdn.test/file").mock(return_value=httpx.Response(200, content=b"stored"))

    assert await client.download_file(url) == b"stored"
    await client.close()
