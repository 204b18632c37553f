"""Async Bitrix24 REST API client."""

from __future__ import annotations

import base64
import logging
from typing import Any
from urllib.parse import urlparse

import httpx

from bitrix24_bridge.api.models import (
    ApiResponse,
    DiskFile,
    OAuthCredential,
    ProbeResult,
    WebhookCredential,
)
from bitrix24_bridge.api.rate_limiter import DEFAULT_REQUESTS_PER_SECOND, TokenBucketRateLimiter
from bitrix24_bridge.auth.oauth import OAuthError
from bitrix24_bridge.auth.refresh import (
    TOKEN_ERROR_CODES,
    TokenRefreshCallback,
    TokenRefreshCoordinator,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DOWNLOAD_TIMEOUT = 60.0


class Bitrix24Error(Exception):
    """The REST API answered with an error envelope."""

    def __init__(self, code: str, description: str, method: str) -> None:
        super().__init__(f"Bitrix24 API error [{method}]: {code} - {description}")
        self.code = code
        self.description = description
        self.method = method


class Bitrix24Client:
    """Async client for the Bitrix24 REST API.

    Works with either an inbound-webhook URL (secret embedded in the path) or
    an OAuth access token (sent as the ``auth`` parameter). Every call goes
    through a token bucket (default 2 req/s, the portal's own limit). OAuth
    tokens are refreshed before a call once they expire, and once more when
    the portal rejects them, after which the call is retried exactly once.
    """

    def __init__(
        self,
        domain: str,
        credential: WebhookCredential | OAuthCredential,
        rate_limit: int = DEFAULT_REQUESTS_PER_SECOND,
        timeout: float = DEFAULT_TIMEOUT,
        on_token_refresh: TokenRefreshCallback | None = None,
    ) -> None:
        self.domain = domain
        self._auth = TokenRefreshCoordinator(credential, on_refresh=on_token_refresh)
        self._limiter = TokenBucketRateLimiter(rate_limit)
        self.base_url = self._resolve_base_url(domain, credential)
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=10.0),
        )

    @staticmethod
    def _resolve_base_url(domain: str, credential: WebhookCredential | OAuthCredential) -> str:
        if isinstance(credential, WebhookCredential):
            # Already https://{domain}/rest/{user_id}/{secret}/
            return credential.webhook_url.rstrip("/")
        return f"https://{domain}/rest"

    @property
    def credential(self) -> WebhookCredential | OAuthCredential:
        return self._auth.credential

    @property
    def token_refresher(self) -> TokenRefreshCoordinator:
        return self._auth

    @property
    def rate_limiter(self) -> TokenBucketRateLimiter:
        return self._limiter

    def _access_token(self) -> str | None:
        credential = self._auth.credential
        if isinstance(credential, OAuthCredential):
            return credential.access_token
        return None

    def _auth_params(self) -> dict[str, str]:
        token = self._access_token()
        return {"auth": token} if token is not None else {}

    async def close(self) -> None:
        await self._auth.wait_for_persistence()
        self._limiter.destroy()
        await self._http.aclose()

    # -- Method calls --

    async def _post(self, method: str, params: dict[str, Any]) -> ApiResponse:
        resp = await self._http.post(f"/{method}", json={**params, **self._auth_params()})
        try:
            data = resp.json()
        except ValueError:
            resp.raise_for_status()
            raise Bitrix24Error("INVALID_RESPONSE", "Response body is not JSON", method) from None
        # Token errors arrive as 401 with a regular error envelope
        if isinstance(data, dict) and data.get("error"):
            return ApiResponse.model_validate(data)
        resp.raise_for_status()
        return ApiResponse.model_validate(data)

    async def call_method(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Call any Bitrix24 REST method and return its ``result``."""
        params = params or {}
        await self._auth.refresh_if_needed()
        await self._limiter.acquire()
        # _post reads the same token before its first await
        sent_token = self._access_token()
        response = await self._post(method, params)
        if not response.error:
            return response.result

        if response.error in TOKEN_ERROR_CODES and self._auth.can_refresh:
            logger.info("Token rejected by %s (%s), refreshing and retrying", method, response.error)
            await self._auth.force_refresh(stale_token=sent_token)
            await self._limiter.acquire()
            response = await self._post(method, params)
            if not response.error:
                return response.result

        raise Bitrix24Error(response.error, response.error_description or "", method)

    # -- Files --

    async def upload_file(self, storage_id: int, file_name: str, content: bytes) -> DiskFile:
        """Upload a file into a Disk storage. Returns the created file record."""
        encoded = base64.b64encode(content).decode("ascii")
        result = await self.call_method("disk.storage.uploadfile", {
            "id": storage_id,
            "data": {"NAME": file_name},
            "fileContent": [file_name, encoded],
        })
        return DiskFile.model_validate(result)

    async def _download(self, url: str) -> bytes:
        # DOWNLOAD_URL carries its own query (token, id); auth is added to it
        target = httpx.URL(url).copy_merge_params(self._auth_params())
        resp = await self._http.get(target, timeout=DOWNLOAD_TIMEOUT, follow_redirects=True)
        resp.raise_for_status()
        return resp.content

    async def download_file(self, download_url: str) -> bytes:
        """Download a file by its DOWNLOAD_URL."""
        await self._auth.refresh_if_needed()
        await self._limiter.acquire()
        sent_token = self._access_token()
        try:
            return await self._download(download_url)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code not in (401, 403) or not self._auth.can_refresh:
                raise
            logger.info("Download rejected (%d), refreshing and retrying", exc.response.status_code)
        await self._auth.force_refresh(stale_token=sent_token)
        await self._limiter.acquire()
        return await self._download(download_url)

    # -- Diagnostics --

    async def probe(self) -> ProbeResult:
        """Check that the portal is reachable with the current credential."""
        try:
            user = await self.call_method("user.current")
        except (Bitrix24Error, OAuthError, httpx.HTTPError) as exc:
            return ProbeResult(ok=False, domain=self.domain, error=str(exc))
        user_id = user.get("ID") if isinstance(user, dict) else None
        return ProbeResult(
            ok=True,
            domain=self.domain,
            user_id=str(user_id) if user_id is not None else None,
        )


def create_client_from_webhook(webhook_url: str, **kwargs: Any) -> Bitrix24Client:
    """Create a client from an inbound-webhook URL, deriving the domain from it."""
    domain = urlparse(webhook_url).hostname or ""
    return Bitrix24Client(domain=domain, credential=WebhookCredential(webhook_url=webhook_url), **kwargs)
