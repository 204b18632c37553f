"""OAuth token refresh coordination for a single Bitrix24 client."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from bitrix24_bridge.api.models import OAuthCredential, RefreshedTokens, WebhookCredential
from bitrix24_bridge.auth.oauth import (
    EXPIRY_BUFFER_SECONDS,
    expires_at_from_response,
    is_token_expired,
    refresh_tokens,
)

logger = logging.getLogger(__name__)

TOKEN_ERROR_CODES = frozenset({"expired_token", "invalid_token", "NO_AUTH_FOUND"})

TokenRefreshCallback = Callable[[RefreshedTokens], Awaitable[None] | None]


class TokenState(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    REFRESHING = "refreshing"


class TokenRefreshCoordinator:
    """Owns a client's credential and serializes every change to it.

    At most one refresh request is in flight at a time. Callers that need a
    refresh while one is running await the same task and then read the new
    credential. The credential object is replaced, never edited, so a call
    that already took a snapshot keeps a consistent token.
    """

    def __init__(
        self,
        credential: WebhookCredential | OAuthCredential,
        on_refresh: TokenRefreshCallback | None = None,
        buffer: float = EXPIRY_BUFFER_SECONDS,
    ) -> None:
        self.credential = credential
        self.on_refresh = on_refresh
        self.buffer = buffer
        self.refresh_count = 0
        self._inflight: asyncio.Task[OAuthCredential] | None = None
        self._persist_tasks: set[asyncio.Task[None]] = set()

    @property
    def can_refresh(self) -> bool:
        return isinstance(self.credential, OAuthCredential) and self.credential.can_refresh

    @property
    def state(self) -> TokenState:
        if self._inflight is not None:
            return TokenState.REFRESHING
        if isinstance(self.credential, OAuthCredential) and is_token_expired(
            self.credential.expires_at
        ):
            return TokenState.EXPIRED
        return TokenState.VALID

    async def refresh_if_needed(self) -> None:
        """Refresh proactively when the stored expiry has passed."""
        credential = self.credential
        if not isinstance(credential, OAuthCredential) or credential.expires_at is None:
            return
        if not is_token_expired(credential.expires_at) or not self.can_refresh:
            return
        logger.info("Access token expired, refreshing proactively")
        await self._coalesced_refresh()

    async def force_refresh(self, stale_token: str | None = None) -> None:
        """Refresh regardless of expiry (after the API rejected the token).

        `stale_token` is the access token the rejected call sent. If the
        credential has moved on since then, another caller already refreshed
        and the caller only needs to retry with the current token.
        """
        if not self.can_refresh:
            return
        if (
            self._inflight is None
            and stale_token is not None
            and self.credential.access_token != stale_token
        ):
            logger.debug("Token already refreshed by another call, skipping refresh")
            return
        await self._coalesced_refresh()

    async def _coalesced_refresh(self) -> OAuthCredential:
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._refresh())
            self._inflight.add_done_callback(_retrieve_exception)
        # Shielded so one cancelled waiter cannot abort the refresh for the others
        return await asyncio.shield(self._inflight)

    async def _refresh(self) -> OAuthCredential:
        try:
            current = self.credential
            if not isinstance(current, OAuthCredential):
                raise TypeError("Only OAuth credentials can be refreshed")
            logger.debug("Requesting new OAuth tokens")
            tokens = await refresh_tokens(
                refresh_token=current.refresh_token or "",
                client_id=current.client_id or "",
                client_secret=current.client_secret or "",
            )
            refreshed = current.model_copy(update={
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token or current.refresh_token,
                "expires_at": expires_at_from_response(tokens.expires_in, self.buffer),
            })
            self.credential = refreshed
            self.refresh_count += 1
            logger.info("OAuth tokens refreshed (expires in %ss)", tokens.expires_in)
        except Exception:
            logger.warning("OAuth token refresh failed", exc_info=True)
            raise
        finally:
            self._inflight = None

        self._persist(RefreshedTokens(
            access_token=refreshed.access_token,
            refresh_token=refreshed.refresh_token or "",
            expires_at=refreshed.expires_at or 0.0,
        ))
        return refreshed

    def _persist(self, tokens: RefreshedTokens) -> None:
        if self.on_refresh is None:
            return
        task = asyncio.ensure_future(self._run_callback(self.on_refresh, tokens))
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_done)

    @staticmethod
    async def _run_callback(callback: TokenRefreshCallback, tokens: RefreshedTokens) -> None:
        if inspect.iscoroutinefunction(callback):
            await callback(tokens)
            return
        # Sync callbacks (the encrypted token store) write to disk off the loop
        result = await asyncio.to_thread(callback, tokens)
        if inspect.isawaitable(result):
            await result

    def _persist_done(self, task: asyncio.Task[None]) -> None:
        self._persist_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Token persistence callback failed", exc_info=task.exception())

    async def wait_for_persistence(self) -> None:
        """Wait for pending persistence callbacks. Their failures are only logged."""
        if self._persist_tasks:
            await asyncio.gather(*self._persist_tasks, return_exceptions=True)


def _retrieve_exception(task: asyncio.Future[OAuthCredential]) -> None:
    # Every waiter may have been cancelled; the failure is already logged by _refresh
    if not task.cancelled():
        task.exception()
