"""Single-flight access token refresh.

Only one refresh grant is in flight per token store at a time. The grant
runs in its own task; every caller awaits it through ``asyncio.shield``, so
cancelling one caller never cancels the grant or the other callers.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from ..exceptions import SessionExpiredError


if TYPE_CHECKING:
    from .providers import ProviderClient
    from .token_store import TokenStore


logger = logging.getLogger("oauthsession.auth")

FailureHook = Callable[[BaseException], Any]

SESSION_ENDED_MESSAGE = "Session ended while the access token was being refreshed"


class RefreshCoordinator:
    """Serialize refresh grants for one token store.

    Parameters
    ----------
    provider : ProviderClient
        Performs the refresh grant.
    token_store : TokenStore
        Receives the refreshed credentials.
    """

    def __init__(self, provider: ProviderClient, token_store: TokenStore) -> None:
        """Initialize the coordinator."""
        self.provider = provider
        self.token_store = token_store
        self._inflight: asyncio.Future[str] | None = None
        self._waiting = 0

    @property
    def is_refreshing(self) -> bool:
        """True while a refresh grant is in flight."""
        return self._inflight is not None

    @property
    def pending_count(self) -> int:
        """Number of callers waiting on the refresh in flight."""
        return self._waiting

    async def refresh(self, on_failure: FailureHook | None = None) -> str:
        """Refresh the access token, or join the refresh already running.

        Parameters
        ----------
        on_failure : callable, optional
            Called with the exception when this call started the refresh
            and it failed. Callers that only joined never run it, so
            failure side effects happen once per refresh. It is skipped
            when the session was cleared or replaced while the grant was
            in flight.

        Returns
        -------
        str
            The new access token.

        Raises
        ------
        SessionExpiredError
            If no refresh token is held, or the store was cleared or
            replaced before the grant returned.
        OAuthSessionError
            Whatever the refresh grant raised; every caller receives the
            same exception instance.
        """
        inflight = self._inflight
        if inflight is None:
            inflight = asyncio.ensure_future(self._run(on_failure))
            inflight.add_done_callback(_retrieve_exception)
            self._inflight = inflight
        else:
            logger.debug("Refresh in flight, queued caller (%d waiting)", self._waiting + 1)

        self._waiting += 1
        try:
            return await asyncio.shield(inflight)
        finally:
            self._waiting -= 1

    async def _run(self, on_failure: FailureHook | None) -> str:
        generation = self.token_store.generation
        try:
            return await self._perform(generation)
        except Exception as exc:
            logger.warning("Token refresh failed: %s", exc)
            if on_failure is not None and self.token_store.generation == generation:
                result = on_failure(exc)
                if asyncio.iscoroutine(result):
                    await result
            raise
        finally:
            self._inflight = None

    async def _perform(self, generation: int) -> str:
        refresh_token = self.token_store.get_refresh_token()
        if not refresh_token:
            msg = "No refresh token available"
            raise SessionExpiredError(msg, provider=self.provider.provider_name)
        tokens = await self.provider.refresh_tokens(refresh_token)
        if self.token_store.generation != generation:
            logger.info("Session changed during refresh; discarding the new tokens")
            await self.provider.revoke_token(tokens.access_token)
            if tokens.refresh_token and tokens.refresh_token != refresh_token:
                await self.provider.revoke_token(
                    tokens.refresh_token, token_type_hint="refresh_token"
                )
            raise SessionExpiredError(SESSION_ENDED_MESSAGE, provider=self.provider.provider_name)
        self.token_store.apply_refresh(tokens)
        logger.debug("Access token refreshed")
        return tokens.access_token


def _retrieve_exception(future: asyncio.Future[str]) -> None:
    """Mark a failed grant as observed even when every caller was cancelled."""
    if not future.cancelled():
        future.exception()
