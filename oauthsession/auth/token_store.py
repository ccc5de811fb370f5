"""In-memory credential holder.

One ``TokenStore`` belongs to one session context; it is passed explicitly
to whatever needs it (session controller, HTTP client) instead of living
in a module-level singleton.
"""

from __future__ import annotations

import logging
import time

from collections.abc import Callable

from ..state.types import CredentialSet, TokenResponse


logger = logging.getLogger("oauthsession.auth")

DEFAULT_BUFFER = 300.0

TokenListener = Callable[[CredentialSet], None]


class TokenStore:
    """Hold access, refresh and ID tokens together with the access token expiry.

    Parameters
    ----------
    clock : Callable[[], float]
        Time source returning a Unix timestamp, ``time.time`` by default.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        """Initialize an empty token store."""
        self._clock = clock
        self._access_token: str | None = None
        self._refresh_token: str | None = None
        self._id_token: str | None = None
        self._expires_at: float | None = None
        self._generation = 0
        self._listeners: list[TokenListener] = []

    @property
    def generation(self) -> int:
        """Counter bumped whenever the credential set is replaced or cleared.

        Refresh results fetched under an older generation are discarded.
        """
        return self._generation

    def set_tokens(self, response: TokenResponse) -> None:
        """Replace every stored credential with a fresh token response.

        Parameters
        ----------
        response : TokenResponse
            The provider token response. ``expires_at`` becomes
            ``now + response.expires_in``.
        """
        self._access_token = response.access_token
        self._refresh_token = response.refresh_token
        self._id_token = response.id_token
        self._expires_at = self._clock() + response.expires_in
        self._generation += 1
        logger.debug("Stored tokens, expires in %ss", response.expires_in)
        self._notify()

    def update_access_token(self, access_token: str, expires_in: float) -> None:
        """Replace only the access token and its expiry."""
        self._access_token = access_token
        self._expires_at = self._clock() + expires_in
        self._notify()

    def apply_refresh(self, response: TokenResponse) -> None:
        """Apply a refresh grant result.

        The access token and expiry are always replaced; the refresh and ID
        tokens only when the response carries new ones.
        """
        self._access_token = response.access_token
        self._expires_at = self._clock() + response.expires_in
        if response.refresh_token:
            self._refresh_token = response.refresh_token
        if response.id_token:
            self._id_token = response.id_token
        logger.debug("Applied refreshed tokens, expires in %ss", response.expires_in)
        self._notify()

    def get_access_token(self) -> str | None:
        """Return the current access token, if any."""
        return self._access_token

    def get_refresh_token(self) -> str | None:
        """Return the current refresh token, if any."""
        return self._refresh_token

    def get_id_token(self) -> str | None:
        """Return the current ID token, if any."""
        return self._id_token

    @property
    def expires_at(self) -> float | None:
        """Unix timestamp at which the access token expires."""
        return self._expires_at

    def time_to_expiry(self) -> float | None:
        """Seconds until the access token expires, or None when unknown."""
        if self._expires_at is None:
            return None
        return self._expires_at - self._clock()

    def is_expired(self, buffer: float = DEFAULT_BUFFER) -> bool:
        """Check whether the access token is expired or about to expire.

        Parameters
        ----------
        buffer : float
            Seconds of lead time; a token expiring within the buffer
            counts as expired.

        Returns
        -------
        bool
            True if no expiry is known or ``now >= expires_at - buffer``.
        """
        if self._expires_at is None:
            return True
        return self._clock() >= self._expires_at - buffer

    def has_valid_tokens(self) -> bool:
        """Return True when an access token is held and not expired."""
        return self._access_token is not None and not self.is_expired()

    def clear(self) -> None:
        """Forget all credentials. Calling it on an empty store is a no-op."""
        if self.snapshot() == CredentialSet():
            return
        self._access_token = None
        self._refresh_token = None
        self._id_token = None
        self._expires_at = None
        self._generation += 1
        logger.debug("Cleared stored tokens")
        self._notify()

    def snapshot(self) -> CredentialSet:
        """Return an immutable copy of the stored credentials."""
        return CredentialSet(
            access_token=self._access_token,
            refresh_token=self._refresh_token,
            id_token=self._id_token,
            expires_at=self._expires_at,
        )

    def subscribe(self, listener: TokenListener) -> Callable[[], None]:
        """Register a listener called with a snapshot after every change.

        Returns
        -------
        Callable[[], None]
            Function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Token store listener failed")
