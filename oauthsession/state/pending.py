"""Short-lived storage for in-flight login material.

Holds the PKCE verifier, CSRF state and nonce between the redirect to the
provider and the callback, plus the URL to return to afterwards. Entries
expire after ``max_age`` seconds and are consumed exactly once.
"""

from __future__ import annotations

import logging
import time

from collections.abc import Callable
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from ..auth.pkce import PkceMaterial


logger = logging.getLogger("oauthsession.auth")

VERIFIER_KEY = "pkce_code_verifier"
STATE_KEY = "auth_state"
NONCE_KEY = "auth_nonce"
RETURN_URL_KEY = "return_url"


class PendingAuthStore:
    """TTL-enforced, single-slot store for one pending login.

    Starting a new login overwrites any previous pending material.

    Parameters
    ----------
    max_age : float
        Seconds a pending login stays valid before it is evicted.
    clock : Callable[[], float]
        Time source, ``time.time`` by default.
    """

    def __init__(self, max_age: float = 600.0, clock: Callable[[], float] = time.time) -> None:
        self._store: dict[str, Any] = {}
        self._max_age = max_age
        self._clock = clock
        self._created_at: float | None = None

    def put(self, material: PkceMaterial, return_url: str | None = None) -> None:
        """Store fresh login material, replacing anything pending."""
        self._store[VERIFIER_KEY] = material.code_verifier
        self._store[STATE_KEY] = material.state
        self._store[NONCE_KEY] = material.nonce
        if return_url:
            self._store[RETURN_URL_KEY] = return_url
        else:
            self._store.pop(RETURN_URL_KEY, None)
        self._created_at = self._clock()

    def peek(self) -> dict[str, str] | None:
        """Return the pending verifier/state/nonce without consuming them."""
        self._evict_expired()
        if VERIFIER_KEY not in self._store:
            return None
        return {
            "code_verifier": self._store[VERIFIER_KEY],
            "state": self._store[STATE_KEY],
            "nonce": self._store.get(NONCE_KEY, ""),
        }

    def take(self) -> dict[str, str] | None:
        """Retrieve and remove the pending material (single-use).

        Verifier, state and nonce are removed together; the return URL
        stays until ``pop_return_url`` is called.
        """
        pending = self.peek()
        self._discard_material()
        return pending

    def set_return_url(self, url: str) -> None:
        """Remember where to send the user after login."""
        self._store[RETURN_URL_KEY] = url

    def pop_return_url(self) -> str | None:
        """Retrieve and remove the remembered return URL."""
        return self._store.pop(RETURN_URL_KEY, None)

    def clear(self) -> None:
        """Drop everything pending."""
        self._store.clear()
        self._created_at = None

    def _discard_material(self) -> None:
        for key in (VERIFIER_KEY, STATE_KEY, NONCE_KEY):
            self._store.pop(key, None)
        self._created_at = None

    def _evict_expired(self) -> None:
        if self._created_at is None:
            return
        if self._clock() - self._created_at > self._max_age:
            logger.debug("Pending login material expired after %.0fs", self._max_age)
            self._discard_material()

    def __contains__(self, key: str) -> bool:
        self._evict_expired()
        return key in self._store
