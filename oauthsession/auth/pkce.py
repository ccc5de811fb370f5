"""PKCE (Proof Key for Code Exchange) implementation.

RFC 7636 - Proof Key for Code Exchange for OAuth 2.0 public clients.
Uses S256 challenge method (SHA-256 hash of the code verifier).
"""

from __future__ import annotations

import hashlib
import secrets

from base64 import urlsafe_b64encode
from dataclasses import dataclass


VERIFIER_BYTES = 32
STATE_BYTES = 16


def _b64url(data: bytes) -> str:
    return urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_verifier() -> str:
    """Generate a code verifier.

    Returns
    -------
    str
        32 random bytes, base64url-encoded without padding (43 characters
        from ``[A-Za-z0-9_-]``).
    """
    return _b64url(secrets.token_bytes(VERIFIER_BYTES))


def generate_challenge(verifier: str) -> str:
    """Derive the S256 code challenge for ``verifier``.

    Parameters
    ----------
    verifier : str
        The code verifier.

    Returns
    -------
    str
        base64url(SHA-256(verifier)) without padding.
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return _b64url(digest)


def generate_state() -> str:
    """Generate an opaque CSRF state value."""
    return _b64url(secrets.token_bytes(STATE_BYTES))


def generate_nonce() -> str:
    """Generate an ID token replay nonce."""
    return _b64url(secrets.token_bytes(STATE_BYTES))


@dataclass(frozen=True)
class PkceMaterial:
    """Everything a login attempt must remember until its callback.

    Attributes
    ----------
    code_verifier : str
        The code verifier (high-entropy random string).
    code_challenge : str
        The code challenge (base64url-encoded SHA-256 hash of verifier).
    state : str
        CSRF token echoed back by the provider.
    nonce : str
        Value the provider embeds in the ID token.
    method : str
        The challenge method, always "S256".
    """

    code_verifier: str
    code_challenge: str
    state: str
    nonce: str
    method: str = "S256"

    @classmethod
    def generate(cls) -> PkceMaterial:
        """Generate fresh verifier, challenge, state and nonce."""
        verifier = generate_verifier()
        return cls(
            code_verifier=verifier,
            code_challenge=generate_challenge(verifier),
            state=generate_state(),
            nonce=generate_nonce(),
        )
