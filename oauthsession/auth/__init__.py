"""OAuth2 authorization code + PKCE client.

Provides PKCE generation, in-memory token storage, the provider client,
single-flight refresh, the session controller and an authenticated HTTP
client.
"""

from __future__ import annotations

from .callback_server import CallbackServer
from .client import AuthenticatedClient, RequestAttempt, to_api_error
from .jwt import decode_claims, extract_user_identity, is_token_expired, validate_claims
from .pkce import (
    PkceMaterial,
    generate_challenge,
    generate_nonce,
    generate_state,
    generate_verifier,
)
from .providers import ProviderClient
from .refresh import RefreshCoordinator
from .session import SessionController
from .token_store import TokenStore


__all__ = [
    "AuthenticatedClient",
    "CallbackServer",
    "PkceMaterial",
    "ProviderClient",
    "RefreshCoordinator",
    "RequestAttempt",
    "SessionController",
    "TokenStore",
    "decode_claims",
    "extract_user_identity",
    "generate_challenge",
    "generate_nonce",
    "generate_state",
    "generate_verifier",
    "is_token_expired",
    "to_api_error",
    "validate_claims",
]
