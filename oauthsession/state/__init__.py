"""Value types and short-lived login storage."""

from __future__ import annotations

from .pending import PendingAuthStore
from .types import (
    ApiError,
    ApiResult,
    AuthState,
    AuthStatus,
    CallbackParams,
    CredentialSet,
    ProviderMetadata,
    TokenResponse,
    UserIdentity,
)


__all__ = [
    "ApiError",
    "ApiResult",
    "AuthState",
    "AuthStatus",
    "CallbackParams",
    "CredentialSet",
    "PendingAuthStore",
    "ProviderMetadata",
    "TokenResponse",
    "UserIdentity",
]
