"""oauthsession - OAuth 2.0 authorization code + PKCE client core.

Acquires tokens from an OpenID Connect provider, keeps them in memory,
refreshes them before they expire, and authenticates outgoing HTTP
requests with single-flight recovery from 401 responses.
"""

from __future__ import annotations

from .auth import (
    AuthenticatedClient,
    CallbackServer,
    PkceMaterial,
    ProviderClient,
    RefreshCoordinator,
    RequestAttempt,
    SessionController,
    TokenStore,
)
from .config import (
    HttpSettings,
    LogSettings,
    OAuthSessionSettings,
    OAuthSettings,
    TokenSettings,
    clear_settings,
    get_settings,
    reload_settings,
)
from .exceptions import (
    AuthenticationError,
    AuthorizationDeniedError,
    ConfigurationError,
    CsrfMismatchError,
    InvalidTokenError,
    MissingPkceMaterialError,
    NetworkError,
    NetworkTimeoutError,
    OAuthSessionError,
    ProviderError,
    RevocationError,
    SessionExpiredError,
    TokenError,
    TokenExpiredError,
)
from .log import enable_debug, get_logger, set_level
from .state import (
    ApiError,
    ApiResult,
    AuthState,
    AuthStatus,
    CallbackParams,
    CredentialSet,
    PendingAuthStore,
    ProviderMetadata,
    TokenResponse,
    UserIdentity,
)


__version__ = "0.1.0"

__all__ = [
    "ApiError",
    "ApiResult",
    "AuthState",
    "AuthStatus",
    "AuthenticatedClient",
    "AuthenticationError",
    "AuthorizationDeniedError",
    "CallbackParams",
    "CallbackServer",
    "ConfigurationError",
    "CredentialSet",
    "CsrfMismatchError",
    "HttpSettings",
    "InvalidTokenError",
    "LogSettings",
    "MissingPkceMaterialError",
    "NetworkError",
    "NetworkTimeoutError",
    "OAuthSessionError",
    "OAuthSessionSettings",
    "OAuthSettings",
    "PendingAuthStore",
    "PkceMaterial",
    "ProviderClient",
    "ProviderError",
    "ProviderMetadata",
    "RefreshCoordinator",
    "RequestAttempt",
    "RevocationError",
    "SessionController",
    "SessionExpiredError",
    "TokenError",
    "TokenExpiredError",
    "TokenResponse",
    "TokenSettings",
    "TokenStore",
    "UserIdentity",
    "__version__",
    "clear_settings",
    "enable_debug",
    "get_logger",
    "get_settings",
    "reload_settings",
    "set_level",
]
