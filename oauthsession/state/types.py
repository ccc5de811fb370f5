"""Type definitions for oauthsession.

Shared value types passed between the provider client, the token store,
the session controller and the authenticated HTTP client.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import parse_qs, urlsplit

from ..exceptions import ProviderError


DEFAULT_EXPIRES_IN = 3600


@dataclass
class TokenResponse:
    """Token set returned by a provider token endpoint.

    Attributes
    ----------
    access_token : str
        The access token for API requests.
    token_type : str
        Token type, typically "Bearer".
    refresh_token : str or None
        Optional refresh token for obtaining new access tokens.
    id_token : str or None
        Optional OIDC ID token (JWT).
    expires_in : int
        Token lifetime in seconds from issuance.
    scope : str
        Space-separated list of granted scopes.
    raw : dict[str, Any]
        The raw token response from the provider.
    """

    access_token: str
    token_type: str = "Bearer"  # noqa: S105
    refresh_token: str | None = None
    id_token: str | None = None
    expires_in: int = DEFAULT_EXPIRES_IN
    scope: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, payload: dict[str, Any], provider: str | None = None) -> TokenResponse:
        """Build a token response from a decoded token endpoint body.

        Parameters
        ----------
        payload : dict[str, Any]
            The JSON body of a successful token response.
        provider : str, optional
            Provider issuer, used for error context.

        Returns
        -------
        TokenResponse
            The parsed token set. A missing ``expires_in`` defaults to one hour.

        Raises
        ------
        ProviderError
            If the body carries no ``access_token``.
        """
        access_token = payload.get("access_token")
        if not access_token:
            msg = "Token response did not contain an access_token"
            raise ProviderError(msg, provider=provider)
        expires_in = payload.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in is not None else DEFAULT_EXPIRES_IN
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN
        return cls(
            access_token=access_token,
            token_type=payload.get("token_type", "Bearer"),
            refresh_token=payload.get("refresh_token"),
            id_token=payload.get("id_token"),
            expires_in=expires_in,
            scope=payload.get("scope", ""),
            raw=payload,
        )


@dataclass(frozen=True)
class CredentialSet:
    """Immutable snapshot of the credentials held by a ``TokenStore``.

    Attributes
    ----------
    access_token : str or None
        Current bearer credential.
    refresh_token : str or None
        Current refresh token.
    id_token : str or None
        Current OIDC ID token.
    expires_at : float or None
        Unix timestamp at which the access token expires.
    """

    access_token: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    expires_at: float | None = None


@dataclass
class UserIdentity:
    """Authenticated user profile.

    Built from ID token claims or a user-info response; ``claims`` keeps
    every claim the provider returned.
    """

    sub: str
    email: str | None = None
    email_verified: bool | None = None
    name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    preferred_username: str | None = None
    picture: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> UserIdentity:
        """Build an identity from a claims mapping."""
        return cls(
            sub=str(claims.get("sub", "")),
            email=claims.get("email"),
            email_verified=claims.get("email_verified"),
            name=claims.get("name"),
            given_name=claims.get("given_name"),
            family_name=claims.get("family_name"),
            preferred_username=claims.get("preferred_username"),
            picture=claims.get("picture"),
            claims=dict(claims),
        )

    @property
    def display_name(self) -> str:
        """Best human-readable name available."""
        return self.name or self.preferred_username or self.email or self.sub


@dataclass(frozen=True)
class ProviderMetadata:
    """Endpoints resolved from an OpenID Connect discovery document."""

    issuer: str
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    revocation_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    end_session_endpoint: str | None = None
    jwks_uri: str | None = None

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> ProviderMetadata:
        """Build metadata from a decoded discovery document."""
        return cls(
            issuer=document.get("issuer", ""),
            authorization_endpoint=document.get("authorization_endpoint"),
            token_endpoint=document.get("token_endpoint"),
            revocation_endpoint=document.get("revocation_endpoint"),
            userinfo_endpoint=document.get("userinfo_endpoint"),
            end_session_endpoint=document.get("end_session_endpoint"),
            jwks_uri=document.get("jwks_uri"),
        )


class AuthStatus(str, Enum):
    """Lifecycle state of an authentication session."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"
    REFRESHING = "refreshing"
    LOGGING_OUT = "logging_out"


@dataclass(frozen=True)
class AuthState:
    """Snapshot of a session published to observers on every transition.

    Attributes
    ----------
    status : AuthStatus
        Current lifecycle state.
    is_authenticated : bool
        True while a non-expired access token is held and the user is known.
    is_loading : bool
        True while initializing or logging out.
    user : UserIdentity or None
        The authenticated user.
    access_token, refresh_token, id_token : str or None
        Mirror of the token store credentials.
    expires_at : float or None
        Access token expiry timestamp.
    error : str or None
        Message of the last failure, if any.
    """

    status: AuthStatus = AuthStatus.UNINITIALIZED
    is_authenticated: bool = False
    is_loading: bool = False
    user: UserIdentity | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    expires_at: float | None = None
    error: str | None = None


@dataclass(frozen=True)
class CallbackParams:
    """Query parameters delivered to the redirect URI."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    @classmethod
    def from_query(cls, query: str) -> CallbackParams:
        """Parse a raw query string (without the leading ``?``)."""
        params = parse_qs(query.lstrip("?"))

        def first(name: str) -> str | None:
            values = params.get(name)
            return values[0] if values else None

        return cls(
            code=first("code"),
            state=first("state"),
            error=first("error"),
            error_description=first("error_description"),
        )

    @classmethod
    def from_url(cls, url: str) -> CallbackParams:
        """Parse the query string of a full redirect URL."""
        return cls.from_query(urlsplit(url).query)


@dataclass(frozen=True)
class ApiError:
    """Normalized failure of an API call."""

    code: str
    message: str
    status_code: int | None = None


@dataclass(frozen=True)
class ApiResult:
    """Outcome of ``AuthenticatedClient.api_request``."""

    success: bool
    data: Any = None
    error: ApiError | None = None
