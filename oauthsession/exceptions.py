"""oauthsession exception hierarchy.

All oauthsession-specific exceptions inherit from OAuthSessionError, enabling
catch-all handling while supporting specific error types.
"""

from __future__ import annotations

from typing import Any


class OAuthSessionError(Exception):
    """Base exception for all oauthsession errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize oauthsession exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (provider, status_code, endpoint, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items() if v is not None)
            if ctx:
                return f"{self.message} ({ctx})"
        return self.message


class ConfigurationError(OAuthSessionError):
    """Client configuration is missing or malformed.

    Raised for an absent or non-http(s) issuer, a missing client ID,
    or an unresolvable redirect URI. Never retried.
    """

    def __init__(self, message: str, setting: str | None = None, **context: Any) -> None:
        """Initialize configuration error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        setting : str, optional
            The name of the offending setting.
        **context : Any
            Additional context.
        """
        super().__init__(message, setting=setting, **context)
        self.setting = setting


class AuthenticationError(OAuthSessionError):
    """Base exception for all authentication failures.

    Raised when an authentication operation fails, including
    the authorization code flow, token handling, or session management.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider : str, optional
            The provider issuer or name.
        flow_id : str, optional
            Identifier of the login attempt that failed.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, **context)
        self.provider = provider
        self.flow_id = flow_id


class CsrfMismatchError(AuthenticationError):
    """Callback state does not match the state stored at login.

    The authorization code is never exchanged when this is raised.
    """


class MissingPkceMaterialError(AuthenticationError):
    """No PKCE verifier is pending for the callback.

    Raised on a callback without a preceding login, after the pending
    material expired, or when the same code is replayed.
    """


class AuthorizationDeniedError(AuthenticationError):
    """The provider redirected back with an ``error`` parameter."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authorization denied error.

        Parameters
        ----------
        message : str
            Human-readable error message (``error_description`` when given).
        error_code : str, optional
            The OAuth2 ``error`` value (e.g. ``access_denied``).
        provider : str, optional
            The provider issuer or name.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, error_code=error_code, **context)
        self.error_code = error_code


class ProviderError(AuthenticationError):
    """The provider answered a token or user-info request with a non-success status."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
        provider: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize provider error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        status_code : int, optional
            HTTP status code returned by the provider.
        error_code : str, optional
            The OAuth2 ``error`` field of the response body.
        provider : str, optional
            The provider issuer or name.
        **context : Any
            Additional context.
        """
        super().__init__(
            message,
            provider=provider,
            status_code=status_code,
            error_code=error_code,
            **context,
        )
        self.status_code = status_code
        self.error_code = error_code


class NetworkError(AuthenticationError):
    """Transport-level failure (DNS, connection refused, protocol error)."""


class NetworkTimeoutError(NetworkError):
    """A network call exceeded its configured timeout."""

    def __init__(
        self,
        message: str,
        timeout: float | None = None,
        provider: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize timeout error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        timeout : float, optional
            The timeout value in seconds.
        provider : str, optional
            The provider issuer or name.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, timeout=timeout, **context)
        self.timeout = timeout


class RevocationError(AuthenticationError):
    """Token revocation failed.

    Never propagated out of ``ProviderClient.revoke_token``; only logged.
    """


class SessionExpiredError(AuthenticationError):
    """The session cannot be recovered and the user must log in again."""


class TokenError(AuthenticationError):
    """Base exception for token-related failures."""


class InvalidTokenError(TokenError):
    """A JWT could not be decoded or failed validation."""


class TokenExpiredError(TokenError):
    """Token has expired.

    Raised when an access or ID token is past its expiry time.
    """
