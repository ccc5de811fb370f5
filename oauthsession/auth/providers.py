"""OAuth2 / OpenID Connect provider client.

Builds authorization and logout URLs, performs the code exchange, refresh,
revocation and user-info calls, and resolves endpoints from the provider
discovery document with static fallbacks.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging

from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from authlib.jose import JsonWebKey, JsonWebToken

from ..exceptions import (
    CsrfMismatchError,
    InvalidTokenError,
    MissingPkceMaterialError,
    NetworkError,
    NetworkTimeoutError,
    OAuthSessionError,
    ProviderError,
    RevocationError,
)
from ..log import redact_sensitive_data
from ..state.pending import PendingAuthStore
from ..state.types import ProviderMetadata, TokenResponse, UserIdentity
from .pkce import PkceMaterial


if TYPE_CHECKING:
    from ..config import OAuthSettings


logger = logging.getLogger("oauthsession.auth")

_ID_TOKEN_ALGORITHMS = ["RS256", "RS384", "RS512", "ES256", "ES384", "ES512"]
_ENDPOINT_NAMES = ("authorization", "token", "revocation", "userinfo", "end_session")


class ProviderClient:
    """Client for a single OpenID Connect provider.

    Parameters
    ----------
    settings : OAuthSettings
        Issuer, client credentials, scopes, URLs and fallback endpoint paths.
    pending : PendingAuthStore, optional
        Where login material is kept between redirect and callback.
        A private store is created when omitted.
    http_client : httpx.AsyncClient, optional
        Client to use for provider calls. When omitted one is created
        lazily and closed by ``close()``.
    redirect_uri : str, optional
        Overrides the redirect URI derived from settings.
    timeout : float
        Network timeout in seconds for provider calls.
    """

    def __init__(
        self,
        settings: OAuthSettings,
        pending: PendingAuthStore | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        redirect_uri: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the provider client."""
        self.settings = settings
        self.pending = pending or PendingAuthStore(max_age=settings.pending_max_age)
        self.timeout = timeout
        self._redirect_uri = redirect_uri
        self._http_client = http_client
        self._owns_client = http_client is None
        self._discovery_task: asyncio.Task[ProviderMetadata | None] | None = None
        self._metadata: ProviderMetadata | None = None
        self._jwks_data: dict[str, Any] | None = None

    # ── HTTP plumbing ────────────────────────────────────────────────

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the shared HTTP client. Call from app shutdown lifecycle."""
        if self._discovery_task is not None and not self._discovery_task.done():
            self._discovery_task.cancel()
        if (
            self._owns_client
            and self._http_client is not None
            and not self._http_client.is_closed
        ):
            await self._http_client.aclose()
            self._http_client = None

    @property
    def provider_name(self) -> str:
        """Issuer used as provider context in errors."""
        return self.settings.issuer

    async def _send(self, method: str, url: str, action: str, **kwargs: Any) -> httpx.Response:
        """Send a request, mapping transport failures to oauthsession errors."""
        client = await self._get_client()
        try:
            return await client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as exc:
            msg = f"{action} timed out"
            raise NetworkTimeoutError(
                msg, timeout=self.timeout, provider=self.provider_name
            ) from exc
        except httpx.HTTPError as exc:
            msg = f"{action} request failed: {exc}"
            raise NetworkError(msg, provider=self.provider_name) from exc

    def _raise_for_status(self, response: httpx.Response, action: str) -> None:
        """Raise ``ProviderError`` for a non-success response.

        The ``error_description`` (else ``error``) of a JSON error body
        becomes the message.
        """
        if response.is_success:
            return
        error_code: str | None = None
        message = f"{action} failed: {response.status_code}"
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            error_code = body.get("error")
            message = body.get("error_description") or error_code or message
        raise ProviderError(
            message,
            status_code=response.status_code,
            error_code=error_code,
            provider=self.provider_name,
        )

    # ── Discovery ────────────────────────────────────────────────────

    @property
    def metadata(self) -> ProviderMetadata | None:
        """Discovered endpoints, or None until discovery has succeeded."""
        return self._metadata

    def start_discovery(self) -> None:
        """Begin resolving the discovery document in the background."""
        if not self.settings.use_discovery or self._discovery_task is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; discovery deferred")
            return
        self._discovery_task = loop.create_task(self._discover())

    async def resolve_discovery(self) -> ProviderMetadata | None:
        """Resolve provider metadata once per client lifetime.

        Concurrent callers share a single fetch. Failures are logged and
        cached as None; later endpoint lookups use the static fallbacks.

        Returns
        -------
        ProviderMetadata or None
            The discovered metadata, or None if unavailable.
        """
        if not self.settings.use_discovery:
            return None
        task = self._discovery_task
        if task is None:
            task = self._discovery_task = asyncio.ensure_future(self._discover())
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            logger.debug("Discovery for %s was cancelled", self.settings.issuer)
            return None

    async def _discover(self) -> ProviderMetadata | None:
        """Fetch and validate the well-known configuration document."""
        try:
            issuer = self.settings.normalized_issuer()
            url = f"{issuer}{self.settings.discovery_path}"
            response = await self._send("GET", url, "Discovery")
            self._raise_for_status(response, "Discovery")
            document = response.json()
        except (OAuthSessionError, ValueError) as exc:
            logger.warning("OIDC discovery failed for %s: %s", self.settings.issuer, exc)
            return None

        if not isinstance(document, dict):
            logger.warning("OIDC discovery for %s returned a non-object document", issuer)
            return None
        metadata = ProviderMetadata.from_document(document)
        if metadata.issuer.rstrip("/") != issuer:
            logger.warning(
                "OIDC issuer mismatch: expected '%s', got '%s'", issuer, metadata.issuer
            )
            return None
        logger.debug("Discovered endpoints for %s", issuer)
        self._metadata = metadata
        return metadata

    def _endpoint(self, name: str) -> str:
        """Return endpoint ``name``, preferring discovered metadata.

        ``name`` is one of ``authorization``, ``token``, ``revocation``,
        ``userinfo`` or ``end_session``.
        """
        if self._metadata is not None:
            discovered = getattr(self._metadata, f"{name}_endpoint")
            if discovered:
                return str(discovered)
        return self.settings.normalized_issuer() + getattr(self.settings, f"{name}_path")

    def endpoints(self) -> dict[str, str]:
        """Return every endpoint URL currently in effect, keyed by name."""
        return {name: self._endpoint(name) for name in _ENDPOINT_NAMES}

    async def _ensure_discovery(self) -> None:
        if self.settings.use_discovery:
            await self.resolve_discovery()

    # ── Authorization request ────────────────────────────────────────

    @property
    def redirect_uri(self) -> str:
        """The redirect URI registered with the provider."""
        return self._redirect_uri or self.settings.resolve_redirect_uri()

    def build_authorization_url(self, return_url: str | None = None) -> str:
        """Generate PKCE material, store it, and build the authorization URL.

        Parameters
        ----------
        return_url : str, optional
            Where to send the user once the callback completes.

        Returns
        -------
        str
            The full authorization URL.

        Raises
        ------
        ConfigurationError
            If the issuer is missing or malformed, or no client ID is set.
        """
        issuer_endpoint = self._endpoint("authorization")
        client_id = self.settings.require_client_id()
        redirect_uri = self.redirect_uri

        material = PkceMaterial.generate()
        self.pending.put(material, return_url=return_url)

        params: dict[str, str] = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": self.settings.scope,
            "state": material.state,
            "code_challenge": material.code_challenge,
            "code_challenge_method": material.method,
            "nonce": material.nonce,
        }
        return f"{issuer_endpoint}?{urlencode(params)}"

    def build_logout_url(self, id_token_hint: str | None = None) -> str:
        """Build the end-session URL.

        Parameters
        ----------
        id_token_hint : str, optional
            The ID token of the session being ended.

        Returns
        -------
        str
            End-session URL with ``client_id``, ``post_logout_redirect_uri``
            and, when given, ``id_token_hint``.
        """
        params: dict[str, str] = {
            "client_id": self.settings.require_client_id(),
            "post_logout_redirect_uri": self.settings.resolve_post_logout_redirect_uri(),
        }
        if id_token_hint:
            params["id_token_hint"] = id_token_hint
        return f"{self._endpoint('end_session')}?{urlencode(params)}"

    # ── Token endpoint ───────────────────────────────────────────────

    async def _token_request(self, data: dict[str, str], action: str) -> dict[str, Any]:
        if self.settings.client_secret:
            data["client_secret"] = self.settings.client_secret
        logger.debug("%s request: %s", action, redact_sensitive_data(data))
        response = await self._send(
            "POST",
            self._endpoint("token"),
            action,
            data=data,
            headers={"Accept": "application/json"},
        )
        self._raise_for_status(response, action)
        try:
            payload = response.json()
        except ValueError as exc:
            msg = f"{action} returned a non-JSON body"
            raise ProviderError(
                msg, status_code=response.status_code, provider=self.provider_name
            ) from exc
        if not isinstance(payload, dict):
            msg = f"{action} returned an unexpected body"
            raise ProviderError(msg, status_code=response.status_code, provider=self.provider_name)
        return payload

    async def exchange_code_for_tokens(self, code: str, state: str) -> TokenResponse:
        """Exchange an authorization code for tokens.

        The pending PKCE material is consumed before anything else, so it is
        gone whether the exchange succeeds or fails.

        Parameters
        ----------
        code : str
            The authorization code from the callback.
        state : str
            The state echoed back by the provider.

        Returns
        -------
        TokenResponse
            The token set from the provider.

        Raises
        ------
        MissingPkceMaterialError
            If no login is pending (never started, expired, or already used).
        CsrfMismatchError
            If ``state`` differs from the stored state. The code is not sent.
        ProviderError
            If the token endpoint rejects the exchange.
        """
        pending = self.pending.take()
        if pending is None:
            msg = "No pending PKCE code verifier for this callback"
            raise MissingPkceMaterialError(msg, provider=self.provider_name)
        if state != pending["state"]:
            msg = "Invalid state parameter"
            raise CsrfMismatchError(msg, provider=self.provider_name)

        await self._ensure_discovery()
        payload = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
                "client_id": self.settings.require_client_id(),
                "code_verifier": pending["code_verifier"],
            },
            "Token exchange",
        )
        tokens = TokenResponse.from_response(payload, provider=self.provider_name)

        if tokens.id_token and self.settings.validate_id_token:
            await self.validate_id_token(tokens.id_token, nonce=pending["nonce"] or None)
        return tokens

    async def refresh_tokens(self, refresh_token: str) -> TokenResponse:
        """Obtain a new access token with a refresh token.

        Returns
        -------
        TokenResponse
            New tokens. The given refresh token is kept when the provider
            does not rotate it.

        Raises
        ------
        ProviderError
            If the provider rejects the refresh token.
        """
        await self._ensure_discovery()
        payload = await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.settings.require_client_id(),
            },
            "Token refresh",
        )
        tokens = TokenResponse.from_response(payload, provider=self.provider_name)
        if not tokens.refresh_token:
            tokens.refresh_token = refresh_token
        return tokens

    async def revoke_token(self, token: str, token_type_hint: str = "access_token") -> bool:
        """Revoke a token at the provider (RFC 7009).

        Parameters
        ----------
        token : str
            The token to revoke (access or refresh).
        token_type_hint : str
            ``access_token`` or ``refresh_token``.

        Returns
        -------
        bool
            True if revocation succeeded. Failures are logged, never raised.
        """
        try:
            await self._ensure_discovery()
            response = await self._send(
                "POST",
                self._endpoint("revocation"),
                "Token revocation",
                data={
                    "token": token,
                    "token_type_hint": token_type_hint,
                    "client_id": self.settings.require_client_id(),
                },
            )
            if not response.is_success:
                msg = f"Token revocation failed: {response.status_code}"
                raise RevocationError(msg, provider=self.provider_name)
        except OAuthSessionError as exc:
            logger.warning("Token revocation failed: %s", exc)
            return False
        return True

    # ── User info / ID token ─────────────────────────────────────────

    async def fetch_user_info(self, access_token: str) -> UserIdentity:
        """Fetch the user profile from the user-info endpoint.

        Raises
        ------
        ProviderError
            If the endpoint answers with a non-success status.
        """
        await self._ensure_discovery()
        response = await self._send(
            "GET",
            self._endpoint("userinfo"),
            "User info",
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
        self._raise_for_status(response, "User info")
        try:
            claims = response.json()
        except ValueError as exc:
            msg = "User info returned a non-JSON body"
            raise ProviderError(
                msg, status_code=response.status_code, provider=self.provider_name
            ) from exc
        return UserIdentity.from_claims(claims)

    async def _fetch_jwks(self) -> dict[str, Any]:
        """Fetch the JWKS key set from the provider."""
        if self._jwks_data is not None:
            return self._jwks_data
        metadata = await self.resolve_discovery()
        if metadata is None or not metadata.jwks_uri:
            msg = "JWKS URI not available (discovery failed or disabled)"
            raise InvalidTokenError(msg, provider=self.provider_name)
        response = await self._send("GET", metadata.jwks_uri, "JWKS")
        self._raise_for_status(response, "JWKS")
        try:
            jwks_data = response.json()
        except ValueError as exc:
            msg = "JWKS endpoint returned a non-JSON body"
            raise InvalidTokenError(msg, provider=self.provider_name) from exc
        if not isinstance(jwks_data, dict):
            msg = "JWKS endpoint returned a non-object document"
            raise InvalidTokenError(msg, provider=self.provider_name)
        self._jwks_data = jwks_data
        return jwks_data

    async def validate_id_token(self, id_token: str, nonce: str | None = None) -> dict[str, Any]:
        """Validate an OIDC ID token.

        Checks signature (via JWKS), issuer, audience, expiry, and nonce.

        Parameters
        ----------
        id_token : str
            The raw ID token JWT string.
        nonce : str, optional
            Expected nonce value (the one sent in the authorize request).

        Returns
        -------
        dict[str, Any]
            The validated claims from the ID token.

        Raises
        ------
        InvalidTokenError
            If validation fails for any reason.
        """
        jwks_data = await self._fetch_jwks()
        jwt = JsonWebToken(_ID_TOKEN_ALGORITHMS)

        claims_options: dict[str, Any] = {
            "iss": {"essential": True, "value": self.settings.normalized_issuer()},
            "aud": {"essential": True, "value": self.settings.require_client_id()},
            "exp": {"essential": True},
        }
        if nonce:
            claims_options["nonce"] = {"essential": True, "value": nonce}

        try:
            key_set = JsonWebKey.import_key_set(jwks_data)
            claims = jwt.decode(id_token, key_set, claims_options=claims_options)
            claims.validate()
        except Exception as exc:
            msg = f"ID token validation failed: {exc}"
            raise InvalidTokenError(msg, provider=self.provider_name) from exc

        return dict(claims)
