"""HTTP client that authenticates outgoing requests.

Every request carries the current bearer token. A 401 triggers at most one
refresh per wave of concurrent failures (through the shared
``RefreshCoordinator``) and a single retry of each failed request.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import dataclasses
import logging

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from ..exceptions import (
    AuthenticationError,
    NetworkError,
    NetworkTimeoutError,
    OAuthSessionError,
    SessionExpiredError,
)
from ..state.types import ApiError, ApiResult


if TYPE_CHECKING:
    from types import TracebackType

    from .refresh import RefreshCoordinator
    from .token_store import TokenStore


logger = logging.getLogger("oauthsession.auth")

NETWORK_ERROR_MESSAGE = "Network error. Please check your connection."
UNKNOWN_ERROR_MESSAGE = "An unknown error occurred."
SESSION_EXPIRED_MESSAGE = "Your session has expired. Please log in again."


@dataclass(frozen=True)
class RequestAttempt:
    """One try of an outgoing request.

    Retries are new attempts built with ``next()``; the original is never
    mutated.
    """

    method: str
    url: str
    options: dict[str, Any] = field(default_factory=dict)
    attempt: int = 0

    @property
    def retried(self) -> bool:
        """True for any attempt after the first."""
        return self.attempt > 0

    def next(self) -> RequestAttempt:
        """Return the follow-up attempt."""
        return dataclasses.replace(self, attempt=self.attempt + 1)


def to_api_error(error: BaseException) -> ApiError:
    """Normalize an exception from a request into an ``ApiError``.

    Parameters
    ----------
    error : BaseException
        Raised by ``AuthenticatedClient.request`` or by
        ``httpx.Response.raise_for_status``.

    Returns
    -------
    ApiError
        ``TIMEOUT``, ``NETWORK_ERROR``, ``UNAUTHORIZED``, the code/message
        of a JSON error body, or ``UNKNOWN_ERROR``.
    """
    if isinstance(error, NetworkTimeoutError):
        return ApiError(code="TIMEOUT", message="Request timeout", status_code=500)
    if isinstance(error, NetworkError):
        return ApiError(code="NETWORK_ERROR", message=NETWORK_ERROR_MESSAGE, status_code=500)
    if isinstance(error, AuthenticationError):
        return ApiError(code="UNAUTHORIZED", message=SESSION_EXPIRED_MESSAGE, status_code=401)
    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and (body.get("code") or body.get("message")):
            return ApiError(
                code=str(body.get("code") or "UNKNOWN_ERROR"),
                message=str(body.get("message") or UNKNOWN_ERROR_MESSAGE),
                status_code=response.status_code,
            )
        return ApiError(
            code="UNKNOWN_ERROR",
            message=response.reason_phrase or UNKNOWN_ERROR_MESSAGE,
            status_code=response.status_code,
        )
    return ApiError(code="UNKNOWN_ERROR", message=UNKNOWN_ERROR_MESSAGE, status_code=500)


class AuthenticatedClient:
    """Async HTTP client bound to a token store.

    Parameters
    ----------
    token_store : TokenStore
        Source of the bearer token.
    coordinator : RefreshCoordinator
        Single-flight refresh shared with the session controller.
    base_url : str
        Base URL prepended to relative request URLs.
    timeout : float
        Network timeout in seconds.
    navigator : callable, optional
        ``navigator(url)`` performs the redirect to the login page when the
        session cannot be recovered.
    notifier : callable, optional
        ``notifier(message)`` shows a user-facing notice before that
        redirect.
    login_url : str
        Where to send the user when the session is lost.
    headers : dict, optional
        Default headers for every request.
    transport : httpx.AsyncBaseTransport, optional
        Custom transport (e.g. ``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        token_store: TokenStore,
        coordinator: RefreshCoordinator,
        *,
        base_url: str = "",
        timeout: float = 30.0,
        navigator: Callable[[str], Any] | None = None,
        notifier: Callable[[str], Any] | None = None,
        login_url: str = "/auth/login",
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the authenticated client."""
        self.token_store = token_store
        self.coordinator = coordinator
        self.timeout = timeout
        self.navigator = navigator
        self.notifier = notifier
        self.login_url = login_url
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def __aenter__(self) -> AuthenticatedClient:
        """Enter the async context."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the underlying HTTP client."""
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def request(self, method: str, url: str, **options: Any) -> httpx.Response:
        """Send an authenticated request, recovering once from a 401.

        Parameters
        ----------
        method : str
            HTTP method.
        url : str
            Absolute URL or path relative to ``base_url``.
        **options : Any
            Passed to ``httpx.AsyncClient.request`` (``json``, ``params``,
            ``headers``, ...).

        Returns
        -------
        httpx.Response
            The response. A 401 on the retry is returned unchanged.

        Raises
        ------
        SessionExpiredError
            If the 401 cannot be recovered because no refresh token is held,
            or the session was cleared while the request was in flight.
        NetworkError
            On transport failures.
        """
        attempt = RequestAttempt(method=method.upper(), url=url, options=dict(options))
        while True:
            sent_token = self.token_store.get_access_token()
            response = await self._send(attempt, sent_token)
            if response.status_code != 401 or attempt.retried:
                return response
            await response.aclose()

            current_token = self.token_store.get_access_token()
            if current_token is None and sent_token is not None:
                msg = "Session ended while the request was in flight"
                raise SessionExpiredError(msg)
            if current_token != sent_token:
                logger.debug("Token rotated while %s %s was in flight", attempt.method, attempt.url)
            else:
                await self.coordinator.refresh(on_failure=self._session_lost)
            attempt = attempt.next()

    async def _send(self, attempt: RequestAttempt, token: str | None) -> httpx.Response:
        options = dict(attempt.options)
        headers = dict(options.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            return await self._client.request(
                attempt.method, attempt.url, headers=headers, **options
            )
        except httpx.TimeoutException as exc:
            msg = f"{attempt.method} {attempt.url} timed out"
            raise NetworkTimeoutError(msg, timeout=self.timeout) from exc
        except httpx.HTTPError as exc:
            msg = f"{attempt.method} {attempt.url} failed: {exc}"
            raise NetworkError(msg) from exc

    def _session_lost(self, exc: BaseException) -> None:
        """Clear credentials and send the user to the login page."""
        logger.info("Session could not be refreshed (%s); redirecting to login", exc)
        self.token_store.clear()
        if self.notifier is not None:
            self.notifier(SESSION_EXPIRED_MESSAGE)
        if self.navigator is not None:
            self.navigator(self.login_url)

    async def get(self, url: str, **options: Any) -> httpx.Response:
        """Send an authenticated GET request."""
        return await self.request("GET", url, **options)

    async def post(self, url: str, **options: Any) -> httpx.Response:
        """Send an authenticated POST request."""
        return await self.request("POST", url, **options)

    async def put(self, url: str, **options: Any) -> httpx.Response:
        """Send an authenticated PUT request."""
        return await self.request("PUT", url, **options)

    async def patch(self, url: str, **options: Any) -> httpx.Response:
        """Send an authenticated PATCH request."""
        return await self.request("PATCH", url, **options)

    async def delete(self, url: str, **options: Any) -> httpx.Response:
        """Send an authenticated DELETE request."""
        return await self.request("DELETE", url, **options)

    async def api_request(self, method: str, url: str, **options: Any) -> ApiResult:
        """Send a request and wrap the outcome instead of raising.

        Returns
        -------
        ApiResult
            ``success=True`` with the decoded body, or ``success=False`` with
            an ``ApiError`` for HTTP, transport and session failures.
        """
        try:
            response = await self.request(method, url, **options)
            response.raise_for_status()
        except (OAuthSessionError, httpx.HTTPStatusError) as exc:
            error = to_api_error(exc)
            logger.debug("%s %s failed: %s", method, url, error.code)
            return ApiResult(success=False, error=error)

        if not response.content:
            return ApiResult(success=True, data=None)
        try:
            data = response.json()
        except ValueError:
            data = response.text
        return ApiResult(success=True, data=data)
