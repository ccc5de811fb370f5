"""OAuth2 session controller with automatic token refresh.

Drives the login / callback / refresh / logout state machine, publishes
an immutable ``AuthState`` to observers on every transition, and keeps a
background ``asyncio.Task`` that refreshes the access token shortly before
it expires.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import webbrowser

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from ..exceptions import (
    AuthenticationError,
    AuthorizationDeniedError,
    InvalidTokenError,
    OAuthSessionError,
)
from ..state.types import AuthState, AuthStatus, CallbackParams, CredentialSet, UserIdentity
from .client import AuthenticatedClient
from .jwt import extract_user_identity
from .providers import ProviderClient
from .refresh import RefreshCoordinator
from .token_store import TokenStore


if TYPE_CHECKING:
    from ..config import OAuthSessionSettings
    from ..state.types import TokenResponse


logger = logging.getLogger("oauthsession.auth")

SESSION_EXPIRED_NOTICE = "Session expired. Please login again."
SESSION_LOST_MESSAGE = "Your session has expired. Please log in again."
CALLBACK_FAILED_MESSAGE = "Failed to complete login"
INIT_FAILED_MESSAGE = "Failed to initialize authentication"
REFRESH_FAILED_MESSAGE = "Failed to refresh access token"
MISSING_PARAMS_MESSAGE = "Missing required parameters"

Navigator = Callable[[str], Any]
Notifier = Callable[[str], Any]
StateObserver = Callable[[AuthState], Any]

_LOADING_STATES = frozenset({AuthStatus.INITIALIZING, AuthStatus.LOGGING_OUT})
_ACTIVE_STATES = frozenset({AuthStatus.AUTHENTICATED, AuthStatus.REFRESHING})


def open_in_browser(url: str) -> None:
    """Default navigator: open ``url`` in the system browser."""
    webbrowser.open(url)


def log_notice(message: str) -> None:
    """Default notifier: surface ``message`` as a warning log record."""
    logger.warning("%s", message)


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class SessionController:
    """Own the authentication lifecycle of one session context.

    Parameters
    ----------
    provider : ProviderClient
        The provider to authenticate against.
    token_store : TokenStore
        Credential holder for this session.
    coordinator : RefreshCoordinator, optional
        Shared single-flight refresh guard. Created when omitted.
    navigator : callable, optional
        ``navigator(url)`` performs a redirect. Opens the system browser
        by default.
    notifier : callable, optional
        ``notifier(message)`` shows a user-facing notice. Logs a warning
        by default.
    refresh_buffer : float
        Seconds before expiry at which the background task refreshes.
    check_interval : float
        Seconds between background expiry checks.
    home_url : str
        Navigation target when no logout URL can be built.
    login_url : str
        Login entry point used by clients created with ``create_client``.
    """

    def __init__(
        self,
        provider: ProviderClient,
        token_store: TokenStore,
        *,
        coordinator: RefreshCoordinator | None = None,
        navigator: Navigator | None = None,
        notifier: Notifier | None = None,
        refresh_buffer: float = 300.0,
        check_interval: float = 60.0,
        home_url: str = "/",
        login_url: str = "/auth/login",
    ) -> None:
        """Initialize the session controller."""
        self.provider = provider
        self.token_store = token_store
        self.coordinator = coordinator or RefreshCoordinator(provider, token_store)
        self.navigator = navigator or open_in_browser
        self.notifier = notifier or log_notice
        self.refresh_buffer = refresh_buffer
        self.check_interval = check_interval
        self.home_url = home_url
        self.login_url = login_url

        self._state = AuthState()
        self._observers: list[StateObserver] = []
        self._refresh_task: asyncio.Task[None] | None = None
        self._task_key: tuple[bool, float | None] | None = None
        self._unsubscribe_store = token_store.subscribe(self._on_tokens_changed)

    @classmethod
    def from_settings(cls, settings: OAuthSessionSettings, **kwargs: Any) -> SessionController:
        """Build a controller and its collaborators from settings.

        Parameters
        ----------
        settings : OAuthSessionSettings
            Loaded configuration.
        **kwargs : Any
            Overrides for ``SessionController`` keyword arguments, plus
            ``http_client`` and ``redirect_uri`` for the provider.

        Returns
        -------
        SessionController
            A controller with a fresh token store.
        """
        provider = ProviderClient(
            settings.oauth,
            http_client=kwargs.pop("http_client", None),
            redirect_uri=kwargs.pop("redirect_uri", None),
            timeout=settings.http.timeout,
        )
        kwargs.setdefault("refresh_buffer", settings.token.refresh_buffer_seconds)
        kwargs.setdefault("check_interval", settings.token.check_interval_seconds)
        kwargs.setdefault("home_url", settings.oauth.resolve_post_logout_redirect_uri())
        kwargs.setdefault("login_url", settings.oauth.resolve_login_url())
        return cls(provider, TokenStore(), **kwargs)

    # ── State publication ────────────────────────────────────────────

    @property
    def state(self) -> AuthState:
        """The current immutable session snapshot."""
        return self._state

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        """Register ``observer`` to receive every new ``AuthState``.

        Returns
        -------
        Callable[[], None]
            Function that removes the observer.
        """
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _set_state(self, **changes: Any) -> AuthState:
        """Publish a new snapshot with credential fields mirrored from the store."""
        credentials = self.token_store.snapshot()
        state = dataclasses.replace(self._state, **changes)
        status = state.status
        state = dataclasses.replace(
            state,
            is_authenticated=status in _ACTIVE_STATES and state.user is not None,
            is_loading=status in _LOADING_STATES,
            access_token=credentials.access_token,
            refresh_token=credentials.refresh_token,
            id_token=credentials.id_token,
            expires_at=credentials.expires_at,
        )
        self._state = state
        for observer in list(self._observers):
            try:
                observer(state)
            except Exception:
                logger.exception("Auth state observer failed")
        self._sync_refresh_loop()
        return state

    def _on_tokens_changed(self, credentials: CredentialSet) -> None:
        """Mirror token store changes made outside the controller."""
        if self._state.status not in _ACTIVE_STATES:
            return
        if credentials.access_token is None:
            logger.info("Stored credentials were cleared; session ended")
            self._stop_refresh_loop()
            self._set_state(
                status=AuthStatus.UNAUTHENTICATED,
                user=None,
                error=SESSION_LOST_MESSAGE,
            )
            return
        self._set_state()

    # ── Public API ───────────────────────────────────────────────────

    def get_access_token(self) -> str | None:
        """Return the current access token, if any."""
        return self.token_store.get_access_token()

    def is_authenticated(self) -> bool:
        """Return True when a user is known and the stored tokens are valid."""
        return self._state.user is not None and self.token_store.has_valid_tokens()

    async def initialize(self) -> AuthState:
        """Restore the session from whatever the token store already holds.

        Starts endpoint discovery in the background. With valid tokens the
        user is resolved and the session becomes authenticated; otherwise
        it becomes unauthenticated.
        """
        self._set_state(status=AuthStatus.INITIALIZING, error=None)
        self.provider.start_discovery()
        try:
            user = await self.get_current_user() if self.token_store.has_valid_tokens() else None
        except Exception:
            logger.exception("Failed to initialize authentication")
            return self._set_state(
                status=AuthStatus.UNAUTHENTICATED, user=None, error=INIT_FAILED_MESSAGE
            )
        if user is None:
            return self._set_state(status=AuthStatus.UNAUTHENTICATED, user=None)
        return self._set_state(status=AuthStatus.AUTHENTICATED, user=user)

    def login(self, return_url: str | None = None) -> str:
        """Start a login by redirecting to the provider.

        Parameters
        ----------
        return_url : str, optional
            Where the application should go once the callback completes.

        Returns
        -------
        str
            The authorization URL handed to the navigator.
        """
        url = self.provider.build_authorization_url(return_url=return_url)
        logger.debug("Redirecting to authorization endpoint")
        self.navigator(url)
        return url

    async def handle_callback(self, code: str, state: str) -> UserIdentity:
        """Complete a login with the code and state from the redirect.

        Raises
        ------
        OAuthSessionError
            Whatever the exchange or user resolution raised. The token
            store is cleared and the session becomes unauthenticated first.
        """
        self._set_state(status=AuthStatus.INITIALIZING, error=None)
        try:
            tokens = await self.provider.exchange_code_for_tokens(code, state)
            self.token_store.set_tokens(tokens)
            user = await self._resolve_user(tokens)
        except Exception:
            logger.exception("Callback handling failed")
            self.token_store.clear()
            self._set_state(
                status=AuthStatus.UNAUTHENTICATED, user=None, error=CALLBACK_FAILED_MESSAGE
            )
            raise
        self._set_state(status=AuthStatus.AUTHENTICATED, user=user, error=None)
        logger.info("Login completed for %s", user.sub)
        return user

    async def handle_callback_url(self, url: str) -> UserIdentity:
        """Complete a login from the full redirect URL.

        Raises
        ------
        AuthorizationDeniedError
            If the provider returned an ``error`` parameter.
        AuthenticationError
            If ``code`` or ``state`` is missing.
        """
        params = CallbackParams.from_url(url)
        if params.error:
            self.provider.pending.take()
            message = params.error_description or params.error
            self._set_state(status=AuthStatus.UNAUTHENTICATED, user=None, error=message)
            raise AuthorizationDeniedError(
                message, error_code=params.error, provider=self.provider.provider_name
            )
        if not params.code or not params.state:
            self._set_state(
                status=AuthStatus.UNAUTHENTICATED, user=None, error=MISSING_PARAMS_MESSAGE
            )
            raise AuthenticationError(MISSING_PARAMS_MESSAGE, provider=self.provider.provider_name)
        return await self.handle_callback(params.code, params.state)

    async def refresh_access_token(self) -> bool:
        """Refresh the access token through the shared coordinator.

        Returns
        -------
        bool
            True on success. Failures are recorded in the state, not raised.
        """
        was_active = self._state.status in _ACTIVE_STATES
        if was_active:
            self._set_state(status=AuthStatus.REFRESHING)
        try:
            await self.coordinator.refresh()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Access token refresh failed: %s", exc)
            if self._state.status in _ACTIVE_STATES:
                still_valid = self.token_store.has_valid_tokens()
                self._set_state(
                    status=AuthStatus.AUTHENTICATED if still_valid else AuthStatus.UNAUTHENTICATED,
                    user=self._state.user if still_valid else None,
                    error=REFRESH_FAILED_MESSAGE,
                )
            return False
        if self._state.status in _ACTIVE_STATES:
            self._set_state(status=AuthStatus.AUTHENTICATED, error=None)
        return True

    async def logout(self) -> str:
        """End the session.

        Revokes the access token (best effort), clears the token store and
        navigates to the provider end-session URL, or to ``home_url`` when
        that URL cannot be built.

        Returns
        -------
        str
            The URL handed to the navigator.
        """
        self._stop_refresh_loop()
        self._set_state(status=AuthStatus.LOGGING_OUT)

        access_token = self.token_store.get_access_token()
        id_token = self.token_store.get_id_token()
        if access_token:
            await self.provider.revoke_token(access_token)

        self.token_store.clear()
        try:
            url = self.provider.build_logout_url(id_token_hint=id_token)
        except OAuthSessionError as exc:
            logger.warning("Could not build logout URL: %s", exc)
            url = self.home_url

        self._set_state(status=AuthStatus.UNAUTHENTICATED, user=None, error=None)
        logger.info("Session logged out")
        self.navigator(url)
        return url

    async def get_current_user(self) -> UserIdentity | None:
        """Resolve the user from the ID token, else from the user-info endpoint.

        Returns None when neither source yields a user.
        """
        id_token = self.token_store.get_id_token()
        if id_token:
            try:
                return extract_user_identity(id_token)
            except InvalidTokenError as exc:
                logger.debug("ID token unusable, falling back to user info: %s", exc)
        access_token = self.token_store.get_access_token()
        if not access_token:
            return None
        try:
            return await self.provider.fetch_user_info(access_token)
        except OAuthSessionError as exc:
            logger.warning("Failed to fetch user info: %s", exc)
            return None

    async def _resolve_user(self, tokens: TokenResponse) -> UserIdentity:
        if tokens.id_token:
            return extract_user_identity(tokens.id_token)
        return await self.provider.fetch_user_info(tokens.access_token)

    def consume_return_url(self, default: str | None = None) -> str:
        """Pop the URL stored at login, falling back to ``default`` or ``home_url``."""
        return self.provider.pending.pop_return_url() or default or self.home_url

    def create_client(self, **kwargs: Any) -> AuthenticatedClient:
        """Create an HTTP client sharing this session's store, coordinator and notices."""
        kwargs.setdefault("navigator", self.navigator)
        kwargs.setdefault("notifier", self.notifier)
        kwargs.setdefault("login_url", self.login_url)
        return AuthenticatedClient(self.token_store, self.coordinator, **kwargs)

    async def aclose(self) -> None:
        """Stop background work and release the provider HTTP client."""
        task = self._refresh_task
        self._stop_refresh_loop()
        if task is not None and task is not _current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._unsubscribe_store()
        await self.provider.close()

    # ── Background refresh ───────────────────────────────────────────

    def _sync_refresh_loop(self) -> None:
        """Start, restart or stop the refresh task to match the current state."""
        key = (self._state.is_authenticated, self.token_store.expires_at)
        task = self._refresh_task
        if key == self._task_key and task is not None and not task.done():
            return
        self._stop_refresh_loop()
        if not key[0] or key[1] is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; background refresh not started")
            return
        self._task_key = key
        self._refresh_task = loop.create_task(self._refresh_loop())

    def _stop_refresh_loop(self) -> None:
        task = self._refresh_task
        self._refresh_task = None
        self._task_key = None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    async def _refresh_loop(self) -> None:
        """Check expiry now and then every ``check_interval`` seconds."""
        while True:
            remaining = self.token_store.time_to_expiry()
            if remaining is None:
                return
            if remaining <= self.refresh_buffer:
                logger.debug("Access token expires in %.0fs, refreshing", remaining)
                if not await self.refresh_access_token():
                    await self.logout()
                    self.notifier(SESSION_EXPIRED_NOTICE)
                    return
                if _current_task() is not self._refresh_task:
                    # A successful refresh restarted the loop for the new expiry
                    return
            await asyncio.sleep(self.check_interval)
