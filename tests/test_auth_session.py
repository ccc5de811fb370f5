"""Tests for the session controller state machine."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import asyncio

from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from oauthsession.auth.client import AuthenticatedClient
from oauthsession.auth.providers import ProviderClient
from oauthsession.auth.session import (
    CALLBACK_FAILED_MESSAGE,
    MISSING_PARAMS_MESSAGE,
    REFRESH_FAILED_MESSAGE,
    SESSION_EXPIRED_NOTICE,
    SESSION_LOST_MESSAGE,
    SessionController,
)
from oauthsession.auth.token_store import TokenStore
from oauthsession.config import OAuthSessionSettings, OAuthSettings
from oauthsession.exceptions import (
    AuthenticationError,
    AuthorizationDeniedError,
    CsrfMismatchError,
    ProviderError,
    SessionExpiredError,
)
from oauthsession.state.types import (
    AuthState,
    AuthStatus,
    CredentialSet,
    TokenResponse,
    UserIdentity,
)
from tests.stubs import (
    APP_URL,
    CLIENT_ID,
    ISSUER,
    REVOKE_PATH,
    TOKEN_PATH,
    USERINFO_PATH,
    FakeClock,
    ProviderStub,
    authorization_params,
    form_data,
    make_jwt,
    token_payload,
)


ID_TOKEN = make_jwt({"sub": "user-1", "email": "ada@example.com", "name": "Ada Lovelace"})


# ── Helpers ─────────────────────────────────────────────────────────


def grant_router(exchange: dict[str, Any], refresh: httpx.Response | dict[str, Any]) -> Any:
    """Token endpoint answering by grant type."""
    refresh_response = refresh if isinstance(refresh, httpx.Response) else None
    if refresh_response is not None:
        refresh_response.read()

    def handler(request: httpx.Request) -> httpx.Response:
        if form_data(request)["grant_type"] == "authorization_code":
            return httpx.Response(200, json=exchange)
        if refresh_response is not None:
            return httpx.Response(refresh_response.status_code, content=refresh_response.content)
        return httpx.Response(200, json=refresh)

    return handler


async def sign_in(controller: SessionController, return_url: str | None = None) -> UserIdentity:
    """Run login and the matching callback."""
    url = controller.login(return_url=return_url)
    state = authorization_params(url)["state"]
    return await controller.handle_callback("code-1", state)


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture()
def navigator() -> MagicMock:
    """Records redirects."""
    return MagicMock()


@pytest.fixture()
def notifier() -> MagicMock:
    """Records user notices."""
    return MagicMock()


@pytest.fixture()
def controller(
    provider: ProviderClient, clock: FakeClock, navigator: MagicMock, notifier: MagicMock
) -> SessionController:
    """Controller with a fake clock and a fast refresh loop."""
    return SessionController(
        provider,
        TokenStore(clock=clock),
        navigator=navigator,
        notifier=notifier,
        check_interval=0.01,
    )


@pytest.fixture()
def with_id_token(idp: ProviderStub) -> None:
    """Token endpoint returning an ID token."""
    idp.route(TOKEN_PATH, token_payload(id_token=ID_TOKEN))


# ── Login / callback ────────────────────────────────────────────────


class TestLogin:
    """Tests for login()."""

    def test_navigates_to_authorization_url(
        self, controller: SessionController, navigator: MagicMock
    ) -> None:
        """The authorization URL is handed to the navigator."""
        url = controller.login()
        navigator.assert_called_once_with(url)
        assert authorization_params(url)["client_id"] == CLIENT_ID

    def test_initial_state(self, controller: SessionController) -> None:
        """A new controller is uninitialized and not loading."""
        assert controller.state == AuthState()
        assert controller.state.status is AuthStatus.UNINITIALIZED
        assert not controller.is_authenticated()


@pytest.mark.usefixtures("with_id_token")
class TestHandleCallback:
    """Tests for handle_callback / handle_callback_url."""

    def test_success(self, controller: SessionController) -> None:
        """Tokens are stored and the ID token user is published."""
        seen: list[AuthState] = []
        controller.subscribe(seen.append)

        user = asyncio.run(sign_in(controller))

        assert user.sub == "user-1"
        state = controller.state
        assert state.status is AuthStatus.AUTHENTICATED
        assert state.is_authenticated
        assert not state.is_loading
        assert state.access_token == "at-1"
        assert state.refresh_token == "rt-1"
        assert state.id_token == ID_TOKEN
        assert state.user is not None
        assert state.user.email == "ada@example.com"
        assert controller.is_authenticated()
        assert controller.get_access_token() == "at-1"
        assert [s.status for s in seen] == [AuthStatus.INITIALIZING, AuthStatus.AUTHENTICATED]
        assert seen[0].is_loading

    def test_state_mismatch(
        self, controller: SessionController, idp: ProviderStub
    ) -> None:
        """A forged state never reaches the token endpoint."""
        controller.login()
        with pytest.raises(CsrfMismatchError):
            asyncio.run(controller.handle_callback("code-1", "forged"))
        assert idp.calls(TOKEN_PATH) == []
        assert controller.state.status is AuthStatus.UNAUTHENTICATED
        assert controller.state.error == CALLBACK_FAILED_MESSAGE
        assert controller.token_store.get_access_token() is None

    def test_exchange_failure_clears_store(
        self, controller: SessionController, idp: ProviderStub
    ) -> None:
        """Provider rejection leaves no credentials behind."""
        idp.route(TOKEN_PATH, httpx.Response(400, json={"error": "invalid_grant"}))
        with pytest.raises(ProviderError):
            asyncio.run(sign_in(controller))
        assert controller.token_store.snapshot().access_token is None
        assert not controller.state.is_authenticated

    def test_callback_url(self, controller: SessionController) -> None:
        """Code and state are read from the redirect URL."""
        state = authorization_params(controller.login())["state"]
        url = f"{APP_URL}/auth/callback?code=code-1&state={state}"
        user = asyncio.run(controller.handle_callback_url(url))
        assert user.sub == "user-1"

    def test_callback_url_provider_error(self, controller: SessionController) -> None:
        """Provider error parameters become AuthorizationDeniedError."""
        controller.login()
        url = f"{APP_URL}/auth/callback?error=access_denied&error_description=User+cancelled"
        with pytest.raises(AuthorizationDeniedError) as exc_info:
            asyncio.run(controller.handle_callback_url(url))
        assert exc_info.value.error_code == "access_denied"
        assert controller.state.error == "User cancelled"
        assert controller.provider.pending.peek() is None

    @pytest.mark.parametrize("query", ["code=abc", "state=xyz", ""])
    def test_callback_url_missing_params(self, controller: SessionController, query: str) -> None:
        """Missing code or state is rejected."""
        with pytest.raises(AuthenticationError, match=MISSING_PARAMS_MESSAGE):
            asyncio.run(controller.handle_callback_url(f"{APP_URL}/auth/callback?{query}"))
        assert controller.state.error == MISSING_PARAMS_MESSAGE


class TestUserResolution:
    """Tests for user-info fallback."""

    def test_userinfo_used_without_id_token(
        self, controller: SessionController, idp: ProviderStub
    ) -> None:
        """Without an ID token the user-info endpoint supplies the user."""
        user = asyncio.run(sign_in(controller))
        assert user.name == "Ada Lovelace"
        assert idp.calls(USERINFO_PATH)[0].headers["Authorization"] == "Bearer at-1"

    def test_userinfo_failure_fails_callback(
        self, controller: SessionController, idp: ProviderStub
    ) -> None:
        """If no user can be resolved the login fails and tokens are dropped."""
        idp.route(USERINFO_PATH, httpx.Response(500))
        with pytest.raises(ProviderError):
            asyncio.run(sign_in(controller))
        assert controller.token_store.get_access_token() is None

    def test_get_current_user_without_tokens(self, controller: SessionController) -> None:
        """No credentials, no user."""
        assert asyncio.run(controller.get_current_user()) is None


# ── Initialize ──────────────────────────────────────────────────────


class TestInitialize:
    """Tests for initialize()."""

    def test_without_tokens(self, controller: SessionController) -> None:
        """An empty store initializes to unauthenticated."""
        state = asyncio.run(controller.initialize())
        assert state.status is AuthStatus.UNAUTHENTICATED
        assert not state.is_loading
        assert not state.is_authenticated

    def test_with_valid_tokens(self, controller: SessionController) -> None:
        """Existing valid tokens restore the session."""
        controller.token_store.set_tokens(
            TokenResponse(access_token="at-1", refresh_token="rt-1", id_token=ID_TOKEN)
        )
        state = asyncio.run(controller.initialize())
        assert state.status is AuthStatus.AUTHENTICATED
        assert state.user is not None
        assert state.user.sub == "user-1"

    def test_with_expired_tokens(self, controller: SessionController, clock: FakeClock) -> None:
        """Expired tokens do not restore a session."""
        controller.token_store.set_tokens(TokenResponse(access_token="at-1", expires_in=60))
        clock.advance(61)
        state = asyncio.run(controller.initialize())
        assert state.status is AuthStatus.UNAUTHENTICATED

    def test_user_unresolvable(self, controller: SessionController, idp: ProviderStub) -> None:
        """Valid tokens but no user means unauthenticated."""
        idp.route(USERINFO_PATH, httpx.Response(401))
        controller.token_store.set_tokens(TokenResponse(access_token="at-1"))
        state = asyncio.run(controller.initialize())
        assert state.status is AuthStatus.UNAUTHENTICATED
        assert state.user is None


# ── Logout ──────────────────────────────────────────────────────────


@pytest.mark.usefixtures("with_id_token")
class TestLogout:
    """Tests for logout()."""

    def test_revokes_clears_and_navigates(
        self, controller: SessionController, idp: ProviderStub, navigator: MagicMock
    ) -> None:
        """Logout revokes the access token and goes to the end-session URL."""

        async def run() -> str:
            await sign_in(controller)
            return await controller.logout()

        url = asyncio.run(run())

        assert form_data(idp.calls(REVOKE_PATH)[0])["token"] == "at-1"
        assert controller.token_store.snapshot().access_token is None
        assert controller.state.status is AuthStatus.UNAUTHENTICATED
        assert controller.state.user is None
        assert url.startswith(f"{ISSUER}/idp/init_logout.openid?")
        assert authorization_params(url)["id_token_hint"] == ID_TOKEN
        navigator.assert_called_with(url)

    def test_revocation_failure_still_logs_out(
        self, controller: SessionController, idp: ProviderStub
    ) -> None:
        """A failing revocation endpoint does not block logout."""
        idp.route(REVOKE_PATH, httpx.Response(500))

        async def run() -> None:
            await sign_in(controller)
            await controller.logout()

        asyncio.run(run())
        assert controller.state.status is AuthStatus.UNAUTHENTICATED
        assert controller.token_store.get_access_token() is None

    def test_logout_without_tokens_skips_revocation(
        self, controller: SessionController, idp: ProviderStub
    ) -> None:
        """Nothing to revoke when not signed in."""
        asyncio.run(controller.logout())
        assert idp.calls(REVOKE_PATH) == []
        assert controller.state.status is AuthStatus.UNAUTHENTICATED

    def test_logout_url_unavailable(
        self, oauth_settings: OAuthSettings, clock: FakeClock, navigator: MagicMock
    ) -> None:
        """When the end-session URL cannot be built the user goes home."""
        settings = oauth_settings.model_copy(update={"client_id": ""})
        controller = SessionController(
            ProviderClient(settings),
            TokenStore(clock=clock),
            navigator=navigator,
            home_url="https://app.example.com/",
        )
        controller.token_store.set_tokens(TokenResponse(access_token="at-1"))

        url = asyncio.run(controller.logout())

        assert url == "https://app.example.com/"
        navigator.assert_called_once_with("https://app.example.com/")
        assert controller.token_store.get_access_token() is None


class TestLogoutDuringRefresh:
    """Logout while a 401-triggered refresh is still in flight."""

    @pytest.mark.asyncio
    async def test_refresh_cannot_revive_session(
        self,
        controller: SessionController,
        idp: ProviderStub,
        navigator: MagicMock,
        notifier: MagicMock,
    ) -> None:
        """Tokens granted after logout are revoked and never stored."""

        async def token_endpoint(request: httpx.Request) -> httpx.Response:
            if form_data(request)["grant_type"] == "authorization_code":
                return httpx.Response(200, json=token_payload(id_token=ID_TOKEN))
            await asyncio.sleep(0.05)
            return httpx.Response(
                200, json=token_payload(access_token="at-2", refresh_token="rt-2")
            )

        api_requests: list[httpx.Request] = []

        def api(request: httpx.Request) -> httpx.Response:
            api_requests.append(request)
            if request.headers.get("Authorization") == "Bearer at-2":
                return httpx.Response(200, json={"ok": True})
            return httpx.Response(401)

        idp.route(TOKEN_PATH, token_endpoint)
        await sign_in(controller)
        client = controller.create_client(
            base_url="https://api.example.com", transport=httpx.MockTransport(api)
        )

        request = asyncio.ensure_future(client.get("/items"))
        for _ in range(100):
            if controller.coordinator.is_refreshing:
                break
            await asyncio.sleep(0)
        assert controller.coordinator.is_refreshing
        logout_url = await controller.logout()

        with pytest.raises(SessionExpiredError):
            await request

        assert controller.token_store.snapshot() == CredentialSet()
        assert controller.state.status is AuthStatus.UNAUTHENTICATED
        assert controller.state.access_token is None
        assert len(api_requests) == 1
        revoked = [form_data(r)["token"] for r in idp.calls(REVOKE_PATH)]
        assert revoked == ["at-1", "at-2", "rt-2"]
        assert navigator.call_args.args == (logout_url,)
        assert controller.login_url not in [c.args[0] for c in navigator.call_args_list]
        notifier.assert_not_called()

        await client.aclose()
        await controller.aclose()


# ── Refresh ─────────────────────────────────────────────────────────


class TestRefreshAccessToken:
    """Tests for refresh_access_token()."""

    def test_success(self, controller: SessionController, idp: ProviderStub) -> None:
        """The new token is mirrored into the published state."""
        idp.route(
            TOKEN_PATH,
            grant_router(
                token_payload(id_token=ID_TOKEN),
                token_payload(access_token="at-2", refresh_token="rt-2"),
            ),
        )

        async def run() -> bool:
            await sign_in(controller)
            return await controller.refresh_access_token()

        assert asyncio.run(run()) is True
        assert controller.state.status is AuthStatus.AUTHENTICATED
        assert controller.state.access_token == "at-2"
        assert controller.state.refresh_token == "rt-2"
        assert controller.state.id_token == ID_TOKEN

    def test_failure_with_valid_tokens(
        self, controller: SessionController, idp: ProviderStub
    ) -> None:
        """A failed refresh keeps a still-valid session but records the error."""
        idp.route(
            TOKEN_PATH,
            grant_router(
                token_payload(id_token=ID_TOKEN),
                httpx.Response(400, json={"error": "invalid_grant"}),
            ),
        )

        async def run() -> bool:
            await sign_in(controller)
            return await controller.refresh_access_token()

        assert asyncio.run(run()) is False
        assert controller.state.status is AuthStatus.AUTHENTICATED
        assert controller.state.error == REFRESH_FAILED_MESSAGE

    def test_failure_with_expired_tokens(
        self, controller: SessionController, idp: ProviderStub, clock: FakeClock
    ) -> None:
        """A failed refresh of an expired session ends it."""
        idp.route(
            TOKEN_PATH,
            grant_router(
                token_payload(id_token=ID_TOKEN),
                httpx.Response(400, json={"error": "invalid_grant"}),
            ),
        )

        async def run() -> bool:
            await sign_in(controller)
            clock.advance(3500)
            return await controller.refresh_access_token()

        assert asyncio.run(run()) is False
        assert controller.state.status is AuthStatus.UNAUTHENTICATED
        assert controller.state.user is None


# ── Token store mirroring ───────────────────────────────────────────


@pytest.mark.usefixtures("with_id_token")
class TestStoreMirroring:
    """Tests for reacting to token store changes made elsewhere."""

    def test_external_clear_ends_session(self, controller: SessionController) -> None:
        """Clearing the store from outside publishes an unauthenticated state."""

        async def run() -> None:
            await sign_in(controller)
            controller.token_store.clear()

        asyncio.run(run())
        state = controller.state
        assert state.status is AuthStatus.UNAUTHENTICATED
        assert state.error == SESSION_LOST_MESSAGE
        assert state.access_token is None
        assert not state.is_authenticated

    def test_external_update_is_mirrored(self, controller: SessionController) -> None:
        """Tokens updated elsewhere appear in the next state."""

        async def run() -> None:
            await sign_in(controller)
            controller.token_store.update_access_token("at-9", 3600)

        asyncio.run(run())
        assert controller.state.access_token == "at-9"
        assert controller.state.status is AuthStatus.AUTHENTICATED

    def test_failing_observer_is_isolated(self, controller: SessionController) -> None:
        """An observer raising does not break state transitions."""
        controller.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        asyncio.run(sign_in(controller))
        assert controller.state.status is AuthStatus.AUTHENTICATED

    def test_unsubscribe(self, controller: SessionController) -> None:
        """Removed observers stop receiving states."""
        observer = MagicMock()
        unsubscribe = controller.subscribe(observer)
        unsubscribe()
        asyncio.run(sign_in(controller))
        observer.assert_not_called()


# ── Background refresh ──────────────────────────────────────────────


class TestBackgroundRefresh:
    """Tests for the automatic refresh task."""

    def test_refreshes_before_expiry(
        self, controller: SessionController, idp: ProviderStub
    ) -> None:
        """A token inside the refresh buffer is refreshed automatically."""
        idp.route(
            TOKEN_PATH,
            grant_router(
                token_payload(id_token=ID_TOKEN, expires_in=200),
                token_payload(access_token="at-2", expires_in=3600),
            ),
        )

        async def run() -> None:
            await sign_in(controller)
            await asyncio.sleep(0.1)
            await controller.aclose()

        asyncio.run(run())
        refreshes = [
            r for r in idp.calls(TOKEN_PATH) if form_data(r)["grant_type"] == "refresh_token"
        ]
        assert len(refreshes) == 1
        assert controller.get_access_token() == "at-2"
        assert controller.state.status is AuthStatus.AUTHENTICATED

    def test_failure_logs_out_and_notifies(
        self,
        controller: SessionController,
        idp: ProviderStub,
        navigator: MagicMock,
        notifier: MagicMock,
    ) -> None:
        """When the automatic refresh fails the user is logged out and told."""
        idp.route(
            TOKEN_PATH,
            grant_router(
                token_payload(id_token=ID_TOKEN, expires_in=200),
                httpx.Response(400, json={"error": "invalid_grant"}),
            ),
        )

        async def run() -> None:
            await sign_in(controller)
            await asyncio.sleep(0.1)
            await controller.aclose()

        asyncio.run(run())
        notifier.assert_called_once_with(SESSION_EXPIRED_NOTICE)
        assert navigator.call_args.args[0].startswith(f"{ISSUER}/idp/init_logout.openid?")
        assert controller.state.status is AuthStatus.UNAUTHENTICATED
        assert controller.token_store.get_access_token() is None

    def test_no_refresh_while_fresh(
        self, controller: SessionController, idp: ProviderStub
    ) -> None:
        """Tokens far from expiry are left alone."""
        idp.route(TOKEN_PATH, token_payload(id_token=ID_TOKEN))

        async def run() -> None:
            await sign_in(controller)
            await asyncio.sleep(0.05)
            await controller.aclose()

        asyncio.run(run())
        assert len(idp.calls(TOKEN_PATH)) == 1


# ── Helpers on the controller ───────────────────────────────────────


class TestControllerHelpers:
    """Tests for return URLs, client creation and construction from settings."""

    @pytest.mark.usefixtures("with_id_token")
    def test_consume_return_url(self, controller: SessionController) -> None:
        """The login return URL is handed out once."""
        asyncio.run(sign_in(controller, return_url="/reports"))
        assert controller.consume_return_url() == "/reports"
        assert controller.consume_return_url() == "/"
        assert controller.consume_return_url("/fallback") == "/fallback"

    def test_create_client_shares_session(self, controller: SessionController) -> None:
        """Clients share the store, coordinator, navigator and notifier."""
        client = controller.create_client(base_url="https://api.example.com")
        assert isinstance(client, AuthenticatedClient)
        assert client.token_store is controller.token_store
        assert client.coordinator is controller.coordinator
        assert client.navigator is controller.navigator
        assert client.notifier is controller.notifier
        asyncio.run(client.aclose())

    def test_from_settings(self, idp: ProviderStub) -> None:
        """Settings drive timings and URLs."""
        settings = OAuthSessionSettings(
            oauth={"issuer": ISSUER, "client_id": CLIENT_ID, "app_url": APP_URL},
            token={"refresh_buffer_seconds": 120, "check_interval_seconds": 5},
        )
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(idp))
        controller = SessionController.from_settings(settings, http_client=http_client)

        assert controller.refresh_buffer == 120
        assert controller.check_interval == 5
        assert controller.login_url == "https://app.example.com/auth/login"
        assert controller.home_url == "https://app.example.com/"
        assert controller.provider.redirect_uri == "https://app.example.com/auth/callback"
        asyncio.run(controller.aclose())
        assert not http_client.is_closed
