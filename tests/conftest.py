"""Pytest configuration and fixtures."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import os
import sys

from pathlib import Path
from typing import TYPE_CHECKING

import httpx
import pytest


# Add the project root to the path so ``tests.stubs`` and ``oauthsession`` import
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from oauthsession.auth.providers import ProviderClient  # noqa: E402
from oauthsession.config import OAuthSettings, clear_settings  # noqa: E402
from tests.stubs import (  # noqa: E402
    APP_URL,
    CLIENT_ID,
    ISSUER,
    REVOKE_PATH,
    TOKEN_PATH,
    USERINFO_PATH,
    FakeClock,
    ProviderStub,
    token_payload,
)


if TYPE_CHECKING:
    from collections.abc import Iterator


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    """Keep host environment variables and user config files out of tests."""
    for key in list(os.environ):
        if key.startswith("OAUTHSESSION_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("APPDATA", str(tmp_path / "appdata"))
    clear_settings()
    yield
    clear_settings()


@pytest.fixture()
def clock() -> FakeClock:
    """A fake clock starting at a fixed timestamp."""
    return FakeClock()


@pytest.fixture()
def oauth_settings() -> OAuthSettings:
    """Provider settings pointing at the stub issuer, discovery disabled."""
    return OAuthSettings(
        issuer=ISSUER,
        client_id=CLIENT_ID,
        app_url=APP_URL,
        use_discovery=False,
    )


@pytest.fixture()
def idp() -> ProviderStub:
    """Stub identity provider with token, revocation and user-info routes."""
    stub = ProviderStub()
    stub.route(TOKEN_PATH, token_payload())
    stub.route(REVOKE_PATH, httpx.Response(200))
    stub.route(
        USERINFO_PATH,
        {"sub": "user-1", "email": "ada@example.com", "name": "Ada Lovelace"},
    )
    return stub


@pytest.fixture()
def provider(oauth_settings: OAuthSettings, idp: ProviderStub) -> ProviderClient:
    """ProviderClient wired to the stub identity provider."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(idp))
    return ProviderClient(oauth_settings, http_client=http_client)
