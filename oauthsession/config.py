"""Configuration system for oauthsession using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.oauthsession] section (project-level)
3. ./oauthsession.toml (project-level, explicit)
4. ~/.config/oauthsession/config.toml (user-level, overrides project)
5. Environment variables (highest priority)

Environment variables use OAUTHSESSION_ prefix with nested delimiter __.
Example: OAUTHSESSION_OAUTH__ISSUER, OAUTHSESSION_TOKEN__REFRESH_BUFFER_SECONDS
"""

from __future__ import annotations

import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, Literal
from urllib.parse import urljoin

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    # Project-level pyproject.toml [tool.oauthsession] (lowest file priority)
    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    project_toml = Path("oauthsession.toml")
    if project_toml.exists():
        files.append(project_toml)

    if sys.platform == "win32":
        user_config = Path(os.environ.get("APPDATA", "~")) / "oauthsession" / "config.toml"
    else:
        user_config = Path("~/.config/oauthsession/config.toml")
    user_config = user_config.expanduser()
    if user_config.exists():
        files.append(user_config)

    # Environment variable override for config file (highest file priority)
    env_config = os.environ.get("OAUTHSESSION_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError):
            continue

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("oauthsession", {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {"client_secret"}

_REDACTED = "********"


class OAuthSettings(BaseSettings):
    """OAuth2 / OpenID Connect client configuration.

    Environment prefix: OAUTHSESSION_OAUTH__
    Example: OAUTHSESSION_OAUTH__ISSUER=https://login.example.com
    Example: OAUTHSESSION_OAUTH__CLIENT_ID=your-client-id

    TOML section: [tool.oauthsession.oauth]
    """

    model_config = SettingsConfigDict(
        env_prefix="OAUTHSESSION_OAUTH__",
        extra="ignore",
    )

    issuer: str = Field(default="", description="Provider issuer URL (https://...)")
    client_id: str = Field(default="", description="OAuth2 client ID")
    client_secret: str = Field(
        default="",
        description="OAuth2 client secret (empty for public clients using PKCE)",
    )
    scope: str = Field(
        default="openid profile email",
        description="Space-separated scopes to request",
    )

    # Application URLs
    app_url: str = Field(
        default="",
        description="Base URL of the application; used to derive redirect and logout URIs",
    )
    redirect_uri: str = Field(
        default="",
        description="Explicit redirect URI (defaults to app_url + callback_path)",
    )
    post_logout_redirect_uri: str = Field(
        default="",
        description="Where the provider sends the user after logout (defaults to app_url + '/')",
    )
    callback_path: str = Field(default="/auth/callback", description="Callback route path")
    login_path: str = Field(default="/auth/login", description="Login entry point route path")

    # Static fallback endpoint paths, appended to the issuer when discovery is unavailable
    authorization_path: str = "/as/authorization.oauth2"
    token_path: str = "/as/token.oauth2"
    revocation_path: str = "/as/revoke_token.oauth2"
    userinfo_path: str = "/idp/userinfo.openid"
    end_session_path: str = "/idp/init_logout.openid"
    discovery_path: str = "/.well-known/openid-configuration"

    use_discovery: bool = Field(
        default=True,
        description="Resolve endpoints from the provider discovery document",
    )
    validate_id_token: bool = Field(
        default=False,
        description="Verify ID token signature and nonce against the provider JWKS",
    )
    pending_max_age: float = Field(
        default=600.0,
        ge=30.0,
        description="Seconds a pending login (PKCE verifier + state) stays valid",
    )

    @field_validator("issuer", "app_url", mode="before")
    @classmethod
    def _strip_whitespace(cls, v: Any) -> Any:
        """Trim surrounding whitespace from URL values."""
        if isinstance(v, str):
            return v.strip()
        return v

    def normalized_issuer(self) -> str:
        """Return the issuer without trailing slashes.

        Validation happens at usage time rather than init time
        to allow partial configuration via env vars.

        Raises
        ------
        ConfigurationError
            If the issuer is missing or is not an http(s) URL.
        """
        issuer = self.issuer.strip()
        if not issuer or not issuer.startswith(("http://", "https://")):
            msg = "Invalid or missing issuer. Please set a valid https://... issuer URL."
            raise ConfigurationError(msg, setting="issuer")
        return issuer.rstrip("/")

    def require_client_id(self) -> str:
        """Return the client ID, raising ``ConfigurationError`` when unset."""
        if not self.client_id:
            msg = "OAuth2 client_id is not configured"
            raise ConfigurationError(msg, setting="client_id")
        return self.client_id

    def resolve_redirect_uri(self) -> str:
        """Return the redirect URI, deriving it from ``app_url`` when not explicit."""
        if self.redirect_uri:
            return self.redirect_uri
        if self.app_url:
            return self.app_url.rstrip("/") + self.callback_path
        msg = "Either redirect_uri or app_url must be configured"
        raise ConfigurationError(msg, setting="redirect_uri")

    def resolve_post_logout_redirect_uri(self) -> str:
        """Return the post-logout redirect URI, defaulting to the application root."""
        if self.post_logout_redirect_uri:
            return self.post_logout_redirect_uri
        if self.app_url:
            return self.app_url.rstrip("/") + "/"
        return "/"

    def resolve_login_url(self) -> str:
        """Return the login entry point, absolute when ``app_url`` is set."""
        if self.app_url:
            return urljoin(self.app_url.rstrip("/") + "/", self.login_path.lstrip("/"))
        return self.login_path


class TokenSettings(BaseSettings):
    """Token lifecycle settings.

    Environment prefix: OAUTHSESSION_TOKEN__
    Example: OAUTHSESSION_TOKEN__REFRESH_BUFFER_SECONDS=120
    """

    model_config = SettingsConfigDict(
        env_prefix="OAUTHSESSION_TOKEN__",
        extra="ignore",
    )

    refresh_buffer_seconds: float = Field(
        default=300.0,
        ge=0.0,
        description="Seconds before token expiry to trigger a proactive refresh",
    )
    check_interval_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Seconds between background expiry checks",
    )


class HttpSettings(BaseSettings):
    """HTTP client settings.

    Environment prefix: OAUTHSESSION_HTTP__
    Example: OAUTHSESSION_HTTP__TIMEOUT=10
    """

    model_config = SettingsConfigDict(
        env_prefix="OAUTHSESSION_HTTP__",
        extra="ignore",
    )

    api_base_url: str = Field(default="", description="Base URL for authenticated API calls")
    timeout: float = Field(default=30.0, gt=0.0, description="Network timeout in seconds")


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: OAUTHSESSION_LOG__
    Example: OAUTHSESSION_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="OAUTHSESSION_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


class OAuthSessionSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: OAUTHSESSION__

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.oauthsession] section
    3. ./oauthsession.toml (project-level)
    4. ~/.config/oauthsession/config.toml (user-level, overrides project)
    5. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="OAUTHSESSION__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    token: TokenSettings = Field(default_factory=TokenSettings)
    http: HttpSettings = Field(default_factory=HttpSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    SECTIONS: ClassVar[list[tuple[str, str, str]]] = [
        ("OAuth2 Client", "oauth", "OAUTH"),
        ("Token Lifecycle", "token", "TOKEN"),
        ("HTTP", "http", "HTTP"),
        ("Logging", "log", "LOG"),
    ]

    def __init__(self, **data: Any) -> None:
        # Explicit keyword data takes precedence over TOML files
        toml_config = _load_toml_config()
        merged = _deep_merge(toml_config, data)

        # Section models read their own env prefixes; re-instantiate them so
        # environment variables win over TOML values.
        for _, attr_name, _ in self.SECTIONS:
            section = merged.get(attr_name)
            if isinstance(section, dict):
                section_cls = type(self).model_fields[attr_name].annotation
                env_values = section_cls().model_dump(exclude_defaults=True)
                merged[attr_name] = _deep_merge(section, env_values)

        super().__init__(**merged)

    def to_toml(self) -> str:
        """Export settings as TOML string."""
        lines = [
            "# oauthsession Configuration",
            "# Generated by: oauthsession config --toml",
            "",
        ]

        all_data = self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for _, attr, _ in self.SECTIONS},
        )

        for _, section_name, _ in self.SECTIONS:
            lines.append(f"[{section_name}]")
            for field_name, field_value in all_data.get(section_name, {}).items():
                if isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                elif isinstance(field_value, str):
                    value_str = f'"{field_value}"'
                else:
                    value_str = str(field_value)
                lines.append(f"{field_name} = {value_str}")
            section_cls = type(getattr(self, section_name))
            lines.extend(
                f'{rn} = "{_REDACTED}"'
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )
            lines.append("")

        return "\n".join(lines)

    def to_env(self) -> str:
        """Export settings as shell environment variables."""
        lines = [
            "# oauthsession Environment Variables",
            "# Generated by: oauthsession config --env",
            "",
        ]

        all_data = self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for _, attr, _ in self.SECTIONS},
        )

        for _, attr_name, env_prefix in self.SECTIONS:
            for field_name, field_value in all_data.get(attr_name, {}).items():
                env_name = f"OAUTHSESSION_{env_prefix}__{field_name.upper()}"
                if isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                else:
                    value_str = str(field_value)
                lines.append(f'export {env_name}="{value_str}"')
            section_cls = type(getattr(self, attr_name))
            for redacted_name in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys()):
                env_name = f"OAUTHSESSION_{env_prefix}__{redacted_name.upper()}"
                lines.append(f'export {env_name}="{_REDACTED}"')

        return "\n".join(lines)

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["oauthsession Configuration", "=" * 60, ""]

        all_data = self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for _, attr, _ in self.SECTIONS},
        )

        for display_name, attr_name, _ in self.SECTIONS:
            lines.append(f"\n{display_name}")
            lines.append("-" * 40)
            for field_name, field_value in all_data.get(attr_name, {}).items():
                value_str = str(field_value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                lines.append(f"  {field_name:24} = {value_str}")
            section_cls = type(getattr(self, attr_name))
            lines.extend(
                f"  {rn:24} = {_REDACTED}"
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )

        return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> OAuthSessionSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return OAuthSessionSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> OAuthSessionSettings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
