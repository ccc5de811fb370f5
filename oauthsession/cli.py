"""Command-line interface for oauthsession."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import webbrowser

from pathlib import Path
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from .config import OAuthSessionSettings


def main(argv: Sequence[str] | None = None) -> int:
    """Run the main CLI entry point.

    Returns
    -------
    int
        Exit code.
    """
    parser = argparse.ArgumentParser(
        prog="oauthsession",
        description="OAuth 2.0 authorization code + PKCE client tools",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # config command
    config_parser = subparsers.add_parser(
        "config",
        help="Show or export configuration",
    )
    config_group = config_parser.add_mutually_exclusive_group()
    config_group.add_argument(
        "--show",
        action="store_true",
        help="Show current configuration",
    )
    config_group.add_argument(
        "--toml",
        action="store_true",
        help="Export configuration as TOML",
    )
    config_group.add_argument(
        "--env",
        action="store_true",
        help="Export configuration as environment variables",
    )
    config_group.add_argument(
        "--sources",
        action="store_true",
        help="Show configuration file sources",
    )
    config_parser.add_argument(
        "--output",
        "-o",
        type=str,
        help="Output file path (default: stdout)",
    )

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Initialize an oauthsession.toml configuration file",
    )
    init_parser.add_argument(
        "--force",
        "-f",
        action="store_true",
        help="Overwrite existing configuration file",
    )
    init_parser.add_argument(
        "--path",
        "-p",
        type=str,
        default="oauthsession.toml",
        help="Path for configuration file (default: oauthsession.toml)",
    )

    # discover command
    subparsers.add_parser(
        "discover",
        help="Resolve and print the provider endpoints",
    )

    # login command
    login_parser = subparsers.add_parser(
        "login",
        help="Log in through the system browser and print the user identity",
    )
    login_parser.add_argument(
        "--timeout",
        "-t",
        type=float,
        default=120.0,
        help="Seconds to wait for the browser redirect (default: 120)",
    )
    login_parser.add_argument(
        "--port",
        type=int,
        default=0,
        help="Loopback port for the redirect (default: any free port)",
    )
    login_parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Only print the authorization URL",
    )

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    from .config import OAuthSessionSettings
    from .log import configure_from_settings, enable_debug

    settings = OAuthSessionSettings()
    configure_from_settings(settings.log)
    if args.verbose:
        enable_debug()

    if args.command == "config":
        return handle_config(args, settings)
    if args.command == "init":
        return handle_init(args, settings)
    if args.command == "discover":
        return asyncio.run(handle_discover(settings))
    if args.command == "login":
        return asyncio.run(handle_login(args, settings))
    parser.print_help()
    return 0


def handle_config(args: argparse.Namespace, settings: OAuthSessionSettings) -> int:
    """Handle the config command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.
    settings : OAuthSessionSettings
        Loaded configuration.

    Returns
    -------
    int
        Exit code.
    """
    if args.sources:
        return show_config_sources()

    if args.toml:
        output = settings.to_toml()
    elif args.env:
        output = settings.to_env()
    else:
        output = settings.show()

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        print(f"Configuration written to {args.output}")
    else:
        print(output)

    return 0


def handle_init(args: argparse.Namespace, settings: OAuthSessionSettings) -> int:
    """Handle the init command.

    Returns
    -------
    int
        Exit code.
    """
    path = Path(args.path)

    if path.exists() and not args.force:
        print(f"Error: {path} already exists. Use --force to overwrite.", file=sys.stderr)
        return 1

    header = """# oauthsession Configuration File
#
# Environment variables can override any setting:
#   OAUTHSESSION_OAUTH__ISSUER="https://login.example.com"
#   OAUTHSESSION_OAUTH__CLIENT_ID="my-client"
#   OAUTHSESSION_TOKEN__REFRESH_BUFFER_SECONDS=300
#   OAUTHSESSION_LOG__LEVEL="DEBUG"
#
# Use nested keys with __ (double underscore) delimiter.

"""
    path.write_text(header + settings.to_toml(), encoding="utf-8")
    print(f"Created {path}")

    return 0


async def handle_discover(settings: OAuthSessionSettings) -> int:
    """Resolve discovery and print the endpoints in effect."""
    from .auth.providers import ProviderClient
    from .exceptions import ConfigurationError

    provider = ProviderClient(settings.oauth, timeout=settings.http.timeout)
    try:
        metadata = await provider.resolve_discovery()
        endpoints = provider.endpoints()
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        await provider.close()

    source = "discovery document" if metadata else "static fallback paths"
    print(f"Endpoints for {settings.oauth.issuer} (from {source}):\n")
    for name, url in endpoints.items():
        print(f"  {name:<15} {url}")
    if metadata and metadata.jwks_uri:
        print(f"  {'jwks':<15} {metadata.jwks_uri}")
    return 0


def _browser_navigator(open_browser: bool) -> Callable[[str], None]:
    def navigate(url: str) -> None:
        print(f"Open this URL to continue:\n\n  {url}\n")
        if open_browser:
            webbrowser.open(url)

    return navigate


async def handle_login(args: argparse.Namespace, settings: OAuthSessionSettings) -> int:
    """Run a full loopback login and print the resulting identity."""
    from .auth.callback_server import CallbackServer
    from .auth.session import SessionController
    from .exceptions import OAuthSessionError

    server = CallbackServer(port=args.port, path=settings.oauth.callback_path)
    redirect_uri = server.start()
    controller = SessionController.from_settings(
        settings,
        redirect_uri=redirect_uri,
        navigator=_browser_navigator(not args.no_browser),
    )
    try:
        await controller.provider.resolve_discovery()
        controller.login()
        params = await server.wait(timeout=args.timeout)
        if params is None:
            print("Error: timed out waiting for the browser redirect", file=sys.stderr)
            return 1
        user = await controller.handle_callback_url(server.callback_url or "")
    except OAuthSessionError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        server.stop()
        await controller.aclose()

    print(f"Logged in as {user.display_name} (sub={user.sub})")
    if user.email:
        print(f"Email: {user.email}")
    return 0


def show_config_sources() -> int:
    """Show configuration file sources and their status.

    Returns
    -------
    int
        Exit code.
    """
    sources = [
        ("Built-in defaults", "", True),
        ("pyproject.toml [tool.oauthsession]", "pyproject.toml", None),
        ("./oauthsession.toml", "oauthsession.toml", None),
        ("~/.config/oauthsession/config.toml", "~/.config/oauthsession/config.toml", None),
        ("OAUTHSESSION_CONFIG_FILE", os.environ.get("OAUTHSESSION_CONFIG_FILE", ""), None),
        ("Environment variables", "OAUTHSESSION_* vars", None),
    ]

    print("Configuration Sources (in order of precedence):\n")
    print(f"{'Source':<40} {'Status':<15} {'Path'}")
    print("-" * 80)

    for name, path_str, forced_status in sources:
        if forced_status:
            status = "Active"
            path_display = ""
        elif name == "Environment variables":
            env_vars = sorted(k for k in os.environ if k.startswith("OAUTHSESSION_"))
            status = f"{len(env_vars)} vars" if env_vars else "No vars"
            path_display = ", ".join(env_vars[:3]) + ("..." if len(env_vars) > 3 else "")
        elif not path_str:
            status = "Not set"
            path_display = ""
        else:
            path = Path(path_str).expanduser()
            status = "Found" if path.exists() else "Not found"
            path_display = str(path)

        print(f"{name:<40} {status:<15} {path_display}")

    print("\nNote: Later sources override earlier ones.")
    return 0
