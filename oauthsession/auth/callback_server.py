"""Loopback HTTP server that captures the provider redirect.

For command-line and desktop use: the redirect URI points at
``http://127.0.0.1:<port>/auth/callback`` and the first request to that
path is parsed into ``CallbackParams``.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import html
import logging
import threading

from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import urlsplit

from ..state.types import CallbackParams


logger = logging.getLogger("oauthsession.auth")

_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{title}</title>
<style>
  body {{ font-family: system-ui, sans-serif; display: grid; place-items: center;
         min-height: 100vh; margin: 0; background: #f4f5f7; color: #222; }}
  main {{ padding: 2rem 3rem; background: #fff; border-radius: 8px;
          box-shadow: 0 1px 8px rgba(0,0,0,.1); text-align: center; }}
  h1 {{ font-size: 1.4rem; color: {color}; }}
</style></head>
<body><main><h1>{title}</h1><p>{detail}</p></main></body>
</html>"""

_SECURITY_HEADERS = {
    "Cache-Control": "no-store",
    "Content-Security-Policy": "default-src 'none'; style-src 'unsafe-inline'",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
}


def render_page(title: str, detail: str, *, failed: bool = False) -> str:
    """Render a minimal status page with escaped text."""
    return _PAGE.format(
        title=html.escape(title),
        detail=html.escape(detail),
        color="#b00020" if failed else "#1b5e20",
    )


class _CallbackHTTPServer(HTTPServer):
    """``HTTPServer`` carrying the capture state for its handler."""

    def __init__(self, address: tuple[str, int], path: str) -> None:
        super().__init__(address, _CallbackHandler)
        self.callback_path = path
        self.params: CallbackParams | None = None
        self.url: str | None = None
        self.received = threading.Event()


class _CallbackHandler(BaseHTTPRequestHandler):
    server: _CallbackHTTPServer

    def do_GET(self) -> None:
        """Capture the first request to the callback path."""
        parts = urlsplit(self.path)
        if parts.path != self.server.callback_path:
            if parts.path == "/":
                page = render_page("Waiting for sign-in", "Finish logging in in your browser.")
                self._reply(200, page)
            else:
                self.send_error(404)
            return

        if self.server.received.is_set():
            self._reply(200, render_page("Already signed in", "You can close this window."))
            return

        params = CallbackParams.from_query(parts.query)
        self.server.params = params
        self.server.url = f"http://{self.headers.get('Host', 'localhost')}{self.path}"
        if params.error:
            reason = params.error_description or params.error
            self._reply(400, render_page("Sign-in failed", reason, failed=True))
        else:
            self._reply(200, render_page("Sign-in complete", "You can close this window."))
        self.server.received.set()

    def _reply(self, status: int, body: str) -> None:
        encoded = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        for name, value in _SECURITY_HEADERS.items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(encoded)

    def log_message(self, *args: Any) -> None:
        """Route request logging to the package logger."""
        if args:
            logger.debug("Callback server: %s", args[0] % args[1:])


class CallbackServer:
    """Ephemeral loopback server for one authorization redirect.

    Parameters
    ----------
    host : str
        Bind address (default ``"127.0.0.1"``).
    port : int
        Port number (``0`` picks a free port).
    path : str
        Path the provider redirects to.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0, path: str = "/auth/callback") -> None:
        """Initialize the callback server."""
        self.host = host
        self.port = port
        self.path = path
        self._server: _CallbackHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def redirect_uri(self) -> str:
        """Redirect URI to register for this server (valid after ``start``)."""
        return f"http://{self.host}:{self.port}{self.path}"

    @property
    def callback_url(self) -> str | None:
        """Full URL of the captured redirect, once received."""
        return self._server.url if self._server else None

    def start(self) -> str:
        """Bind and serve on a daemon thread.

        Returns
        -------
        str
            The redirect URI.
        """
        self._server = _CallbackHTTPServer((self.host, self.port), self.path)
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.debug("Callback server listening on %s", self.redirect_uri)
        return self.redirect_uri

    def wait_for_callback(self, timeout: float = 120.0) -> CallbackParams | None:
        """Block until the redirect arrives.

        Returns
        -------
        CallbackParams or None
            The captured parameters, or None when ``timeout`` expires.
        """
        if self._server is None:
            msg = "Callback server is not running"
            raise RuntimeError(msg)
        if self._server.received.wait(timeout=timeout):
            return self._server.params
        return None

    async def wait(self, timeout: float = 120.0) -> CallbackParams | None:
        """Await the redirect without blocking the event loop."""
        return await asyncio.to_thread(self.wait_for_callback, timeout)

    def stop(self) -> None:
        """Shut down the server and join its thread."""
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._thread = None

    def __enter__(self) -> CallbackServer:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
