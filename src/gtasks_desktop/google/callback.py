"""Loopback HTTP listener that captures the OAuth authorization redirect.

The listener binds an OS-assigned port on 127.0.0.1 and serves from a daemon
thread. The first request to the callback path settles a one-shot future on
the event loop that started the server; every later request is answered but
otherwise ignored.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs, urlparse

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/oauth2callback"

CONFIRMATION_PAGE = (
    b"<!doctype html><html><head><meta charset='utf-8'><title>Google Tasks Desktop</title>"
    b"</head><body><h2>Authentication complete.</h2>"
    b"<p>You can close this window and return to Google Tasks Desktop.</p></body></html>"
)


@dataclass(frozen=True)
class AuthorizationResult:
    """What the provider sent back to the callback path."""

    code: str | None = None
    error: str | None = None
    state: str | None = None

    @property
    def kind(self) -> str:
        """One of "ok", "provider_error" or "missing_code"."""
        if self.error:
            return "provider_error"
        if self.code:
            return "ok"
        return "missing_code"

    @property
    def ok(self) -> bool:
        return self.kind == "ok"


class _CallbackHTTPServer(HTTPServer):
    def __init__(
        self,
        server_address: tuple[str, int],
        expected_path: str,
        on_result: Callable[[AuthorizationResult], None],
    ) -> None:
        super().__init__(server_address, _CallbackHandler)
        self.expected_path = expected_path
        self.on_result = on_result


class _CallbackHandler(BaseHTTPRequestHandler):
    server: _CallbackHTTPServer

    def do_GET(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        if parsed.path != self.server.expected_path:
            self.send_response(404)
            self.send_header("Content-Type", "text/plain; charset=utf-8")
            self.end_headers()
            self.wfile.write(b"Not Found")
            return

        query = parse_qs(parsed.query)
        result = AuthorizationResult(
            code=query.get("code", [None])[0],
            error=query.get("error", [None])[0],
            state=query.get("state", [None])[0],
        )

        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(CONFIRMATION_PAGE)))
        self.end_headers()
        self.wfile.write(CONFIRMATION_PAGE)

        self.server.on_result(result)

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        logger.debug("Callback server: %s", format % args)


class LoopbackCallbackServer:
    """One-shot HTTP listener for the OAuth redirect.

    Example:
        >>> server = LoopbackCallbackServer()
        >>> port = await server.start()
        >>> try:
        ...     result = await server.wait_for_code()
        ... finally:
        ...     await server.stop()
    """

    def __init__(self, host: str = "127.0.0.1", path: str = CALLBACK_PATH):
        self.host = host
        self.path = path
        self._server: _CallbackHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._result: asyncio.Future[AuthorizationResult] | None = None
        self._stopped = False

    async def start(self) -> int:
        """Bind an ephemeral port and start serving.

        Returns:
            The port assigned by the operating system.
        """
        if self._server is not None or self._stopped:
            raise RuntimeError("Callback server can only be started once")

        self._loop = asyncio.get_running_loop()
        self._result = self._loop.create_future()
        self._server = _CallbackHTTPServer((self.host, 0), self.path, self._deliver)
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": 0.1},
            name="oauth-callback-server",
            daemon=True,
        )
        self._thread.start()

        logger.info("OAuth callback server listening on %s", self.redirect_uri)
        return self.port

    @property
    def port(self) -> int:
        if self._server is None:
            raise RuntimeError("Callback server not started")
        return self._server.server_address[1]

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.host}:{self.port}{self.path}"

    @property
    def is_serving(self) -> bool:
        return self._server is not None and not self._stopped

    async def wait_for_code(self) -> AuthorizationResult:
        """Wait for the provider to redirect back to the callback path."""
        if self._result is None:
            raise RuntimeError("Callback server not started")
        return await self._result

    async def stop(self) -> None:
        """Close the listener. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True

        if self._result is not None and not self._result.done():
            self._result.cancel()
        if self._server is not None:
            await asyncio.to_thread(self._close_server)

        logger.info("OAuth callback server stopped")

    def _close_server(self) -> None:
        # shutdown() waits for serve_forever to notice, up to one poll interval
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=1)

    def _deliver(self, result: AuthorizationResult) -> None:
        # Runs on the server thread
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._settle, result)

    def _settle(self, result: AuthorizationResult) -> None:
        if self._result is not None and not self._result.done():
            self._result.set_result(result)
