from __future__ import annotations

import html
import logging
import secrets
import socket
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib import parse as urlparse

from .errors import (
    AuthError,
    AuthorizationDeniedError,
    CallbackTimeoutError,
    CsrfError,
)

LOGGER = logging.getLogger("timesheet.auth")

CALLBACK_HOST = "127.0.0.1"
CALLBACK_PATH = "/callback"
CALLBACK_TIMEOUT_S = 300.0
REQUEST_TIMEOUT_S = 10.0
SHUTDOWN_JOIN_S = 2.0

_PAGE_STYLE = """
    body {
      font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
      display: flex;
      justify-content: center;
      align-items: center;
      height: 100vh;
      margin: 0;
      background-color: #f5f5f5;
    }
    .container {
      text-align: center;
      padding: 40px;
      background: white;
      border-radius: 8px;
      box-shadow: 0 2px 4px rgba(0,0,0,0.1);
    }
    p { color: #666; margin-bottom: 8px; }
    .hint { font-size: 14px; color: #999; margin-top: 16px; }
    .error { font-family: monospace; background: #fee2e2; padding: 8px; border-radius: 4px; }
"""


def _page(*, title: str, color: str, heading: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Timesheet CLI - {title}</title>
  <style>{_PAGE_STYLE}    h1 {{ color: {color}; margin-bottom: 16px; }}
  </style>
</head>
<body>
  <div class="container">
    <h1>{heading}</h1>
{body}
  </div>
</body>
</html>
"""


SUCCESS_HTML = _page(
    title="Login Successful",
    color="#22c55e",
    heading="&#10003; Login Successful",
    body=(
        "    <p>You have been authenticated with Timesheet CLI.</p>\n"
        '    <p class="hint">You can close this window and return to the terminal.</p>'
    ),
)


def error_html(message: str) -> str:
    return _page(
        title="Login Failed",
        color="#ef4444",
        heading="&#10007; Login Failed",
        body=(
            "    <p>Authentication failed with the following error:</p>\n"
            f'    <p class="error">{html.escape(message, quote=True)}</p>\n'
            '    <p class="hint">Please close this window and try again.</p>'
        ),
    )


class _LoopbackServer(ThreadingHTTPServer):
    daemon_threads = True
    # server_close() must not wait on handler threads parked on idle sockets.
    block_on_close = False


@dataclass(frozen=True, slots=True)
class CallbackResult:
    code: str
    state: str


class CallbackListener:
    """One-shot loopback receiver for the OAuth redirect.

    The first of {valid callback, error callback, state mismatch, timeout}
    settles the listener; the socket is then closed and later requests are
    dropped without effect.
    """

    def __init__(
        self,
        expected_state: str,
        *,
        timeout_s: float = CALLBACK_TIMEOUT_S,
        host: str = CALLBACK_HOST,
        callback_path: str = CALLBACK_PATH,
    ) -> None:
        if not expected_state:
            raise ValueError("internal error: expected_state is required")
        self.expected_state = expected_state
        self.timeout_s = timeout_s
        self.host = host
        self.callback_path = callback_path

        self._settle_lock = threading.Lock()
        self._settled = threading.Event()
        self._result: CallbackResult | None = None
        self._error: AuthError | None = None

        self._close_lock = threading.Lock()
        self._closing = False
        self._started = False
        self._closed = threading.Event()

        self._conn_lock = threading.Lock()
        self._connections: set[socket.socket] = set()

        self._server = _LoopbackServer((host, 0), self._handler_class())
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="oauth-callback",
            daemon=True,
        )
        self._timer = threading.Timer(timeout_s, self._on_timeout)
        self._timer.daemon = True

    @property
    def port(self) -> int:
        return int(self._server.server_address[1])

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.host}:{self.port}{self.callback_path}"

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self) -> CallbackListener:
        self._started = True
        self._thread.start()
        self._timer.start()
        LOGGER.info("auth.callback_listener started redirect_uri=%s", self.redirect_uri)
        return self

    def await_result(self) -> CallbackResult:
        self._settled.wait()
        self.close()
        if self._error is not None:
            raise self._error
        if self._result is None:
            raise RuntimeError("callback listener settled without a result")
        return self._result

    def close(self) -> None:
        with self._close_lock:
            first = not self._closing
            self._closing = True
        if not first:
            self._closed.wait(timeout=5.0)
            return
        try:
            self._timer.cancel()
            if self._started:
                self._stop_serving()
            self._server.server_close()
            self._drop_connections()
        finally:
            self._closed.set()
        if self._started and threading.current_thread() is not self._thread:
            self._thread.join(timeout=SHUTDOWN_JOIN_S)
        LOGGER.info("auth.callback_listener stopped redirect_uri=%s", self.redirect_uri)

    def _stop_serving(self) -> None:
        # shutdown() waits on serve_forever; the port is released regardless.
        stopper = threading.Thread(
            target=self._server.shutdown, name="oauth-callback-shutdown", daemon=True
        )
        stopper.start()
        stopper.join(timeout=SHUTDOWN_JOIN_S)
        if stopper.is_alive():
            LOGGER.info("auth.callback_listener shutdown did not finish; closing socket")

    def _drop_connections(self) -> None:
        with self._conn_lock:
            connections = list(self._connections)
            self._connections.clear()
        for conn in connections:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError as exc:
                LOGGER.debug("auth.callback_listener connection already gone err=%s", exc)

    def _track(self, conn: socket.socket, *, opened: bool) -> None:
        with self._conn_lock:
            if opened:
                self._connections.add(conn)
            else:
                self._connections.discard(conn)

    def _settle(
        self, *, result: CallbackResult | None = None, error: AuthError | None = None
    ) -> bool:
        with self._settle_lock:
            if self._settled.is_set():
                return False
            self._result = result
            self._error = error
            self._settled.set()
        return True

    def _on_timeout(self) -> None:
        if self._settle(
            error=CallbackTimeoutError("Login timeout. Please try again.")
        ):
            LOGGER.info("auth.callback_listener timed out after %ss", self.timeout_s)
        self.close()

    def _after_response(self) -> None:
        # The serving thread cannot shut its own server down.
        threading.Thread(target=self.close, name="oauth-callback-close", daemon=True).start()

    def _handle(self, handler: BaseHTTPRequestHandler) -> None:
        if self._settled.is_set():
            handler.close_connection = True
            return

        req = urlparse.urlsplit(handler.path)
        if req.path != self.callback_path:
            _respond(handler, 404, "Not Found", content_type="text/plain; charset=utf-8")
            return

        qs = urlparse.parse_qs(req.query)
        code = (qs.get("code") or [None])[0]
        state = (qs.get("state") or [None])[0]
        error = (qs.get("error") or [None])[0]
        error_description = (qs.get("error_description") or [None])[0]

        failure: AuthError | None = None
        if error:
            failure = AuthorizationDeniedError(error, error_description)
            page_message = error_description or error
        elif not code:
            failure = AuthError("Missing authorization code")
            page_message = "Missing authorization code"
        elif not _state_matches(state, self.expected_state):
            failure = CsrfError("Invalid state parameter (possible CSRF attack)")
            page_message = "Invalid state parameter (possible CSRF attack)"

        if failure is not None:
            if not self._settle(error=failure):
                handler.close_connection = True
                return
            LOGGER.info("auth.callback rejected reason=%s", type(failure).__name__)
            _respond(handler, 400, error_html(page_message))
        elif code is not None and state is not None:
            if not self._settle(result=CallbackResult(code=code, state=state)):
                handler.close_connection = True
                return
            LOGGER.info("auth.callback accepted")
            _respond(handler, 200, SUCCESS_HTML)
        self._after_response()

    def _handler_class(self) -> type[BaseHTTPRequestHandler]:
        listener = self

        class Handler(BaseHTTPRequestHandler):
            timeout = REQUEST_TIMEOUT_S

            def setup(self) -> None:
                super().setup()
                listener._track(self.connection, opened=True)

            def finish(self) -> None:
                listener._track(self.connection, opened=False)
                super().finish()

            def do_GET(self) -> None:  # noqa: N802
                listener._handle(self)

            def log_message(self, format: str, *args: object) -> None:  # noqa: A003
                return

        return Handler


def listen(expected_state: str, *, timeout_s: float = CALLBACK_TIMEOUT_S) -> CallbackListener:
    return CallbackListener(expected_state, timeout_s=timeout_s).start()


def _state_matches(received: str | None, expected: str) -> bool:
    if received is None:
        return False
    return secrets.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))


def _respond(
    handler: BaseHTTPRequestHandler,
    status: int,
    body_text: str,
    *,
    content_type: str = "text/html; charset=utf-8",
) -> None:
    body = body_text.encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", content_type)
    handler.send_header("Content-Length", str(len(body)))
    handler.send_header("Cache-Control", "no-store")
    handler.end_headers()
    handler.wfile.write(body)
