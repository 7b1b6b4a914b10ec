"""Single-shot loopback HTTP listener for the PKCE redirect.

The identity provider redirects the browser to http://localhost:<port>/
with `code` and `state` query parameters. LoopbackListener binds that
port, serves exactly one request, checks it, writes a valid code to a
handoff file in a private temp directory, and stops serving.

Lifetime is scoped by the context manager: the server socket, the
serving thread and the temp directory are released exactly once on
every exit path, including timeout, integrity failure and SIGTERM.

Usage:
    port = find_free_port()
    with LoopbackListener(port, expected_state=pkce.state) as listener:
        webbrowser.open(authorize_url)
        result = listener.wait_for_callback(timeout=120)
        code = listener.read_code()
"""

from __future__ import annotations

__all__ = [
    "CallbackResult",
    "LoopbackListener",
    "find_free_port",
    "select_listener",
]

import os
import random
import secrets
import shutil
import socket
import tempfile
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

from pistudio.constants import CALLBACK_PORT_MAX, CALLBACK_PORT_MIN, CALLBACK_PORT_SEARCH_ATTEMPTS
from pistudio.exceptions import BrowserLoginTimeoutError, ConfigurationError, LocalResourceError
from pistudio.security.shutdown import register_exit_cleanup, unregister_exit_cleanup
from pistudio.telemetry.system_logger import get_system_logger

_logger = get_system_logger()

LOOPBACK_HOST = "127.0.0.1"

# Serving thread re-checks the stop flag this often
_SERVE_POLL_SECONDS = 0.25

_SUCCESS_PAGE = (
    "<!DOCTYPE html><html><head><meta charset='utf-8'><title>pistudio</title></head>"
    "<body style='font-family:sans-serif;text-align:center;padding-top:4em'>"
    "<h2>Authentication successful</h2>"
    "<p>You can close this tab and return to the terminal.</p>"
    "</body></html>"
)
_BAD_REQUEST_TEXT = "Bad request: missing code or state mismatch"
_NOT_FOUND_TEXT = "Not found"

_port_random = random.SystemRandom()


@dataclass(frozen=True)
class CallbackResult:
    """Outcome of the one request the listener served.

    Attributes:
        state_ok: True iff `state` was present and matched exactly.
        has_code: True iff a non-empty `code` was present.
        error: IdP `error` parameter, if the authorization was refused.
        error_description: IdP `error_description` parameter.
    """

    state_ok: bool
    has_code: bool
    error: str = ""
    error_description: str = ""

    @property
    def valid(self) -> bool:
        return self.state_ok and self.has_code and not self.error


def select_listener() -> type["LoopbackListener"]:
    """Return the listener implementation usable on this host.

    Raises:
        ConfigurationError: If this host cannot open a loopback TCP socket.
            The browser flow treats this as "fall back to device code".
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    except OSError as e:
        raise ConfigurationError(f"No loopback listener available on this host: {e}") from e
    sock.close()
    return LoopbackListener


def find_free_port(
    attempts: int = CALLBACK_PORT_SEARCH_ATTEMPTS,
    port_min: int = CALLBACK_PORT_MIN,
    port_max: int = CALLBACK_PORT_MAX,
) -> int:
    """Try random ports in the dynamic range for one that can be bound.

    Raises:
        LocalResourceError: If every attempt found the port in use.
    """
    for _ in range(attempts):
        port = _port_random.randint(port_min, port_max)
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((LOOPBACK_HOST, port))
            except OSError:
                continue
        return port

    raise LocalResourceError(
        f"No free local port found in {port_min}-{port_max} after {attempts} attempts. "
        "Try 'pistudio login --device-code' instead."
    )


class _CallbackServer(HTTPServer):
    """HTTPServer that knows its owning listener."""

    def __init__(self, address: tuple[str, int], listener: "LoopbackListener") -> None:
        self.listener = listener
        super().__init__(address, _CallbackHandler)


class _CallbackHandler(BaseHTTPRequestHandler):
    """Handles the single redirect GET."""

    server: _CallbackServer
    # Drop idle connections instead of blocking the serving thread
    timeout = 5

    def do_GET(self) -> None:
        query = parse_qs(urlsplit(self.path).query)
        if not query:
            # favicon and other stray requests are not the redirect
            self._respond(404, "text/plain; charset=utf-8", _NOT_FOUND_TEXT)
            return
        result = self.server.listener._record_callback(query)

        if result.valid:
            self._respond(200, "text/html; charset=utf-8", _SUCCESS_PAGE)
        elif result.error and result.state_ok:
            message = f"Authentication failed: {result.error}"
            if result.error_description:
                message = f"{message}: {result.error_description}"
            self._respond(400, "text/plain; charset=utf-8", message)
        else:
            self._respond(400, "text/plain; charset=utf-8", _BAD_REQUEST_TEXT)

    def _respond(self, status: int, content_type: str, body: str) -> None:
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(payload)))
        self.send_header("Cache-Control", "no-store")
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format: str, *args: object) -> None:
        # Default implementation prints the request line, which holds the code
        _logger.debug({"event": "callback_request_served", "client": self.client_address[0]})


class LoopbackListener:
    """One-request HTTP listener on 127.0.0.1:<port>.

    Cleanup is registered with the process exit handlers before the
    socket is bound, and close() is idempotent, so the timeout path, the
    normal path and a signal may all release it safely.
    """

    def __init__(self, port: int, expected_state: str) -> None:
        """Initialize the listener (nothing is bound until __enter__).

        Args:
            port: Loopback port to bind.
            expected_state: State value sent on the authorize request.
        """
        self._port = port
        self._expected_state = expected_state
        self._server: _CallbackServer | None = None
        self._thread: threading.Thread | None = None
        self._temp_dir: Path | None = None
        self._result: CallbackResult | None = None
        self._done = threading.Event()
        self._stop = threading.Event()
        self._close_lock = threading.Lock()
        self._closed = False

    @property
    def port(self) -> int:
        return self._port

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self._port}"

    @property
    def handoff_path(self) -> Path | None:
        """Location of the code handoff file (None before start)."""
        if self._temp_dir is None:
            return None
        return self._temp_dir / "code"

    def __enter__(self) -> "LoopbackListener":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def start(self) -> None:
        """Create the handoff directory, bind the port, start serving.

        Raises:
            LocalResourceError: If the port cannot be bound.
        """
        register_exit_cleanup(self.close)
        try:
            self._temp_dir = Path(tempfile.mkdtemp(prefix="pistudio-pkce-"))
            self._server = _CallbackServer((LOOPBACK_HOST, self._port), self)
        except OSError as e:
            self.close()
            raise LocalResourceError(
                f"Cannot start local callback listener on port {self._port}: {e}. "
                "Try 'pistudio login --device-code' instead."
            ) from e

        self._server.timeout = _SERVE_POLL_SECONDS
        self._thread = threading.Thread(
            target=self._serve,
            name=f"pistudio-callback-{self._port}",
            daemon=True,
        )
        self._thread.start()
        _logger.debug({"event": "callback_listener_started", "port": self._port})

    def _serve(self) -> None:
        server = self._server
        assert server is not None
        try:
            # Idle connections, non-GET requests and GETs without a query
            # string leave _result unset and do not count as the callback
            while not self._stop.is_set() and self._result is None:
                server.handle_request()
        except (OSError, ValueError):
            # Socket closed underneath us during shutdown
            pass
        finally:
            self._done.set()

    def _record_callback(self, query: dict[str, list[str]]) -> CallbackResult:
        """Validate the callback and hand off the code. Called on the serving thread."""
        code = (query.get("code") or [""])[0]
        state = (query.get("state") or [""])[0]
        state_ok = bool(state) and secrets.compare_digest(
            state.encode("utf-8"), self._expected_state.encode("utf-8")
        )

        result = CallbackResult(
            state_ok=state_ok,
            has_code=bool(code),
            error=(query.get("error") or [""])[0],
            error_description=(query.get("error_description") or [""])[0],
        )
        if result.valid:
            self._write_handoff(code)

        self._result = result
        return result

    def _write_handoff(self, code: str) -> None:
        path = self.handoff_path
        assert path is not None
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(code)

    def wait_for_callback(self, timeout: float) -> CallbackResult:
        """Block until the single request has been served.

        Raises:
            BrowserLoginTimeoutError: If nothing arrived within timeout.
        """
        if not self._done.wait(timeout) or self._result is None:
            raise BrowserLoginTimeoutError(
                f"No sign-in response received within {int(timeout)} seconds. "
                "Try 'pistudio login --device-code' instead."
            )
        return self._result

    def read_code(self) -> str:
        """Read the authorization code from the handoff file."""
        path = self.handoff_path
        if path is None:
            raise FileNotFoundError("Listener was never started")
        return path.read_text(encoding="utf-8").strip()

    def close(self) -> None:
        """Stop serving, free the port and delete the handoff directory. Idempotent."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=_SERVE_POLL_SECONDS * 4)
        if self._server is not None:
            self._server.server_close()
        if self._temp_dir is not None:
            shutil.rmtree(self._temp_dir, ignore_errors=True)

        unregister_exit_cleanup(self.close)
        _logger.debug({"event": "callback_listener_closed", "port": self._port})
