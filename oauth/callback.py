"""
Local OAuth callback listener.

Serves ``GET /callback`` on a loopback port from a background thread and
hands exactly one outcome (code or error) to the waiting flow driver.

    listener = CallbackListener(port, expected_state)
    listener.start()
    try:
        code = listener.wait_for_code(timeout=300)
    finally:
        listener.stop()
"""

from __future__ import annotations

import hmac
import html
import logging
import queue
import socket
import threading
import webbrowser
from typing import Optional, Union

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse

from config.settings import config
from oauth.errors import (
    AuthorizationDeniedError,
    CallbackCancelledError,
    CallbackServerError,
    CallbackTimeoutError,
    MissingCodeError,
    OAuthFlowError,
    StateMismatchError,
)

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/callback"

_Outcome = Union[str, OAuthFlowError]


def callback_redirect_uri(port: int) -> str:
    return f"http://localhost:{port}{CALLBACK_PATH}"


class CallbackListener:
    """Single-shot OAuth redirect receiver."""

    def __init__(
        self,
        port: int,
        expected_state: str,
        *,
        host: Optional[str] = None,
        shutdown_grace: Optional[float] = None,
    ) -> None:
        self._host = host or config.oauth_callback_host
        self._port = port
        self._expected_state = expected_state
        self._shutdown_grace = (
            config.oauth_server_shutdown_grace_seconds if shutdown_grace is None else shutdown_grace
        )
        # One slot: first delivery wins, later ones are dropped.
        self._outcomes: "queue.Queue[_Outcome]" = queue.Queue(maxsize=1)
        self._lock = threading.Lock()
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._socket: Optional[socket.socket] = None
        self.app = self._build_app()

    # ── Properties ──────────────────────────────────────────────────────

    @property
    def port(self) -> int:
        return self._port

    @property
    def redirect_uri(self) -> str:
        return callback_redirect_uri(self._port)

    @property
    def running(self) -> bool:
        return self._server is not None

    # ── HTTP app ────────────────────────────────────────────────────────

    def _build_app(self) -> FastAPI:
        app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

        @app.get(CALLBACK_PATH, response_class=HTMLResponse)
        async def oauth_callback(request: Request) -> HTMLResponse:
            return self.handle_callback(dict(request.query_params))

        return app

    def handle_callback(self, params: dict) -> HTMLResponse:
        """Validate one redirect and deliver its outcome."""
        error = params.get("error", "")
        if error:
            description = params.get("error_description", "")
            self._deliver(AuthorizationDeniedError(error, description))
            logger.warning("OAuth provider returned error '%s'", error)
            return _callback_response(False, f"Authorization failed: {description or error}")

        # Unconditional, even when a code is present.
        state = params.get("state", "")
        if not hmac.compare_digest(state.encode("utf-8"), self._expected_state.encode("utf-8")):
            self._deliver(StateMismatchError())
            logger.warning("OAuth callback rejected: state mismatch")
            return _callback_response(False, "Authorization failed: invalid state parameter")

        code = params.get("code", "")
        if not code:
            self._deliver(MissingCodeError())
            return _callback_response(False, "Authorization failed: no code received")

        self._deliver(code)
        logger.info("OAuth authorization code received on port %d", self._port)
        return _callback_response(
            True,
            "Authorization successful!",
            "You can close this window and return to the terminal.",
        )

    def _deliver(self, outcome: _Outcome) -> bool:
        try:
            self._outcomes.put_nowait(outcome)
            return True
        except queue.Full:
            logger.debug("Callback outcome dropped, one was already delivered")
            return False

    # ── Lifecycle ───────────────────────────────────────────────────────

    def start(self) -> None:
        """Bind the port and serve on a background thread. Bind errors raise here."""
        with self._lock:
            if self._server is not None:
                return

            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind((self._host, self._port))
                sock.listen(16)
            except OSError as exc:
                sock.close()
                raise CallbackServerError(
                    f"failed to start callback server on {self._host}:{self._port}", cause=exc
                ) from exc

            self._port = sock.getsockname()[1]
            self._socket = sock
            self._server = uvicorn.Server(
                uvicorn.Config(
                    self.app,
                    log_config=None,
                    access_log=False,
                    lifespan="off",
                    timeout_graceful_shutdown=int(self._shutdown_grace) or 1,
                )
            )
            self._thread = threading.Thread(
                target=self._serve,
                args=(self._server, sock),
                name=f"oauth-callback-{self._port}",
                daemon=True,
            )
            self._thread.start()
            logger.info("OAuth callback server listening on %s", self.redirect_uri)

    def _serve(self, server: uvicorn.Server, sock: socket.socket) -> None:
        try:
            server.run(sockets=[sock])
        except Exception as exc:
            logger.error("OAuth callback server crashed: %s", exc)
            self._deliver(CallbackServerError("callback server stopped unexpectedly", cause=exc))

    def wait_for_code(self, timeout: Optional[float] = None) -> str:
        """
        Block until a code, an error or the timeout, whichever comes first.

        Raises
        ------
        CallbackTimeoutError
            Nothing arrived within ``timeout`` seconds.
        CallbackError
            The provider reported an error, the state did not match or no
            code was present.
        CallbackCancelledError
            ``stop()`` was called while waiting.
        """
        if timeout is None:
            timeout = config.oauth_callback_timeout_seconds
        try:
            outcome = self._outcomes.get(timeout=timeout)
        except queue.Empty:
            raise CallbackTimeoutError() from None
        if isinstance(outcome, OAuthFlowError):
            raise outcome
        return outcome

    def stop(self) -> None:
        """Shut the server down within the grace period. Safe to call twice."""
        with self._lock:
            server, thread, sock = self._server, self._thread, self._socket
            self._server = self._thread = self._socket = None

        if server is None:
            return

        server.should_exit = True
        if thread is not None:
            thread.join(timeout=self._shutdown_grace + 1)
            if thread.is_alive():
                logger.warning("OAuth callback server did not stop within %.1fs", self._shutdown_grace)
        if sock is not None:
            sock.close()
        # Release a waiter still blocked in wait_for_code().
        self._deliver(CallbackCancelledError())
        logger.info("OAuth callback server on port %d stopped", self._port)


# ── Port helpers ───────────────────────────────────────────────────────────


def _port_is_free(port: int, host: Optional[str] = None) -> bool:
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        probe.bind((host or config.oauth_callback_host, port))
        return True
    except OSError:
        return False
    finally:
        probe.close()


def find_available_port(start_port: int, end_port: int, *, host: Optional[str] = None) -> int:
    """Return the first bindable port in ``[start_port, end_port]``."""
    for port in range(start_port, end_port + 1):
        if _port_is_free(port, host):
            return port
    raise CallbackServerError(f"no available port in range {start_port}-{end_port}")


def resolve_callback_port(
    preferred: Optional[int] = None,
    port_range: Optional[tuple[int, int]] = None,
    *,
    host: Optional[str] = None,
) -> int:
    """
    Pick the port for the next authorization attempt.

    ``preferred`` (the well-known port) wins when free.  ``0`` asks the OS
    for an ephemeral port.  Otherwise the configured range is scanned.
    """
    if preferred is None:
        preferred = config.oauth_callback_port
    if port_range is None:
        port_range = config.callback_port_range()

    if preferred == 0:
        probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            probe.bind((host or config.oauth_callback_host, 0))
            return probe.getsockname()[1]
        except OSError as exc:
            raise CallbackServerError("failed to reserve an ephemeral callback port", cause=exc) from exc
        finally:
            probe.close()

    if _port_is_free(preferred, host):
        return preferred

    logger.warning(
        "OAuth callback port %d is busy; scanning %d-%d", preferred, port_range[0], port_range[1]
    )
    return find_available_port(port_range[0], port_range[1], host=host)


# ── Browser ───────────────────────────────────────────────────────────────


def open_browser(url: str) -> bool:
    """Best-effort: the URL is always shown to the user as well."""
    try:
        opened = webbrowser.open(url)
    except webbrowser.Error as exc:
        logger.info("Could not open browser automatically: %s", exc)
        return False
    if not opened:
        logger.info("Could not open browser automatically")
    return opened


# ── Callback HTML template ─────────────────────────────────────────────────


def _callback_response(success: bool, title: str, message: str = "") -> HTMLResponse:
    return HTMLResponse(content=callback_html(success, title, message), status_code=200)


def callback_html(success: bool, title: str, message: str = "") -> str:
    """Small page shown in the browser tab after the redirect."""
    status_emoji = "✅" if success else "❌"
    color = "#00d992" if success else "#ef4444"
    title = html.escape(title)
    message = html.escape(message)

    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>MRAG Connect - OAuth Callback</title>
    <style>
        body {{
            font-family: 'Inter', system-ui, sans-serif;
            background: #0b0d11; color: #e4e7ee;
            display: flex; align-items: center; justify-content: center;
            height: 100vh; margin: 0;
        }}
        .card {{
            text-align: center; padding: 40px;
            background: #12151b; border: 1px solid #1f2330;
            border-radius: 12px; max-width: 420px;
        }}
        .emoji {{ font-size: 3rem; }}
        h2 {{ color: {color}; margin: 16px 0 8px; }}
        p {{ color: #a0a6b8; font-size: 0.85rem; }}
    </style>
</head>
<body>
    <div class="card">
        <div class="emoji">{status_emoji}</div>
        <h2>{title}</h2>
        <p>{message}</p>
    </div>
</body>
</html>"""
