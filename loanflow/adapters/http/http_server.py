"""HTTP server adapter for the loan API.

Provides a small JSON API using Python's built-in http.server module.
Requests are parsed on the server's worker threads and the lifecycle
coroutines are scheduled onto the application's event loop.

Supports optional API key authentication via the Authorization header
(Bearer token) or X-API-Key. GET /health is always public.
"""

import asyncio
import concurrent.futures
import hmac
import json
import logging
import re
from collections.abc import Coroutine
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from loanflow.adapters.http.receiver import LoanRequestHandler, Response

logger = logging.getLogger(__name__)

MAX_BODY_SIZE = 1024 * 1024
REQUEST_TIMEOUT_SECONDS = 30.0

_LOANS_PATH = "/loans"
_LOAN_PATH = re.compile(r"^/loans/(?P<loan_id>[^/]+)$")
_LOAN_ACTION_PATH = re.compile(r"^/loans/(?P<loan_id>[^/]+)/(?P<action>approve|invest|disburse)$")


def make_loan_handler(
    request_handler: LoanRequestHandler,
    event_loop: asyncio.AbstractEventLoop,
    api_key: str | None,
    require_auth: bool,
    request_timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> type[BaseHTTPRequestHandler]:
    """Factory to create a LoanHTTPHandler class with instance-specific state.

    Dependencies are captured by closure instead of class-level mutable
    state, so several servers can run in one process.

    Args:
        request_handler: Handler that maps requests onto the lifecycle port
        event_loop: Event loop the lifecycle coroutines run on
        api_key: Optional API key for authentication
        require_auth: Whether authentication is required
        request_timeout: Upper bound on how long a worker thread waits

    Returns:
        A LoanHTTPHandler class configured with the provided dependencies
    """

    class LoanHTTPHandler(BaseHTTPRequestHandler):
        """HTTP request handler for the loan endpoints."""

        def _check_auth(self) -> bool:
            """Check if request is authenticated.

            Supports two authentication methods:
            1. Authorization: Bearer <api_key>
            2. X-API-Key: <api_key>
            """
            if not require_auth:
                return True

            if not api_key:
                return False

            auth_header = self.headers.get("Authorization", "")
            if auth_header.startswith("Bearer "):
                provided_key = auth_header[7:]
                return hmac.compare_digest(provided_key, api_key)

            api_key_header = self.headers.get("X-API-Key", "")
            if api_key_header:
                return hmac.compare_digest(api_key_header, api_key)

            return False

        def do_GET(self) -> None:
            """Handle GET requests: health, list and fetch."""
            path = self._path()
            if path == "/health":
                self._send_json(200, {"status": "healthy"})
                return

            if not self._check_auth():
                self._send_error(401, "unauthorized", "invalid or missing API key")
                return

            if path == _LOANS_PATH:
                self._dispatch(request_handler.handle_list())
                return

            match = _LOAN_PATH.match(path)
            if match:
                self._dispatch(request_handler.handle_get(match["loan_id"]))
                return

            self._send_error(404, "not_found", f"no route for GET {path}")

        def do_POST(self) -> None:
            """Handle POST requests: create and the three lifecycle actions."""
            path = self._path()
            if not self._check_auth():
                self._send_error(401, "unauthorized", "invalid or missing API key")
                return

            data = self._read_json()
            if data is None:
                return

            if path == _LOANS_PATH:
                self._dispatch(request_handler.handle_create(data))
                return

            match = _LOAN_ACTION_PATH.match(path)
            if match:
                loan_id, action = match["loan_id"], match["action"]
                if action == "approve":
                    self._dispatch(request_handler.handle_approve(loan_id, data))
                elif action == "invest":
                    self._dispatch(request_handler.handle_invest(loan_id, data))
                else:
                    self._dispatch(request_handler.handle_disburse(loan_id, data))
                return

            self._send_error(404, "not_found", f"no route for POST {path}")

        def _path(self) -> str:
            path = self.path.split("?", 1)[0]
            if len(path) > 1:
                path = path.rstrip("/")
            return path

        def _read_json(self) -> Any:
            """Read and decode the JSON body; reply and return None on failure."""
            try:
                content_length = int(self.headers.get("Content-Length", 0))
            except ValueError:
                self._send_error(400, "invalid_request", "invalid Content-Length")
                return None

            if content_length > MAX_BODY_SIZE:
                self._send_error(413, "invalid_request", "request body too large")
                return None

            body = self.rfile.read(content_length) if content_length > 0 else b""
            try:
                return json.loads(body) if body else {}
            except (json.JSONDecodeError, UnicodeDecodeError):
                self._send_error(400, "invalid_request", "invalid JSON body")
                return None

        def _dispatch(self, coro: Coroutine[Any, Any, Response]) -> None:
            """Run a handler coroutine on the event loop and send its result."""
            future = asyncio.run_coroutine_threadsafe(coro, event_loop)
            try:
                status, body = future.result(timeout=request_timeout)
            except concurrent.futures.TimeoutError:
                future.cancel()
                logger.warning(f"HTTP request exceeded {request_timeout}s: {self.path}")
                self._send_error(504, "timeout", f"request timed out after {request_timeout}s")
                return
            except Exception as e:
                future.cancel()
                # Log full exception server-side; return generic error to client
                logger.error(f"Error handling HTTP request: {e}", exc_info=True)
                self._send_error(500, "internal_error", "internal server error")
                return
            self._send_json(status, body)

        def _send_error(self, status: int, code: str, message: str) -> None:
            self._send_json(status, {"status": "error", "error": code, "message": message})

        def _send_json(self, status: int, data: dict[str, Any]) -> None:
            """Send JSON response."""
            payload = json.dumps(data).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def log_message(self, format: str, *args: Any) -> None:
            """Log HTTP request."""
            logger.debug(f"HTTP {self.client_address[0]}: {format % args}")

    return LoanHTTPHandler


class LoanHTTPServer:
    """HTTP server adapter exposing the loan lifecycle.

    Optionally requires API key authentication for every endpoint except
    /health.
    """

    def __init__(
        self,
        request_handler: LoanRequestHandler,
        host: str = "0.0.0.0",
        port: int = 8080,
        api_key: str | None = None,
        require_auth: bool = False,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
    ):
        """Initialize the HTTP server.

        Args:
            request_handler: LoanRequestHandler instance to handle requests.
            host: Host to listen on (default 0.0.0.0).
            port: Port to listen on (default 8080; 0 picks a free port).
            api_key: Optional API key for authentication.
            require_auth: Whether to require authentication (default False).
                         If True, api_key must be provided.
            request_timeout: Seconds a request may run before it is answered
                with 504.

        Raises:
            ValueError: If require_auth is True and no api_key is given.
        """
        if require_auth and not api_key:
            raise ValueError(
                "require_auth=True but no API key provided; "
                "set http_api_key or disable http_require_auth"
            )

        self.request_handler = request_handler
        self.host = host
        self.port = port
        self.api_key = api_key
        self.require_auth = require_auth
        self.request_timeout = request_timeout
        self.server: ThreadingHTTPServer | None = None
        self._server_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Start the HTTP server."""
        handler_class = make_loan_handler(
            request_handler=self.request_handler,
            event_loop=asyncio.get_running_loop(),
            api_key=self.api_key,
            require_auth=self.require_auth,
            request_timeout=self.request_timeout,
        )

        self.server = ThreadingHTTPServer((self.host, self.port), handler_class)
        self.server.daemon_threads = True
        # Resolve the real port when 0 was requested
        self.port = self.server.server_address[1]

        self._server_task = asyncio.create_task(self._run_server())
        if self.require_auth:
            logger.info(
                f"Loan HTTP server started on {self.host}:{self.port} "
                "(with API key authentication)"
            )
        else:
            logger.info(f"Loan HTTP server started on {self.host}:{self.port}")

    async def _run_server(self) -> None:
        """Run the HTTP server loop in a thread pool."""
        if not self.server:
            return

        try:
            await asyncio.to_thread(self.server.serve_forever)
        except Exception as e:
            logger.error(f"Loan HTTP server error: {e}", exc_info=True)

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self.server:
            await asyncio.to_thread(self.server.shutdown)
            self.server.server_close()
        if self._server_task:
            await self._server_task
            self._server_task = None
        logger.info("Loan HTTP server stopped")
