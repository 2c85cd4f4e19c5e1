"""
HTTP API server for SiteVault.

A small JSON API over BackupService using Python's built-in http.server
module. No external frameworks are used.

Features:
    - Local-only binding by default (127.0.0.1)
    - One thread per request, so a long restore does not block listings
    - Optional bearer token on administrator routes
    - Extended socket timeout for run and restore requests

Security:
    - Binds to localhost only by default
    - Admin routes (run, download, delete, restore) require the token
      whenever one is configured
"""

from __future__ import annotations

import hmac
import json
import logging
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, urlparse

from sitevault.backup.models import DownloadPayload
from sitevault.backup.service import BackupService
from sitevault.server.routes import RouteContext, allowed_methods, match_route

logger = logging.getLogger(__name__)

# Default host and port
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8085

# Largest JSON body accepted
MAX_BODY_SIZE = 1024 * 1024


class BackupHTTPServer(ThreadingHTTPServer):
    """ThreadingHTTPServer carrying the service and access settings."""

    daemon_threads = True

    def __init__(
        self,
        address: tuple[str, int],
        service: BackupService,
        api_token: str = "",
        request_timeout: int = 30,
        admin_timeout: int = 3600,
    ) -> None:
        self.service = service
        self.api_token = api_token
        self.request_timeout = request_timeout
        self.admin_timeout = admin_timeout
        super().__init__(address, BackupRequestHandler)


class BackupRequestHandler(BaseHTTPRequestHandler):
    """
    HTTP request handler for the backup API.

    Dispatches requests through the route table in ``routes``.
    """

    server: BackupHTTPServer
    server_version = "SiteVault"

    def setup(self) -> None:
        self.timeout = self.server.request_timeout
        super().setup()

    def log_message(self, format: str, *args: Any) -> None:
        """Log HTTP requests to logger instead of stderr."""
        logger.debug("API request: %s", format % args)

    def do_GET(self) -> None:
        """Handle GET requests."""
        self._dispatch("GET")

    def do_POST(self) -> None:
        """Handle POST requests."""
        self._dispatch("POST")

    def do_DELETE(self) -> None:
        """Handle DELETE requests."""
        self._dispatch("DELETE")

    def _dispatch(self, method: str) -> None:
        parsed = urlparse(self.path)
        path = parsed.path.rstrip("/") or "/"

        # Consume the body before any early response so the socket closes cleanly
        try:
            raw_body = self._read_body()
        except ValueError as e:
            self._serve_json({"success": False, "error": str(e)}, HTTPStatus.BAD_REQUEST)
            return

        found = match_route(method, path)
        if found is None:
            methods = allowed_methods(path)
            if methods:
                self._serve_json(
                    {"success": False, "error": f"Method {method} not allowed"},
                    HTTPStatus.METHOD_NOT_ALLOWED,
                    headers={"Allow": ", ".join(methods)},
                )
            else:
                self._serve_json({"success": False, "error": "Not found"}, HTTPStatus.NOT_FOUND)
            return

        route, params = found

        if route.admin and not self._authorized():
            self._serve_json(
                {"success": False, "error": "Unauthorized"},
                HTTPStatus.UNAUTHORIZED,
                headers={"WWW-Authenticate": "Bearer"},
            )
            return

        if route.long_running:
            # Run and restore may take far longer than ordinary requests
            self.connection.settimeout(self.server.admin_timeout)

        try:
            body = _parse_json_body(raw_body) if method == "POST" else {}
        except ValueError as e:
            self._serve_json({"success": False, "error": str(e)}, HTTPStatus.BAD_REQUEST)
            return

        context = RouteContext(
            service=self.server.service,
            query=parse_qs(parsed.query),
            params=params,
            body=body,
        )

        try:
            result = route.handler(context)
        except Exception as e:
            logger.exception("Error in API handler for %s %s", method, path)
            self._serve_json({"success": False, "error": str(e)}, HTTPStatus.INTERNAL_SERVER_ERROR)
            return

        if isinstance(result, DownloadPayload):
            self._serve_download(result)
            return

        status = HTTPStatus(result.pop("http_status", HTTPStatus.OK))
        self._serve_json(result, status)

    def _authorized(self) -> bool:
        token = self.server.api_token
        if not token:
            return True
        header = self.headers.get("Authorization", "")
        scheme, _, supplied = header.partition(" ")
        if scheme.lower() != "bearer":
            return False
        return hmac.compare_digest(supplied.strip().encode(), token.encode())

    def _read_body(self) -> bytes:
        """
        Read the raw request body.

        Raises:
            ValueError: If Content-Length is invalid or too large.
        """
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError as e:
            raise ValueError("Invalid Content-Length") from e
        if length <= 0:
            return b""
        if length > MAX_BODY_SIZE:
            raise ValueError("Request body too large")
        return self.rfile.read(length)

    def _serve_json(
        self,
        data: dict[str, Any],
        status: HTTPStatus = HTTPStatus.OK,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Serve JSON response."""
        encoded = json.dumps(data, indent=2, default=str).encode("utf-8")

        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(encoded)

    def _serve_download(self, payload: DownloadPayload) -> None:
        """Serve an artifact as an attachment."""
        filename = payload.filename.replace('"', "")
        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", payload.content_type)
        self.send_header("Content-Length", str(payload.size))
        self.send_header("Content-Disposition", f'attachment; filename="{filename}"')
        self.end_headers()
        self.wfile.write(payload.content)


def _parse_json_body(raw: bytes) -> dict[str, Any]:
    """
    Parse a JSON object body. An empty body is an empty object.

    Raises:
        ValueError: If the body is not JSON or not an object.
    """
    if not raw:
        return {}
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid JSON body: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("JSON body must be an object")
    return data


class BackupApiServer:
    """
    Backup API server manager.

    Provides methods for starting, stopping, and managing the API server.
    Runs the server in a background thread unless started blocking.

    Example:
        server = BackupApiServer(service, port=8085, api_token="secret")
        server.start()
        print(f"API at {server.get_url()}")
        server.stop()

    Attributes:
        host: Host address to bind to.
        port: Port number to bind to.
    """

    def __init__(
        self,
        service: BackupService,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        api_token: str = "",
        request_timeout: int = 30,
        admin_timeout: int = 3600,
    ) -> None:
        self.service = service
        self.host = host
        self.port = port
        self.api_token = api_token
        self.request_timeout = request_timeout
        self.admin_timeout = admin_timeout
        self._server: BackupHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._running = False

    def start(self, blocking: bool = False) -> bool:
        """
        Start the API server.

        Args:
            blocking: If True, blocks until server is stopped.

        Returns:
            True if server started successfully, False otherwise.
        """
        if self._running:
            logger.warning("API server is already running")
            return True

        try:
            self._server = BackupHTTPServer(
                (self.host, self.port),
                self.service,
                api_token=self.api_token,
                request_timeout=self.request_timeout,
                admin_timeout=self.admin_timeout,
            )
        except OSError as e:
            logger.error("Failed to start API server: %s", e)
            return False

        # Port 0 binds an ephemeral port
        self.port = self._server.server_address[1]
        self._running = True
        logger.info("API server starting at %s", self.get_url())

        if not self.api_token:
            logger.warning("No API token configured; admin routes are open to local clients")

        if blocking:
            self._run_server()
        else:
            self._thread = threading.Thread(
                target=self._run_server,
                name="sitevault-api",
                daemon=True,
            )
            self._thread.start()

        return True

    def _run_server(self) -> None:
        """Run the server loop."""
        if self._server:
            try:
                self._server.serve_forever()
            finally:
                self._running = False

    def stop(self) -> None:
        """Stop the API server."""
        if self._server is None:
            return

        logger.info("Stopping API server")
        self._server.shutdown()
        self._server.server_close()
        self._server = None

        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None

        self._running = False

    def is_running(self) -> bool:
        """Check if server is running."""
        return self._running

    def get_url(self) -> str:
        """Get the base URL of the API."""
        return f"http://{self.host}:{self.port}"
