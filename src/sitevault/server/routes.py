"""
Route handlers for the SiteVault API.

Each handler takes a RouteContext and returns either a JSON-serializable
dictionary or, for downloads, a DownloadPayload. A dictionary may carry an
``http_status`` key that the server turns into the response status.

API Endpoints:
    - GET    /api/health: Health check
    - GET    /api/backups: Paged backup listing
    - GET    /api/backups/statistics: Aggregate statistics
    - POST   /api/backup/run: Run a backup (admin)
    - GET    /api/backup/<id>/download: Download an artifact (admin)
    - DELETE /api/backup/<id>: Delete an artifact (admin)
    - POST   /api/backup/<id>/restore: Restore an artifact (admin)
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sitevault import __version__
from sitevault.backup.catalog import DEFAULT_PER_PAGE
from sitevault.backup.models import ArtifactNotFoundError, DownloadPayload
from sitevault.backup.orchestrator import RUN_KINDS
from sitevault.backup.service import BackupService

logger = logging.getLogger(__name__)


class RouteContext:
    """
    Context object passed to route handlers.

    Attributes:
        service: Backup service serving the request.
        query: Parsed query string parameters.
        params: Values captured from the path (``id``).
        body: Parsed JSON request body, empty when there is none.
    """

    def __init__(
        self,
        service: BackupService,
        query: dict[str, list[str]] | None = None,
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> None:
        self.service = service
        self.query = query or {}
        self.params = params or {}
        self.body = body or {}

    def query_int(self, name: str, default: int) -> int:
        """
        Read an integer query parameter.

        Raises:
            ValueError: If the value is not an integer.
        """
        values = self.query.get(name)
        if not values or values[0] == "":
            return default
        return int(values[0])


# Route handler type
RouteResponse = dict[str, Any] | DownloadPayload
RouteHandler = Callable[[RouteContext], RouteResponse]


def _error(message: str, status: int) -> dict[str, Any]:
    return {"success": False, "error": message, "http_status": status}


def handle_api_health(context: RouteContext) -> dict[str, Any]:
    """Handle GET /api/health."""
    return {
        "healthy": True,
        "version": __version__,
        "timestamp": datetime.now(UTC).isoformat(),
        "dump_strategy": context.service.strategy.name,
        "archive_format": context.service.archive_format,
    }


def handle_api_list(context: RouteContext) -> dict[str, Any]:
    """
    Handle GET /api/backups.

    Query parameters ``page`` and ``per_page`` default to 1 and 20.
    """
    try:
        page = context.query_int("page", 1)
        per_page = context.query_int("per_page", DEFAULT_PER_PAGE)
    except ValueError:
        return _error("page and per_page must be integers", 400)

    result = context.service.list(page, per_page).to_dict()
    result["success"] = True
    return result


def handle_api_statistics(context: RouteContext) -> dict[str, Any]:
    """Handle GET /api/backups/statistics. Never fails."""
    return {"success": True, "statistics": context.service.statistics().to_dict()}


def handle_api_run(context: RouteContext) -> dict[str, Any]:
    """Handle POST /api/backup/run with body ``{"type", "dry_run"}``."""
    kind = context.body.get("type", "all")
    dry_run = context.body.get("dry_run", False)

    if kind not in RUN_KINDS:
        return _error(f"Invalid backup type: {kind}. Must be one of: {', '.join(RUN_KINDS)}", 400)
    if not isinstance(dry_run, bool):
        return _error("dry_run must be a boolean", 400)

    summary = context.service.run(kind, dry_run=dry_run)
    result = summary.to_dict()
    if summary.success:
        result["message"] = "Dry run completed" if dry_run else "Backup completed successfully"
    else:
        result["message"] = f"Backup failed for: {', '.join(summary.failed_kinds)}"
        result["http_status"] = 500
    return result


def handle_api_download(context: RouteContext) -> RouteResponse:
    """Handle GET /api/backup/<id>/download."""
    try:
        return context.service.download(context.params["id"])
    except ArtifactNotFoundError:
        return _error("Backup file not found", 404)


def handle_api_delete(context: RouteContext) -> dict[str, Any]:
    """Handle DELETE /api/backup/<id>."""
    result = context.service.delete(context.params["id"])
    response = result.to_dict()
    if result.not_found:
        response["http_status"] = 404
    elif not result.success:
        response["http_status"] = 500
    return response


def handle_api_restore(context: RouteContext) -> dict[str, Any]:
    """
    Handle POST /api/backup/<id>/restore.

    Failed restores answer 500 and still include the transcript.
    """
    result = context.service.restore(context.params["id"])
    response = result.to_dict()
    if result.not_found:
        response["http_status"] = 404
    elif not result.success:
        response["http_status"] = 500
    return response


@dataclass
class Route:
    """
    One API route.

    Attributes:
        method: HTTP method.
        pattern: Regular expression matched against the full path.
        handler: Function serving the route.
        admin: Whether the route requires the admin token.
        long_running: Whether the route gets the extended timeout.
    """

    method: str
    pattern: re.Pattern[str]
    handler: RouteHandler
    admin: bool = False
    long_running: bool = False
    name: str = field(default="")


_ID = r"(?P<id>[^/]+)"

# Route registry
API_ROUTES: list[Route] = [
    Route("GET", re.compile(r"^/api/health$"), handle_api_health, name="/api/health"),
    Route("GET", re.compile(r"^/api/backups$"), handle_api_list, name="/api/backups"),
    Route(
        "GET",
        re.compile(r"^/api/backups/statistics$"),
        handle_api_statistics,
        name="/api/backups/statistics",
    ),
    Route(
        "POST",
        re.compile(r"^/api/backup/run$"),
        handle_api_run,
        admin=True,
        long_running=True,
        name="/api/backup/run",
    ),
    Route(
        "GET",
        re.compile(rf"^/api/backup/{_ID}/download$"),
        handle_api_download,
        admin=True,
        name="/api/backup/<id>/download",
    ),
    Route(
        "DELETE",
        re.compile(rf"^/api/backup/{_ID}$"),
        handle_api_delete,
        admin=True,
        name="/api/backup/<id>",
    ),
    Route(
        "POST",
        re.compile(rf"^/api/backup/{_ID}/restore$"),
        handle_api_restore,
        admin=True,
        long_running=True,
        name="/api/backup/<id>/restore",
    ),
]


def match_route(method: str, path: str) -> tuple[Route, dict[str, str]] | None:
    """
    Find the route for a method and path.

    Returns:
        Tuple of (route, captured path parameters), or None.
    """
    for route in API_ROUTES:
        if route.method != method:
            continue
        match = route.pattern.match(path)
        if match:
            return route, match.groupdict()
    return None


def allowed_methods(path: str) -> list[str]:
    """Methods that have a route for this path."""
    return sorted({route.method for route in API_ROUTES if route.pattern.match(path)})


def list_routes() -> list[str]:
    """
    List all registered API routes.

    Returns:
        List of ``METHOD path`` strings.
    """
    return [f"{route.method} {route.name}" for route in API_ROUTES]
