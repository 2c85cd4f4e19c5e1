"""
Local JSON API for SiteVault.

Served with Python's built-in http.server module. Mirrors the backup
service operations for dashboards and remote administration.

Example:
    from sitevault.server import BackupApiServer

    server = BackupApiServer(service, host="127.0.0.1", port=8085)
    server.start()
    print(f"API: {server.get_url()}")
    server.stop()
"""

from sitevault.server.routes import (
    API_ROUTES,
    Route,
    RouteContext,
    allowed_methods,
    list_routes,
    match_route,
)
from sitevault.server.server import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    BackupApiServer,
    BackupHTTPServer,
    BackupRequestHandler,
)

__all__ = [
    # Server
    "BackupApiServer",
    "BackupHTTPServer",
    "BackupRequestHandler",
    "DEFAULT_HOST",
    "DEFAULT_PORT",
    # Routes
    "API_ROUTES",
    "Route",
    "RouteContext",
    "match_route",
    "allowed_methods",
    "list_routes",
]
