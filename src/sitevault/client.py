"""
HTTP client for a running SiteVault API server.

Used by the CLI's remote mode (``--server URL``). Ordinary calls use the
short request timeout; run and restore use the extended admin timeout since
they can take a long time on large deployments.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any

import requests

from sitevault.backup.models import DownloadPayload, artifact_extension

logger = logging.getLogger(__name__)

_FILENAME_RE = re.compile(r'filename="?([^";]+)"?')


class ApiClientError(Exception):
    """
    Raised when an API call fails.

    Attributes:
        status_code: HTTP status, when a response was received.
        payload: Decoded JSON error body, when there was one.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


class ApiAuthenticationError(ApiClientError):
    """Raised when the server rejects the API token."""

    pass


class ApiNotFoundError(ApiClientError):
    """Raised when a backup id does not exist on the server."""

    pass


class BackupApiClient:
    """
    Client for the backup API.

    Example:
        client = BackupApiClient("http://127.0.0.1:8085", token="secret")
        page = client.list_backups(page=1)
        result = client.restore(page["backups"][0]["id"])
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        request_timeout: int = 30,
        admin_timeout: int = 3600,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.admin_timeout = admin_timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Accept": "application/json"})
        if token:
            self._session.headers.update({"Authorization": f"Bearer {token}"})

    def health(self) -> dict[str, Any]:
        """Get server health."""
        return self._api_request("GET", "/api/health").json()

    def list_backups(self, page: int = 1, per_page: int = 20) -> dict[str, Any]:
        """Get one page of backups."""
        response = self._api_request(
            "GET", "/api/backups", params={"page": page, "per_page": per_page}
        )
        return response.json()

    def statistics(self) -> dict[str, Any]:
        """Get backup statistics."""
        return self._api_request("GET", "/api/backups/statistics").json().get("statistics", {})

    def run(self, kind: str = "all", dry_run: bool = False) -> dict[str, Any]:
        """
        Run a backup on the server.

        Returns the run summary, including failed runs (``success`` false).
        """
        response = self._api_request(
            "POST",
            "/api/backup/run",
            json_data={"type": kind, "dry_run": dry_run},
            timeout=self.admin_timeout,
            accept=(500,),
        )
        return response.json()

    def download(self, artifact_id: str) -> DownloadPayload:
        """
        Download an artifact.

        Raises:
            ApiNotFoundError: If the id does not exist.
        """
        response = self._api_request(
            "GET", f"/api/backup/{artifact_id}/download", timeout=self.admin_timeout
        )
        disposition = response.headers.get("Content-Disposition", "")
        match = _FILENAME_RE.search(disposition)
        filename = match.group(1) if match else f"{artifact_id}.bin"
        return DownloadPayload(
            filename=filename,
            content_type=response.headers.get("Content-Type", "application/octet-stream"),
            extension=artifact_extension(filename),
            content=response.content,
        )

    def delete(self, artifact_id: str) -> dict[str, Any]:
        """
        Delete an artifact.

        Raises:
            ApiNotFoundError: If the id does not exist.
        """
        return self._api_request("DELETE", f"/api/backup/{artifact_id}").json()

    def restore(self, artifact_id: str) -> dict[str, Any]:
        """
        Restore an artifact on the server.

        Returns the restore result with its transcript, including failed
        restores (``success`` false).

        Raises:
            ApiNotFoundError: If the id does not exist.
        """
        response = self._api_request(
            "POST",
            f"/api/backup/{artifact_id}/restore",
            timeout=self.admin_timeout,
            accept=(500,),
        )
        return response.json()

    def _api_request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        timeout: int | None = None,
        accept: tuple[int, ...] = (),
    ) -> requests.Response:
        """
        Make an API request.

        Args:
            method: HTTP method.
            endpoint: API endpoint path.
            params: Query parameters.
            json_data: JSON body.
            timeout: Seconds to wait; defaults to the request timeout.
            accept: Error statuses whose response is returned, not raised.

        Raises:
            ApiAuthenticationError: If the token is missing or wrong.
            ApiNotFoundError: If the resource does not exist.
            ApiClientError: For connection failures, timeouts and other
                error responses.
        """
        url = f"{self.base_url}{endpoint}"
        start_time = time.time()

        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=json_data,
                timeout=timeout or self.request_timeout,
            )
        except requests.exceptions.ConnectionError as e:
            raise ApiClientError(f"Failed to connect to {self.base_url}: {e}") from e
        except requests.exceptions.Timeout as e:
            raise ApiClientError(f"Request to {endpoint} timed out: {e}") from e

        duration_ms = (time.time() - start_time) * 1000
        logger.debug("%s %s -> %d (%.0f ms)", method, endpoint, response.status_code, duration_ms)

        if response.ok or response.status_code in accept:
            return response

        payload = _error_payload(response)
        message = payload.get("error") or payload.get("message") or response.reason

        if response.status_code == 401:
            raise ApiAuthenticationError(
                "Authentication failed. Check the API token.", response.status_code, payload
            )
        if response.status_code == 404:
            raise ApiNotFoundError(message or "Not found", response.status_code, payload)
        raise ApiClientError(
            f"{method} {endpoint} failed ({response.status_code}): {message}",
            response.status_code,
            payload,
        )


def _error_payload(response: requests.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
