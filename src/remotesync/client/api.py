"""Remote file service client.

This module provides:
- RemoteFile / RemoteFolder: listing entries returned by the service
- RemoteFileService: the protocol the sync core depends on
- HTTPRemoteService: httpx implementation of that protocol
- APIError hierarchy raised on every failed call
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import httpx

from remotesync.core.config import ServerConfig
from remotesync.core.paths import join_remote
from remotesync.core.timestamps import parse_timestamp

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for remote service errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Authentication failed."""


class NotFoundError(APIError):
    """Resource not found."""


@dataclass
class RemoteFile:
    """File entry from a remote listing."""

    file_path: str  # parent folder
    object_name: str
    modified: datetime | None = None
    size: int | None = None

    @property
    def path(self) -> str:
        """Full remote path of the file."""
        return join_remote(self.file_path, self.object_name)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteFile:
        """Create from API response dictionary."""
        size = data.get("size")
        return cls(
            file_path=data["filePath"],
            object_name=data["objectName"],
            modified=parse_timestamp(data.get("modified")),
            size=int(size) if size is not None else None,
        )


@dataclass
class RemoteFolder:
    """Folder entry from a remote listing."""

    path: str
    child_file_count: int = 0
    child_folder_count: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteFolder:
        """Create from API response dictionary."""
        return cls(
            path=data["path"],
            child_file_count=int(data.get("childFileCount", 0)),
            child_folder_count=int(data.get("childFolderCount", 0)),
        )


class RemoteFileService(Protocol):
    """Operations the sync core needs from the remote side.

    Every method raises APIError (or a subclass) when the call fails or
    times out.
    """

    def list_files(self, path: str) -> list[RemoteFile]: ...

    def list_folders(self, path: str) -> list[RemoteFolder]: ...

    def read_file(self, path: str) -> bytes: ...

    def save_file(self, path: str, content: bytes) -> None: ...

    def delete_file(self, path: str) -> None: ...


class HTTPRemoteService:
    """HTTP client for a remote file service."""

    def __init__(self, config: ServerConfig) -> None:
        """Initialize the client.

        Args:
            config: Server connection settings.
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            headers={"Authorization": f"Bearer {config.token}"},
        )

    @property
    def config(self) -> ServerConfig:
        """Get the connection settings."""
        return self._config

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> HTTPRemoteService:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request and map failures to APIError."""
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise APIError(f"Request timed out: {method} {url}") from e
        except httpx.RequestError as e:
            raise APIError(f"Request failed: {e}") from e
        return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code == 401:
            raise AuthenticationError("Invalid or expired token", 401)
        if response.status_code == 404:
            raise NotFoundError("Resource not found", 404)
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", "Unknown error")
            except ValueError:
                detail = response.text or "Unknown error"
            raise APIError(detail, response.status_code)
        return response

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the service is reachable.

        Returns:
            True if service is healthy.
        """
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Listings ===

    def list_files(self, path: str) -> list[RemoteFile]:
        """List the files directly inside a remote folder.

        Args:
            path: Remote folder path.

        Returns:
            File entries (not recursive).
        """
        response = self._request("GET", "/api/files", params={"path": path})
        return [RemoteFile.from_dict(f) for f in response.json()]

    def list_folders(self, path: str) -> list[RemoteFolder]:
        """List the sub-folders directly inside a remote folder.

        Args:
            path: Remote folder path.

        Returns:
            Folder entries (not recursive).
        """
        response = self._request("GET", "/api/folders", params={"path": path})
        return [RemoteFolder.from_dict(f) for f in response.json()]

    # === Content ===

    def read_file(self, path: str) -> bytes:
        """Download the raw content of a remote file.

        Raises:
            NotFoundError: If file not found.
        """
        response = self._request("GET", "/api/content", params={"path": path})
        return response.content

    def save_file(self, path: str, content: bytes) -> None:
        """Create or overwrite a remote file with the given bytes."""
        self._request(
            "PUT",
            "/api/content",
            params={"path": path},
            content=content,
            headers={"Content-Type": "application/octet-stream"},
        )
        logger.debug(f"Saved {len(content)} bytes to {path}")

    def delete_file(self, path: str) -> None:
        """Delete a remote file.

        Raises:
            NotFoundError: If file not found.
        """
        self._request("DELETE", "/api/content", params={"path": path})
        logger.debug(f"Deleted remote file {path}")
