"""Shared fixtures: an in-memory remote file service and project helpers."""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from remotesync.client.api import APIError, NotFoundError, RemoteFile, RemoteFolder
from remotesync.client.sync.download import ProjectDownloader
from remotesync.core.paths import normalize_remote, remote_parent

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


class FakeRemoteService:
    """In-memory RemoteFileService with failure injection.

    Paths are stored normalized; listings return them with a leading slash,
    like the real service.
    """

    def __init__(self) -> None:
        self.files: dict[str, tuple[bytes, datetime | None]] = {}
        self.folders: set[str] = set()
        self.fail_reads: set[str] = set()
        self.fail_listings: set[str] = set()
        self.fail_saves: set[str] = set()
        self.save_transform: Callable[[bytes], bytes] | None = None
        self.now = BASE_TIME + timedelta(hours=1)
        self.calls: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    # === Test helpers ===

    def put(self, path: str, content: bytes | str, modified: datetime | None = BASE_TIME) -> None:
        """Create or replace a remote file."""
        if isinstance(content, str):
            content = content.encode()
        norm = normalize_remote(path)
        self.files[norm] = (content, modified)
        parent = remote_parent(norm)
        while parent:
            self.folders.add(parent)
            parent = remote_parent(parent)

    def touch(self, path: str, modified: datetime) -> None:
        """Change only the modification time of a remote file."""
        norm = normalize_remote(path)
        self.files[norm] = (self.files[norm][0], modified)

    def content(self, path: str) -> bytes:
        return self.files[normalize_remote(path)][0]

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    def _enter(self, operation: str, path: str) -> None:
        with self._lock:
            self.calls.append((operation, path))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)

    def _leave(self) -> None:
        with self._lock:
            self.in_flight -= 1

    # === RemoteFileService ===

    def list_files(self, path: str) -> list[RemoteFile]:
        self._enter("list_files", path)
        try:
            folder = normalize_remote(path)
            if folder in self.fail_listings:
                raise APIError(f"Listing failed: {path}", 403)
            return [
                RemoteFile(
                    file_path="/" + folder,
                    object_name=norm.rsplit("/", 1)[-1],
                    modified=modified,
                    size=len(content),
                )
                for norm, (content, modified) in sorted(self.files.items())
                if remote_parent(norm) == folder
            ]
        finally:
            self._leave()

    def list_folders(self, path: str) -> list[RemoteFolder]:
        self._enter("list_folders", path)
        try:
            folder = normalize_remote(path)
            if folder in self.fail_listings:
                raise APIError(f"Listing failed: {path}", 403)
            return [
                RemoteFolder(path="/" + sub)
                for sub in sorted(self.folders)
                if remote_parent(sub) == folder
            ]
        finally:
            self._leave()

    def read_file(self, path: str) -> bytes:
        self._enter("read_file", path)
        try:
            norm = normalize_remote(path)
            if norm in self.fail_reads:
                raise APIError(f"Read failed: {path}", 403)
            if norm not in self.files:
                raise NotFoundError("Resource not found", 404)
            return self.files[norm][0]
        finally:
            self._leave()

    def save_file(self, path: str, content: bytes) -> None:
        self._enter("save_file", path)
        try:
            norm = normalize_remote(path)
            if norm in self.fail_saves:
                raise APIError(f"Save failed: {path}", 403)
            if self.save_transform is not None:
                content = self.save_transform(content)
            self.put(norm, content, self.now)
        finally:
            self._leave()

    def delete_file(self, path: str) -> None:
        self._enter("delete_file", path)
        try:
            norm = normalize_remote(path)
            if norm not in self.files:
                raise NotFoundError("Resource not found", 404)
            del self.files[norm]
        finally:
            self._leave()

    def __enter__(self) -> FakeRemoteService:
        return self

    def __exit__(self, *args: object) -> None:
        pass


@pytest.fixture
def remote() -> FakeRemoteService:
    """Remote service holding a small site under /WEB/site."""
    service = FakeRemoteService()
    service.put("/WEB/site/index.html", "<html>home</html>")
    service.put("/WEB/site/css/style.css", "body { color: red; }")
    service.put("/WEB/site/img/logo.png", b"\x89PNG\r\n\x1a\nlogo")
    return service


@pytest.fixture
def project(tmp_path: Path, remote: FakeRemoteService) -> Path:
    """Project downloaded from /WEB/site."""
    root = tmp_path / "site"
    result = ProjectDownloader(remote).download("/WEB/site", root)
    assert result.complete
    return root
