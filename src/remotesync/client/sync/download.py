"""Bulk download of a remote subtree into a local directory.

ProjectDownloader lists the subtree, fetches every file with bounded
concurrency and builds a fresh mapping snapshot. It is used for the first
download of a project, for full resync (into a temp directory) and for
verification (into a throwaway directory).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from remotesync.client.api import RemoteFile, RemoteFileService
from remotesync.client.mapping import MappingStore, PathMapping
from remotesync.client.sync.limiter import (
    CancellationToken,
    CancelledException,
    TransferLimiter,
    bulk_transfer_guard,
)
from remotesync.client.sync.listing import RemoteTreeLister
from remotesync.client.sync.retry import DEFAULT_MAX_RETRIES, retry_with_backoff
from remotesync.client.sync.types import DownloadResult
from remotesync.core.hashing import compute_content_hash, is_binary_path
from remotesync.core.paths import is_metadata_path, local_path, normalize_remote, relative_remote
from remotesync.core.timestamps import mtime_datetime

logger = logging.getLogger(__name__)


def write_file_atomic(path: Path, content: bytes) -> None:
    """Write a file completely or not at all."""
    path.parent.mkdir(parents=True, exist_ok=True)
    part = path.with_name(path.name + ".part")
    try:
        part.write_bytes(content)
        os.replace(part, path)
    except BaseException:
        part.unlink(missing_ok=True)
        raise


class ProjectDownloader:
    """Downloads a remote subtree and produces its mapping snapshot."""

    def __init__(
        self,
        service: RemoteFileService,
        limiter: TransferLimiter | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        """Initialize the downloader.

        Args:
            service: Remote file service.
            limiter: Concurrency limiter shared with other operations.
            max_retries: Retries for each transient read failure.
        """
        self._service = service
        self._limiter = limiter or TransferLimiter()
        self._max_retries = max_retries
        self._lister = RemoteTreeLister(service, self._limiter)

    @property
    def lister(self) -> RemoteTreeLister:
        """Get the tree lister."""
        return self._lister

    def read(self, remote_path: str) -> bytes:
        """Read one remote file inside a limiter slot, retrying transient failures."""
        return retry_with_backoff(
            lambda: self._limiter.call(lambda: self._service.read_file(remote_path)),
            max_retries=self._max_retries,
        )

    def download(
        self,
        remote_root: str,
        target: Path,
        token: CancellationToken | None = None,
        write_metadata: bool = True,
    ) -> DownloadResult:
        """Download every file below a remote folder into a directory.

        Holds the process-wide bulk transfer guard for the whole download.

        Args:
            remote_root: Remote folder to download.
            target: Local directory receiving the files.
            token: Cancellation token checked before each file.
            write_metadata: Also write the mapping document and backups
                into the target, making it a project.

        Returns:
            Snapshot of what was written and what failed.

        Raises:
            TransferInProgressError: If another bulk transfer is running.
        """
        with bulk_transfer_guard(f"download of {remote_root}"):
            return self._download(remote_root, Path(target), token, write_metadata)

    def _download(
        self,
        remote_root: str,
        target: Path,
        token: CancellationToken | None,
        write_metadata: bool,
    ) -> DownloadResult:
        result = DownloadResult(remote_root=remote_root, target=target)
        target.mkdir(parents=True, exist_ok=True)
        store = MappingStore(target)

        try:
            listing = self._lister.list_tree(remote_root, token)
        except CancelledException:
            result.aborted = True
            return result
        result.listing_failed = list(listing.failed_folders)

        files: dict[str, RemoteFile] = {}
        for remote in listing.files:
            relative = relative_remote(remote.path, remote_root)
            if not relative or is_metadata_path(relative):
                continue
            files.setdefault(normalize_remote(relative), remote)

        def fetch(item: tuple[str, RemoteFile]) -> PathMapping:
            relative, remote = item
            content = self.read(remote.path)
            path = local_path(target, relative)
            write_file_atomic(path, content)
            if write_metadata:
                store.write_backup(relative, content)
            return PathMapping(
                local_path=relative,
                remote_path=remote.path,
                content_hash=compute_content_hash(path, content),
                server_modified=remote.modified,
                local_modified_at_download=mtime_datetime(path.stat().st_mtime),
                is_binary=is_binary_path(relative),
            )

        for unit in self._limiter.map(fetch, files.items(), token):
            relative = unit.item[0]
            if unit.skipped:
                result.aborted = True
            elif unit.error is not None:
                logger.warning(f"Failed to download {relative}: {unit.error}")
                result.failed[relative] = str(unit.error)
            elif unit.value is not None:
                result.mappings.append(unit.value)

        if token is not None and token.cancelled:
            result.aborted = True

        if write_metadata and not result.aborted:
            store.create(remote_root, result.mappings)

        logger.info(
            f"Downloaded {len(result.mappings)}/{len(files)} file(s) from {remote_root}"
            + (" (aborted)" if result.aborted else "")
        )
        return result
