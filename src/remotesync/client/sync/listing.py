"""Recursive remote tree listing.

The remote service only lists one folder level at a time. RemoteTreeLister
walks a subtree breadth-first, one level per bounded fan-out. A folder whose
listing fails is logged and recorded; its branch contributes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from remotesync.client.api import RemoteFile, RemoteFileService, RemoteFolder
from remotesync.client.sync.limiter import (
    CancellationToken,
    CancelledException,
    TransferLimiter,
)
from remotesync.core.paths import belongs_to_root, normalize_remote

logger = logging.getLogger(__name__)


@dataclass
class TreeListing:
    """Files found below a remote root.

    Attributes:
        root: Remote root that was listed.
        files: Every file found, as returned by the service.
        failed_folders: Folders whose listing failed.
    """

    root: str
    files: list[RemoteFile] = field(default_factory=list)
    failed_folders: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """Check that every folder was listed."""
        return not self.failed_folders

    def covers(self, remote_path: str) -> bool:
        """Check whether a remote path lies in a successfully listed branch."""
        normalized = normalize_remote(remote_path)
        return not any(
            belongs_to_root(normalized, normalize_remote(folder))
            for folder in self.failed_folders
        )


class RemoteTreeLister:
    """Lists every file below a remote folder."""

    def __init__(
        self,
        service: RemoteFileService,
        limiter: TransferLimiter | None = None,
    ) -> None:
        self._service = service
        self._limiter = limiter or TransferLimiter()

    def _list_folder(self, path: str) -> tuple[list[RemoteFile], list[RemoteFolder]]:
        files = self._limiter.call(lambda: self._service.list_files(path))
        folders = self._limiter.call(lambda: self._service.list_folders(path))
        return files, folders

    def list_tree(
        self,
        remote_root: str,
        token: CancellationToken | None = None,
    ) -> TreeListing:
        """List a remote subtree.

        Args:
            remote_root: Folder to start from.
            token: Cancellation token checked before each folder.

        Returns:
            All files found; failed folders are recorded, not raised.

        Raises:
            CancelledException: If the token was cancelled.
        """
        listing = TreeListing(root=remote_root)
        seen = {normalize_remote(remote_root)}
        level = [remote_root]

        while level:
            if token is not None:
                token.raise_if_cancelled()

            next_level: list[str] = []
            for result in self._limiter.map(self._list_folder, level, token):
                if result.skipped:
                    raise CancelledException("Listing cancelled")
                if result.error is not None or result.value is None:
                    logger.warning(f"Listing failed for {result.item}: {result.error}")
                    listing.failed_folders.append(result.item)
                    continue

                files, folders = result.value
                listing.files.extend(files)
                for folder in folders:
                    key = normalize_remote(folder.path)
                    if key not in seen:
                        seen.add(key)
                        next_level.append(folder.path)
            level = next_level

        logger.debug(
            f"Listed {len(listing.files)} file(s) under {remote_root} "
            f"({len(listing.failed_folders)} folder(s) failed)"
        )
        return listing
