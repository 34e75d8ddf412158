"""Remote-side change detection against the mapping baseline.

RemoteDiffCollector lists the remote subtree of a project and partitions it,
together with the mapping entries, into three disjoint sets of normalized
remote paths:

- new_remote: listed remotely, no mapping entry
- modified_remote: mapped, remote modification time newer than the baseline
  by more than the tolerance
- removed_remote: mapped, missing from the listing, local file still present

Mapped entries missing remotely whose local file is gone too are dropped
from the mapping instead of being reported.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from remotesync.client.api import RemoteFile, RemoteFileService
from remotesync.client.mapping import MappingStore, PathMapping
from remotesync.client.sync.limiter import CancellationToken, TransferLimiter
from remotesync.client.sync.listing import RemoteTreeLister
from remotesync.core.config import TOLERANCE_MS
from remotesync.core.paths import belongs_to_root, is_metadata_path, normalize_remote
from remotesync.core.timestamps import diff_ms

logger = logging.getLogger(__name__)


@dataclass
class RemoteMeta:
    """Remote listing metadata of one file."""

    modified: datetime | None
    size: int | None
    remote_path: str  # as listed by the service


@dataclass
class RemoteDiffInfo:
    """Reconciliation plan between a remote subtree and its mapping.

    Attributes:
        remote_root: Remote folder that was compared.
        new_remote: Remote files without a mapping entry.
        modified_remote: Mapped files changed remotely since the baseline.
        removed_remote: Mapped files no longer listed remotely.
        remote_meta: Listing metadata per normalized remote path.
        total_remote_files: Unique remote files under the root.
        pruned: Local paths whose stale mapping entries were dropped.
        incomplete: Remote folders that could not be listed.
    """

    remote_root: str
    new_remote: list[str] = field(default_factory=list)
    modified_remote: list[str] = field(default_factory=list)
    removed_remote: list[str] = field(default_factory=list)
    remote_meta: dict[str, RemoteMeta] = field(default_factory=dict)
    total_remote_files: int = 0
    pruned: list[str] = field(default_factory=list)
    incomplete: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """Check whether there is nothing to reconcile."""
        return not (self.new_remote or self.modified_remote or self.removed_remote)

    def conflicts(self, locally_modified: Iterable[str]) -> list[str]:
        """Get remotely modified paths that are also modified locally.

        Args:
            locally_modified: Remote paths of locally modified files.
        """
        local = {normalize_remote(p) for p in locally_modified}
        return [p for p in self.modified_remote if p in local]

    def summary(self) -> str:
        """One-line summary suitable for display."""
        return (
            f"{self.total_remote_files} remote file(s): "
            f"{len(self.new_remote)} new, {len(self.modified_remote)} modified, "
            f"{len(self.removed_remote)} removed"
        )


class RemoteDiffCollector:
    """Compares a remote listing with a project's mapping entries."""

    def __init__(
        self,
        service: RemoteFileService,
        limiter: TransferLimiter | None = None,
        tolerance_ms: int = TOLERANCE_MS,
        flag_remote_older: bool = False,
    ) -> None:
        """Initialize the collector.

        Args:
            service: Remote file service.
            limiter: Concurrency limiter for the listing.
            tolerance_ms: Timestamp differences up to this are ignored.
            flag_remote_older: Also report files whose remote time went
                backwards past the tolerance (server rollbacks). Off by
                default: such files are only logged.
        """
        self._lister = RemoteTreeLister(service, limiter)
        self._tolerance_ms = tolerance_ms
        self._flag_remote_older = flag_remote_older

    def collect(
        self,
        remote_root: str,
        store: MappingStore,
        token: CancellationToken | None = None,
    ) -> RemoteDiffInfo:
        """Build the reconciliation plan for a project.

        Args:
            remote_root: Remote folder mirrored by the project.
            store: Mapping store of the project; stale entries are pruned.
            token: Cancellation token for the listing.

        Returns:
            The three disjoint sets plus listing metadata.

        Raises:
            CancelledException: If the token was cancelled during listing.
        """
        norm_root = normalize_remote(remote_root)
        info = RemoteDiffInfo(remote_root=remote_root)

        # 1. Remote listing, normalized, filtered and de-duplicated
        listing = self._lister.list_tree(remote_root, token)
        info.incomplete = list(listing.failed_folders)
        remote: dict[str, RemoteFile] = {}
        for entry in listing.files:
            norm = normalize_remote(entry.path)
            if not belongs_to_root(norm, norm_root) or is_metadata_path(norm):
                continue
            remote.setdefault(norm, entry)
        info.total_remote_files = len(remote)

        # 2. Mapping lookup by normalized remote path
        config = store.load()
        mapped: dict[str, PathMapping] = {}
        if config is not None:
            for mapping in config.mappings:
                norm = normalize_remote(mapping.remote_path)
                if not belongs_to_root(norm, norm_root) or is_metadata_path(norm):
                    continue
                mapped.setdefault(norm, mapping)

        # 3. Classify remote files, 5. collect their metadata
        for norm, entry in remote.items():
            info.remote_meta[norm] = RemoteMeta(
                modified=entry.modified, size=entry.size, remote_path=entry.path
            )
            mapping = mapped.get(norm)
            if mapping is None:
                info.new_remote.append(norm)
                continue
            self._classify_mapped(norm, entry, mapping, info)

        # 4. Mapped files missing from the listing
        stale: list[str] = []
        for norm, mapping in mapped.items():
            if norm in remote:
                continue
            if not listing.covers(mapping.remote_path):
                logger.debug(f"Listing incomplete for {norm}, not classified")
                continue
            if store.file_path(mapping.local_path).exists():
                info.removed_remote.append(norm)
            else:
                stale.append(mapping.local_path)

        if stale:
            store.remove(stale)
            info.pruned = stale
            logger.info(f"Dropped {len(stale)} stale mapping entries for {store.root}")

        info.new_remote.sort()
        info.modified_remote.sort()
        info.removed_remote.sort()
        logger.info(f"Remote diff for {remote_root}: {info.summary()}")
        return info

    def _classify_mapped(
        self,
        norm: str,
        entry: RemoteFile,
        mapping: PathMapping,
        info: RemoteDiffInfo,
    ) -> None:
        baseline = mapping.baseline
        if entry.modified is None:
            logger.debug(f"No remote timestamp for {norm}, not classified")
            return
        if baseline is None:
            logger.debug(f"No baseline for {norm} (remote={entry.modified}), not classified")
            return

        delta = diff_ms(entry.modified, baseline)
        if delta > self._tolerance_ms:
            logger.debug(f"Modified remotely: {norm} (+{delta:.0f}ms)")
            info.modified_remote.append(norm)
        elif -delta > self._tolerance_ms:
            logger.debug(f"Remote older than baseline: {norm} ({delta:.0f}ms)")
            if self._flag_remote_older:
                info.modified_remote.append(norm)
