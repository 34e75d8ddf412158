"""Two-tier integrity verification of a project against its remote subtree.

Tier 1 downloads the subtree into a throwaway directory and diffs the fresh
mapping snapshot against the project's mapping by metadata only. Tier 2
runs only over the files Tier 1 flagged, comparing the working tree with
the files already fetched by Tier 1. The throwaway directory is always
removed.

Mappings written by old versions often lack ``serverModified``; when most
entries do, verification backfills it from a remote listing instead and
asks the caller to run again.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from remotesync.client.api import RemoteFileService
from remotesync.client.mapping import MappingStore, PathMapping
from remotesync.client.sync.download import ProjectDownloader
from remotesync.client.sync.limiter import CancellationToken, TransferLimiter
from remotesync.core.config import LEGACY_THRESHOLD, TOLERANCE_MS
from remotesync.core.hashing import is_binary_path
from remotesync.core.paths import belongs_to_root, join_remote, local_path, normalize_remote
from remotesync.core.timestamps import diff_ms, mtime_datetime, utc_now

logger = logging.getLogger(__name__)


class FlagReason(str, Enum):
    """Why Tier 1 flagged a file."""

    REMOVED_FROM_SERVER = "removed-from-server"
    NEW_ON_SERVER = "new-on-server"
    MODIFIED_ON_SERVER = "modified-on-server"
    CONTENT_CHANGED = "content-changed"


class DiffType(str, Enum):
    """Confirmed difference between the working tree and the server."""

    ONLY_IN_LOCAL = "only-in-local"
    ONLY_IN_SERVER = "only-in-server"
    DIFFERENT = "different"


class VerificationStatus(str, Enum):
    """Overall verification result."""

    UP_TO_DATE = "up-to-date"
    OUT_OF_SYNC = "out-of-sync"
    NEEDS_RERUN = "needs-rerun"
    ABORTED = "aborted"
    ERROR = "error"


@dataclass
class MetadataFlag:
    """A Tier 1 finding.

    Attributes:
        local_path: Relative local path.
        remote_path: Remote path of the file.
        reason: What the metadata diff found.
        current: Entry of the project's mapping, if any.
        fresh: Entry of the fresh snapshot, if any.
    """

    local_path: str
    remote_path: str
    reason: FlagReason
    current: PathMapping | None = None
    fresh: PathMapping | None = None


@dataclass
class ServerDifference:
    """A Tier 2 confirmed difference."""

    local_path: str
    remote_path: str
    diff_type: DiffType
    reason: FlagReason
    description: str = ""


@dataclass
class VerificationResult:
    """Outcome of a verification run."""

    status: VerificationStatus
    flags: list[MetadataFlag] = field(default_factory=list)
    differences: list[ServerDifference] = field(default_factory=list)
    unverified: list[str] = field(default_factory=list)
    backfilled: int = 0
    checked_at: datetime = field(default_factory=utc_now)
    error: str | None = None

    def summary(self) -> str:
        """One-line summary suitable for display."""
        if self.status == VerificationStatus.NEEDS_RERUN:
            return f"{self.status.value}: backfilled {self.backfilled} entries"
        text = (
            f"{self.status.value}: {len(self.flags)} flagged, "
            f"{len(self.differences)} different"
        )
        if self.unverified:
            text += f", {len(self.unverified)} unverified"
        return text


def compare_mappings(
    current: list[PathMapping],
    fresh: list[PathMapping],
    tolerance_ms: int = TOLERANCE_MS,
) -> list[MetadataFlag]:
    """Diff two mapping snapshots by metadata (Tier 1).

    Entries are matched by normalized remote path. Content hashes are only
    compared for non-binary entries, since binary hashes are size+mtime
    proxies that differ between any two downloads.

    Returns:
        One flag per entry that needs a content check.
    """
    current_by_remote = {normalize_remote(m.remote_path): m for m in current}
    fresh_by_remote = {normalize_remote(m.remote_path): m for m in fresh}
    flags: list[MetadataFlag] = []

    for norm, entry in current_by_remote.items():
        other = fresh_by_remote.get(norm)
        if other is None:
            flags.append(
                MetadataFlag(entry.local_path, entry.remote_path, FlagReason.REMOVED_FROM_SERVER, current=entry)
            )
            continue

        if (
            entry.server_modified is not None
            and other.server_modified is not None
            and abs(diff_ms(other.server_modified, entry.server_modified)) > tolerance_ms
        ):
            reason: FlagReason | None = FlagReason.MODIFIED_ON_SERVER
        elif (
            entry.content_hash
            and other.content_hash
            and not (entry.is_binary or other.is_binary)
            and entry.content_hash != other.content_hash
        ):
            reason = FlagReason.CONTENT_CHANGED
        else:
            reason = None
        if reason is not None:
            flags.append(
                MetadataFlag(entry.local_path, entry.remote_path, reason, current=entry, fresh=other)
            )

    for norm, other in fresh_by_remote.items():
        if norm not in current_by_remote:
            flags.append(
                MetadataFlag(other.local_path, other.remote_path, FlagReason.NEW_ON_SERVER, fresh=other)
            )

    flags.sort(key=lambda f: f.local_path)
    return flags


class TieredVerifier:
    """Verifies a project against the remote subtree it mirrors."""

    def __init__(
        self,
        service: RemoteFileService,
        limiter: TransferLimiter | None = None,
        downloader: ProjectDownloader | None = None,
        tolerance_ms: int = TOLERANCE_MS,
        temp_root: Path | None = None,
    ) -> None:
        """Initialize the verifier.

        Args:
            service: Remote file service.
            limiter: Concurrency limiter shared with other operations.
            downloader: Bulk downloader used by Tier 1.
            tolerance_ms: Timestamp tolerance for metadata comparison.
            temp_root: Directory for the throwaway download (system temp
                directory if omitted).
        """
        self._limiter = limiter or TransferLimiter()
        self._downloader = downloader or ProjectDownloader(service, self._limiter)
        self._tolerance_ms = tolerance_ms
        self._temp_root = temp_root

    def verify(
        self,
        project_root: Path,
        remote_root: str | None = None,
        token: CancellationToken | None = None,
    ) -> VerificationResult:
        """Verify a project.

        Args:
            project_root: Project to verify.
            remote_root: Remote folder (mapping root if omitted).
            token: Cancellation token for the Tier 1 download.

        Returns:
            The verification result; failures are reported in it with
            status ERROR rather than raised.
        """
        store = MappingStore(project_root)
        config = store.load()
        if config is None:
            return VerificationResult(
                status=VerificationStatus.ERROR,
                error=f"No mapping document found in {project_root}",
            )
        remote_root = remote_root or config.root_remote_path
        if not remote_root:
            return VerificationResult(
                status=VerificationStatus.ERROR,
                error=f"Cannot determine remote path of {project_root}",
            )

        if self.is_legacy(config.mappings):
            return self._backfill(store, remote_root, token)

        temp = Path(tempfile.mkdtemp(prefix="remotesync-verify-", dir=self._temp_root))
        try:
            return self._verify_tiers(store, config.mappings, remote_root, temp, token)
        finally:
            shutil.rmtree(temp, ignore_errors=True)

    @staticmethod
    def is_legacy(mappings: list[PathMapping]) -> bool:
        """Check whether most entries lack serverModified."""
        if not mappings:
            return False
        missing = sum(1 for m in mappings if m.server_modified is None)
        return missing / len(mappings) > LEGACY_THRESHOLD

    def _backfill(
        self,
        store: MappingStore,
        remote_root: str,
        token: CancellationToken | None,
    ) -> VerificationResult:
        """Fill serverModified of every entry from a recursive listing."""
        logger.info(f"Legacy mapping in {store.root}, backfilling remote timestamps")
        listing = self._downloader.lister.list_tree(remote_root, token)
        modified = {
            normalize_remote(f.path): f.modified for f in listing.files if f.modified is not None
        }

        with store.lock:
            config = store.require()
            count = 0
            for entry in config.mappings:
                timestamp = modified.get(normalize_remote(entry.remote_path))
                if timestamp is not None:
                    entry.server_modified = timestamp
                    count += 1
            if count:
                store.save(config, backup=True)

        logger.info(f"Backfilled {count}/{len(config.mappings)} entries; run verification again")
        return VerificationResult(status=VerificationStatus.NEEDS_RERUN, backfilled=count)

    def _verify_tiers(
        self,
        store: MappingStore,
        current: list[PathMapping],
        remote_root: str,
        temp: Path,
        token: CancellationToken | None,
    ) -> VerificationResult:
        download = self._downloader.download(remote_root, temp, token, write_metadata=False)
        if download.aborted:
            return VerificationResult(status=VerificationStatus.ABORTED)

        # Files that could not be fetched cannot be judged either way
        norm_root = normalize_remote(remote_root)
        failed = {normalize_remote(join_remote(norm_root, rel)) for rel in download.failed}
        failed_folders = [normalize_remote(f) for f in download.listing_failed]

        def verifiable(entry: PathMapping) -> bool:
            norm = normalize_remote(entry.remote_path)
            return norm not in failed and not any(belongs_to_root(norm, f) for f in failed_folders)

        unverified = sorted(m.local_path for m in current if not verifiable(m))
        unverified += sorted(download.failed)
        checked = [m for m in current if verifiable(m)]

        flags = compare_mappings(checked, download.mappings, self._tolerance_ms)
        result = VerificationResult(
            status=VerificationStatus.UP_TO_DATE,
            flags=flags,
            unverified=sorted(set(unverified)),
        )
        if flags:
            result.differences = self.compare_flagged(store.root, temp, flags)
        if result.differences:
            result.status = VerificationStatus.OUT_OF_SYNC

        logger.info(f"Verification of {store.root}: {result.summary()}")
        return result

    # === Tier 2 ===

    def compare_flagged(
        self,
        project_root: Path,
        fetched_root: Path,
        flags: list[MetadataFlag],
    ) -> list[ServerDifference]:
        """Confirm Tier 1 flags by comparing content (Tier 2).

        Args:
            project_root: Working tree.
            fetched_root: Directory holding the Tier 1 download.
            flags: Files to check.

        Returns:
            Differences that survived the content check.
        """
        differences = []
        for flag in flags:
            working = local_path(project_root, flag.local_path)
            fetched_rel = flag.fresh.local_path if flag.fresh else None
            fetched = local_path(fetched_root, fetched_rel) if fetched_rel else None

            diff_type = self._resolve(flag, working, fetched)
            if diff_type is None:
                logger.debug(f"{flag.local_path}: content matches despite {flag.reason.value}")
                continue
            differences.append(
                ServerDifference(
                    local_path=flag.local_path,
                    remote_path=flag.remote_path,
                    diff_type=diff_type,
                    reason=flag.reason,
                    description=_DESCRIPTIONS[diff_type],
                )
            )
        return differences

    def _resolve(self, flag: MetadataFlag, working: Path, fetched: Path | None) -> DiffType | None:
        has_local = working.is_file()
        if fetched is None or not fetched.is_file():
            return DiffType.ONLY_IN_LOCAL if has_local else None
        if not has_local:
            return DiffType.ONLY_IN_SERVER
        if self._same_content(working, fetched, flag.current):
            return None
        return DiffType.DIFFERENT

    def _same_content(self, working: Path, fetched: Path, entry: PathMapping | None) -> bool:
        try:
            if is_binary_path(working):
                if working.stat().st_size != fetched.stat().st_size:
                    return False
                baseline = entry.local_modified_at_download if entry else None
                if baseline is None:
                    return True
                mtime = mtime_datetime(working.stat().st_mtime)
                return diff_ms(mtime, baseline) <= self._tolerance_ms

            # Equal UTF-8 text is equal bytes; non-UTF-8 text is compared as is
            return working.read_bytes() == fetched.read_bytes()
        except OSError as e:
            logger.warning(f"Cannot compare {working}: {e}")
            return False


_DESCRIPTIONS = {
    DiffType.ONLY_IN_LOCAL: "Exists only locally",
    DiffType.ONLY_IN_SERVER: "Exists only on the server",
    DiffType.DIFFERENT: "Contents differ",
}
