"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError and subclasses: Exceptions surfaced to callers
- SyncOutcome / SyncReport: Aggregate result of batch operations
- DownloadResult: Result of a bulk subtree download
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from remotesync.client.mapping import PathMapping
    from remotesync.client.sync.remote_diff import RemoteDiffInfo


class SyncError(Exception):
    """Base exception for sync errors."""


class ProjectNotFoundError(SyncError):
    """No project or remote root could be resolved for a path."""


class LocalChangesPendingError(SyncError):
    """Outstanding local modifications block a destructive operation.

    Attributes:
        paths: Relative paths with outstanding changes.
    """

    def __init__(self, paths: list[str]) -> None:
        self.paths = paths
        super().__init__(
            f"{len(paths)} locally modified file(s) would be overwritten; "
            f"upload or discard them first, or force the operation"
        )


class ResyncError(SyncError):
    """Full resync failed; the working tree was left untouched."""


class SyncOutcome(str, Enum):
    """Final state of a sync operation."""

    SUCCESS = "success"
    ABORTED = "aborted"
    FAILED = "failed"
    NEEDS_RERUN = "needs_rerun"


@dataclass
class SyncReport:
    """Aggregate result of a batch operation.

    Attributes:
        outcome: Overall result.
        succeeded: Relative paths processed successfully.
        skipped: Relative paths deliberately left alone.
        failed: Relative path -> error message.
        diff: Remote diff the operation was planned from, if any.
    """

    outcome: SyncOutcome = SyncOutcome.SUCCESS
    succeeded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    diff: RemoteDiffInfo | None = None

    @property
    def ok(self) -> bool:
        """Check that the operation finished without failures."""
        return self.outcome == SyncOutcome.SUCCESS and not self.failed

    def summary(self) -> str:
        """One-line summary suitable for display."""
        return (
            f"{self.outcome.value}: {len(self.succeeded)} succeeded, "
            f"{len(self.skipped)} skipped, {len(self.failed)} failed"
        )


@dataclass
class DownloadResult:
    """Result of downloading a remote subtree into a directory.

    Attributes:
        remote_root: Remote folder that was downloaded.
        target: Local directory the files were written to.
        mappings: Mapping snapshot for every file written.
        failed: Relative path -> error for files that could not be fetched.
        listing_failed: Remote folders whose listing failed.
        aborted: Cancellation stopped the download early.
    """

    remote_root: str
    target: Path
    mappings: list[PathMapping] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    listing_failed: list[str] = field(default_factory=list)
    aborted: bool = False

    @property
    def complete(self) -> bool:
        """Check that every listed file was fetched."""
        return not (self.aborted or self.failed or self.listing_failed)
