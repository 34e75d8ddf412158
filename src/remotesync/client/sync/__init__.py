"""Synchronization of local projects with a remote file tree.

Architecture:
    ChangeDetector ← ProjectWatcher          (local side)
    RemoteDiffCollector → SyncExecutor       (remote side)
    TieredVerifier                           (integrity check)

Components:
- **ChangeDetector**: Classifies local files against the mapping baseline
- **ProjectWatcher**: Forwards filesystem events to the detector
- **RemoteDiffCollector**: Partitions a remote listing into new/modified/removed
- **SyncExecutor**: Full resync (atomic swap) and incremental sync, uploads
- **TieredVerifier**: Metadata diff first, content comparison of flagged files only

Low-level transfer:
- RemoteTreeLister / ProjectDownloader: best-effort listing and bulk download
- TransferLimiter: bounded concurrency shared by all remote calls
"""

from remotesync.client.sync.change_detector import (
    ChangeDetector,
    ChangeStatus,
    FileChange,
    HashCache,
    ProjectChanges,
)
from remotesync.client.sync.download import ProjectDownloader, write_file_atomic
from remotesync.client.sync.executor import SyncExecutor, UploadVerificationError
from remotesync.client.sync.ignore import IgnorePatterns
from remotesync.client.sync.limiter import (
    CancellationToken,
    CancelledException,
    TransferInProgressError,
    TransferLimiter,
    bulk_transfer_guard,
)
from remotesync.client.sync.listing import RemoteTreeLister, TreeListing
from remotesync.client.sync.remote_diff import RemoteDiffCollector, RemoteDiffInfo, RemoteMeta
from remotesync.client.sync.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_RETRIES,
    is_transient,
    retry_with_backoff,
)
from remotesync.client.sync.types import (
    DownloadResult,
    LocalChangesPendingError,
    ProjectNotFoundError,
    ResyncError,
    SyncError,
    SyncOutcome,
    SyncReport,
)
from remotesync.client.sync.verifier import (
    DiffType,
    FlagReason,
    MetadataFlag,
    ServerDifference,
    TieredVerifier,
    VerificationResult,
    VerificationStatus,
    compare_mappings,
)
from remotesync.client.sync.watcher import ProjectEventHandler, ProjectWatcher

__all__ = [
    # Local changes
    "ChangeDetector",
    "ChangeStatus",
    "FileChange",
    "HashCache",
    "IgnorePatterns",
    "ProjectChanges",
    "ProjectEventHandler",
    "ProjectWatcher",
    # Remote changes
    "RemoteDiffCollector",
    "RemoteDiffInfo",
    "RemoteMeta",
    "RemoteTreeLister",
    "TreeListing",
    # Execution
    "ProjectDownloader",
    "SyncExecutor",
    "UploadVerificationError",
    "write_file_atomic",
    # Verification
    "DiffType",
    "FlagReason",
    "MetadataFlag",
    "ServerDifference",
    "TieredVerifier",
    "VerificationResult",
    "VerificationStatus",
    "compare_mappings",
    # Concurrency
    "CancellationToken",
    "CancelledException",
    "TransferInProgressError",
    "TransferLimiter",
    "bulk_transfer_guard",
    # Retry
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_BACKOFF",
    "DEFAULT_MAX_RETRIES",
    "is_transient",
    "retry_with_backoff",
    # Types
    "DownloadResult",
    "LocalChangesPendingError",
    "ProjectNotFoundError",
    "ResyncError",
    "SyncError",
    "SyncOutcome",
    "SyncReport",
]
