"""Hash-based local change detection for one project.

This module provides:
- ChangeStatus / FileChange / ProjectChanges: change-state model
- HashCache: ``path -> (hash, mtime_ns, size)`` memo that skips rehashing untouched files
- ChangeDetector: initial scan, debounced per-file re-evaluation, persisted
  change state and debounced subscriber notification

Change state lives in ``.remotesync/changes.json``, separate from the mapping
document so it can be reset on its own. Unchanged files are never stored.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from remotesync.client.mapping import (
    MappingStore,
    PathMapping,
    normalize_local,
    resolve_project_root,
    write_json_atomic,
)
from remotesync.client.sync.ignore import IgnorePatterns
from remotesync.core.config import (
    CHANGES_FILE,
    FILE_DEBOUNCE_S,
    MAPPING_FILE,
    METADATA_DIR,
    NOTIFY_DEBOUNCE_S,
    TOLERANCE_MS,
)
from remotesync.core.hashing import compute_file_hash
from remotesync.core.timestamps import diff_ms, mtime_datetime, now_ms

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Path], None]


class ChangeStatus(str, Enum):
    """Classification of a tracked file against its mapping baseline."""

    UNCHANGED = "unchanged"
    MODIFIED = "modified"
    ADDED = "added"
    DELETED = "deleted"


@dataclass
class FileChange:
    """A local divergence from the mapping baseline."""

    path: str  # relative, forward slashes
    status: ChangeStatus
    hash: str = ""
    timestamp: int = field(default_factory=now_ms)
    original_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the change-state document layout."""
        data: dict[str, Any] = {
            "path": self.path,
            "status": self.status.value,
            "hash": self.hash,
            "timestamp": self.timestamp,
        }
        if self.original_hash is not None:
            data["originalHash"] = self.original_hash
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileChange:
        """Create from a change-state document entry."""
        return cls(
            path=normalize_local(data["path"]),
            status=ChangeStatus(data["status"]),
            hash=data.get("hash", ""),
            timestamp=int(data.get("timestamp") or 0),
            original_hash=data.get("originalHash"),
        )


@dataclass
class ProjectChanges:
    """All outstanding local changes of one project."""

    project_path: str
    files: dict[str, FileChange] = field(default_factory=dict)
    last_scan: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the change-state document layout."""
        return {
            "projectPath": self.project_path,
            "lastScan": self.last_scan,
            "files": {path: change.to_dict() for path, change in self.files.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectChanges:
        """Create from the change-state document."""
        files = {}
        for entry in (data.get("files") or {}).values():
            change = FileChange.from_dict(entry)
            files[change.path] = change
        return cls(
            project_path=data.get("projectPath", ""),
            files=files,
            last_scan=int(data.get("lastScan") or 0),
        )


class HashCache:
    """Thread-safe memo of file hashes keyed by path, mtime and size."""

    def __init__(self) -> None:
        self._entries: dict[Path, tuple[str, int, int]] = {}
        self._lock = threading.Lock()

    def hash_file(self, path: Path) -> str | None:
        """Get the hash of a file, reusing the memo when mtime and size are unchanged.

        Returns:
            Hex digest, or None if the file cannot be read.
        """
        try:
            stat = path.stat()
        except OSError:
            return None

        with self._lock:
            cached = self._entries.get(path)
        if cached and cached[1:] == (stat.st_mtime_ns, stat.st_size):
            return cached[0]

        try:
            digest = compute_file_hash(path)
        except OSError as e:
            logger.debug(f"Cannot hash {path}: {e}")
            return None

        with self._lock:
            self._entries[path] = (digest, stat.st_mtime_ns, stat.st_size)
        return digest

    def invalidate(self, path: Path) -> None:
        """Forget the memo of one path."""
        with self._lock:
            self._entries.pop(path, None)

    def invalidate_tree(self, root: Path) -> None:
        """Forget the memos of every path below root."""
        with self._lock:
            for path in [p for p in self._entries if p.is_relative_to(root)]:
                del self._entries[path]

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._entries

    def clear(self) -> None:
        """Forget all memos."""
        with self._lock:
            self._entries.clear()


class ChangeDetector:
    """Classifies local files of one project as modified, added or deleted.

    Filesystem events go through handle_file_event(), which re-evaluates the
    file after a short per-file debounce. Subscribers are called with the
    project root after a second, longer debounce so bulk operations produce
    one notification.
    """

    def __init__(
        self,
        store: MappingStore,
        ignore: IgnorePatterns | None = None,
        file_debounce_s: float = FILE_DEBOUNCE_S,
        notify_debounce_s: float = NOTIFY_DEBOUNCE_S,
        hash_cache: HashCache | None = None,
    ) -> None:
        """Initialize the detector.

        Args:
            store: Mapping store of the project.
            ignore: Ignore policy for scanning.
            file_debounce_s: Per-file re-evaluation delay.
            notify_debounce_s: Delay before subscribers are notified.
            hash_cache: Shared hash memo.
        """
        self._store = store
        self._ignore = ignore or IgnorePatterns()
        self._file_debounce_s = file_debounce_s
        self._notify_debounce_s = notify_debounce_s
        self._cache = hash_cache or HashCache()

        self._changes = ProjectChanges(project_path=str(store.root))
        self._initialized = False
        self._lock = threading.RLock()
        self._timers: dict[str, threading.Timer] = {}
        self._notify_timer: threading.Timer | None = None
        self._subscribers: list[ChangeCallback] = []

    @property
    def root(self) -> Path:
        """Get the project root."""
        return self._store.root

    @property
    def store(self) -> MappingStore:
        """Get the mapping store."""
        return self._store

    @property
    def changes_file(self) -> Path:
        """Get the change-state document path."""
        return self._store.metadata_dir / CHANGES_FILE

    @property
    def is_initialized(self) -> bool:
        """Check if the initial scan has run."""
        return self._initialized

    # === Lifecycle ===

    def initialize(self) -> None:
        """Load persisted state and run the initial scan (once)."""
        with self._lock:
            if self._initialized:
                logger.debug(f"Change detection already initialized for {self.root}")
                return
            self._initialized = True

        self._load_persisted()
        self.scan()
        logger.info(
            f"Change detection ready for {self.root}: "
            f"{len(self._changes.files)} changed file(s)"
        )

    def reset(self) -> None:
        """Clear in-memory and persisted change state.

        The next initialize() runs a fresh scan.
        """
        self._cancel_timers()
        with self._lock:
            self._changes = ProjectChanges(project_path=str(self.root))
            self._initialized = False
            self._cache.invalidate_tree(self.root)
            try:
                self.changes_file.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove {self.changes_file}: {e}")
        self._schedule_notify()

    def close(self) -> None:
        """Cancel pending work and drop subscribers."""
        self._cancel_timers()
        with self._lock:
            if self._notify_timer:
                self._notify_timer.cancel()
                self._notify_timer = None
            self._subscribers.clear()
        self._cache.invalidate_tree(self.root)

    def _load_persisted(self) -> None:
        if not self.changes_file.exists():
            return
        try:
            data = json.loads(self.changes_file.read_text(encoding="utf-8"))
            changes = ProjectChanges.from_dict(data)
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Ignoring unreadable change state {self.changes_file}: {e}")
            return
        changes.project_path = str(self.root)
        with self._lock:
            self._changes = changes
        logger.debug(f"Loaded {len(changes.files)} persisted change(s)")

    def _persist(self) -> None:
        with self._lock:
            data = self._changes.to_dict()
            try:
                write_json_atomic(self.changes_file, data)
            except OSError as e:
                logger.error(f"Failed to persist change state: {e}")

    # === Scanning ===

    def scan(self, persist: bool = True) -> ProjectChanges:
        """Classify every mapped file and every unmapped file on disk.

        Args:
            persist: Write the change state and notify subscribers. A
                dry scan only returns the result.

        Returns:
            The new change state.
        """
        changes = ProjectChanges(project_path=str(self.root), last_scan=now_ms())
        config = self._store.load()
        if config is None:
            logger.warning(f"{self.root} is not a project, nothing to scan")
            mapped: dict[str, PathMapping] = {}
        else:
            mapped = config.by_local_path()

        for relative, entry in mapped.items():
            if self._ignore.ignores_relative(relative):
                continue
            change = self._evaluate(relative, entry)
            if change:
                changes.files[relative] = change

        for relative in self._walk_unmapped(mapped):
            change = self._evaluate(relative, None)
            if change:
                changes.files[relative] = change

        if not persist:
            return changes
        with self._lock:
            self._changes = changes
            self._persist()
        self._schedule_notify()
        return changes

    def _walk_unmapped(self, mapped: dict[str, PathMapping]) -> Iterable[str]:
        """Yield relative paths of files on disk without a mapping entry."""
        root = self.root
        for dirpath, dirnames, filenames in os.walk(root):
            current = Path(dirpath)
            kept = []
            for name in dirnames:
                if self._ignore.ignores_directory(name):
                    continue
                # Nested projects track their own files
                if (current / name / METADATA_DIR / MAPPING_FILE).is_file():
                    continue
                kept.append(name)
            dirnames[:] = kept

            for name in filenames:
                relative = (current / name).relative_to(root).as_posix()
                if relative in mapped or self._ignore.ignores_relative(relative):
                    continue
                if (current / name).is_symlink():
                    continue
                yield relative

    def _evaluate(self, relative: str, entry: PathMapping | None) -> FileChange | None:
        """Compare one file against its mapping entry.

        Returns:
            The change, or None when the file is unchanged or unreadable.
        """
        path = self._store.file_path(relative)
        if not path.exists():
            if entry is None:
                return None
            logger.debug(f"Deleted: {relative}")
            return FileChange(
                path=relative,
                status=ChangeStatus.DELETED,
                original_hash=entry.content_hash,
            )

        current = self._cache.hash_file(path)
        if current is None:
            return None

        if entry is None:
            logger.debug(f"Added: {relative}")
            return FileChange(path=relative, status=ChangeStatus.ADDED, hash=current)

        if entry.content_hash:
            if current == entry.content_hash:
                return None
            logger.debug(f"Modified: {relative}")
            return FileChange(
                path=relative,
                status=ChangeStatus.MODIFIED,
                hash=current,
                original_hash=entry.content_hash,
            )

        # No hash on record: fall back to the mtime written at download
        if entry.local_modified_at_download is None:
            return None
        try:
            mtime = mtime_datetime(path.stat().st_mtime)
        except OSError:
            return None
        if diff_ms(mtime, entry.local_modified_at_download) > TOLERANCE_MS:
            logger.debug(f"Modified (mtime): {relative}")
            return FileChange(path=relative, status=ChangeStatus.MODIFIED, hash=current)
        return None

    def classify(self, relative: str) -> ChangeStatus:
        """Classify one file now, without touching the stored change state."""
        relative = normalize_local(relative)
        change = self._evaluate(relative, self._store.get(relative))
        return change.status if change else ChangeStatus.UNCHANGED

    def refresh(self, relative: str) -> FileChange | None:
        """Re-evaluate one file and update the stored change state."""
        if not self._initialized:
            self._load_persisted()
        relative = normalize_local(relative)
        change = self._evaluate(relative, self._store.get(relative))
        with self._lock:
            if change:
                self._changes.files[relative] = change
            else:
                self._changes.files.pop(relative, None)
            self._persist()
        self._schedule_notify()
        return change

    # === Events ===

    def handle_file_event(self, path: Path) -> None:
        """Schedule a debounced re-evaluation of a created/modified/deleted file.

        Files outside this project, inside a nested project, or matched by
        the ignore policy are dropped.
        """
        path = Path(path).absolute()
        relative = self._store.relative_path(path)
        if not relative or self._ignore.ignores_relative(relative):
            return
        if resolve_project_root(path) != self.root:
            return
        self._cache.invalidate(path)

        with self._lock:
            timer = self._timers.pop(relative, None)
            if timer:
                timer.cancel()
            timer = threading.Timer(self._file_debounce_s, self._run_pending, args=(relative,))
            timer.daemon = True
            self._timers[relative] = timer
            timer.start()

    def _run_pending(self, relative: str) -> None:
        with self._lock:
            self._timers.pop(relative, None)
        self.refresh(relative)

    def process_pending(self) -> None:
        """Run all scheduled re-evaluations now and notify immediately."""
        with self._lock:
            pending = list(self._timers)
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
        for relative in pending:
            self.refresh(relative)
        self._flush_notify()

    def _cancel_timers(self) -> None:
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()

    # === Notification ===

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register a callback receiving the project root on change updates.

        Returns:
            Function that removes the subscription.
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _schedule_notify(self) -> None:
        with self._lock:
            if self._notify_timer:
                self._notify_timer.cancel()
            self._notify_timer = threading.Timer(self._notify_debounce_s, self._notify)
            self._notify_timer.daemon = True
            self._notify_timer.start()

    def _flush_notify(self) -> None:
        with self._lock:
            if self._notify_timer:
                self._notify_timer.cancel()
                self._notify_timer = None
        self._notify()

    def _notify(self) -> None:
        with self._lock:
            self._notify_timer = None
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(self.root)
            except Exception:
                logger.exception("Change subscriber failed")

    # === Queries ===

    def get_changes(self) -> list[FileChange]:
        """Get all outstanding changes."""
        with self._lock:
            return list(self._changes.files.values())

    def get_change(self, relative: str) -> FileChange | None:
        """Get the outstanding change of one file."""
        with self._lock:
            return self._changes.files.get(normalize_local(relative))

    def has_changes(self, statuses: Iterable[ChangeStatus] | None = None) -> bool:
        """Check for outstanding changes, optionally of given statuses."""
        wanted = set(statuses) if statuses else None
        with self._lock:
            return any(
                wanted is None or change.status in wanted
                for change in self._changes.files.values()
            )

    @property
    def modified_count(self) -> int:
        """Number of files with outstanding changes."""
        with self._lock:
            return len(self._changes.files)

    @property
    def last_scan(self) -> int:
        """Epoch milliseconds of the last full scan."""
        with self._lock:
            return self._changes.last_scan

    def mark_synchronized(self, relatives: Iterable[str]) -> None:
        """Drop files from the change state after they were synced."""
        if not self._initialized:
            self._load_persisted()
        with self._lock:
            for relative in relatives:
                self._changes.files.pop(normalize_local(relative), None)
            self._persist()
        self._schedule_notify()
