"""Persistent local-to-remote path mapping per project.

This module provides:
- PathMapping / PathMappingConfig: the mapping document and its entries
- MappingStore: load/save/upsert of ``.remotesync/path-mapping.json``
- find_nearest_config / resolve_project_root: project boundary discovery
- resolve_remote_path: remote path lookup for any local file
- find_local_path: local file lookup for a mapped remote path

A directory is a project iff it contains the mapping sentinel file. The
document is always rewritten whole; writers for one project must go through
a single MappingStore instance, which serializes them.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from remotesync.core.config import (
    BACKUP_DIR,
    MAPPING_BACKUP_DIR,
    MAPPING_FILE,
    MAPPING_VERSION,
    METADATA_DIR,
)
from remotesync.core.hashing import compute_content_hash, is_binary_path
from remotesync.core.paths import join_remote, local_path, normalize_remote, to_posix
from remotesync.core.timestamps import format_timestamp, now_ms, parse_timestamp

logger = logging.getLogger(__name__)


class MappingError(Exception):
    """Mapping document missing or unreadable."""


def normalize_local(path: str | Path) -> str:
    """Normalize a project-relative path to its stored forward-slash form."""
    posix = to_posix(path)
    while posix.startswith("./"):
        posix = posix[2:]
    if posix == ".":
        return ""
    return posix.strip("/")


@dataclass
class PathMapping:
    """Mapping entry for one tracked file.

    Attributes:
        local_path: Path relative to the project root, forward slashes.
        remote_path: Absolute remote path.
        last_updated: Epoch milliseconds of the last write of this entry.
        content_hash: Change-detection hash recorded at the last sync.
        server_modified: Remote modification time at the last sync.
        local_modified_at_download: Local mtime right after the sync wrote the file.
        is_binary: Extension-derived binary flag.
    """

    local_path: str
    remote_path: str
    last_updated: int = field(default_factory=now_ms)
    content_hash: str | None = None
    server_modified: datetime | None = None
    local_modified_at_download: datetime | None = None
    is_binary: bool | None = None

    def __post_init__(self) -> None:
        self.local_path = normalize_local(self.local_path)

    @property
    def baseline(self) -> datetime | None:
        """Reference time for remote change detection."""
        return self.server_modified or self.local_modified_at_download

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the document's camelCase keys, omitting empty fields."""
        data: dict[str, Any] = {
            "localPath": self.local_path,
            "remotePath": self.remote_path,
            "lastUpdated": self.last_updated,
        }
        if self.content_hash is not None:
            data["contentHash"] = self.content_hash
        if self.server_modified is not None:
            data["serverModified"] = format_timestamp(self.server_modified)
        if self.local_modified_at_download is not None:
            data["localModifiedAtDownload"] = format_timestamp(
                self.local_modified_at_download
            )
        if self.is_binary is not None:
            data["isBinary"] = self.is_binary
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PathMapping:
        """Create from a document entry."""
        return cls(
            local_path=data["localPath"],
            remote_path=data["remotePath"],
            last_updated=int(data.get("lastUpdated") or 0),
            content_hash=data.get("contentHash"),
            server_modified=parse_timestamp(data.get("serverModified")),
            local_modified_at_download=parse_timestamp(
                data.get("localModifiedAtDownload")
            ),
            is_binary=data.get("isBinary"),
        )


@dataclass
class PathMappingConfig:
    """Mapping document of one project root."""

    root_remote_path: str
    root_local_path: str
    mappings: list[PathMapping] = field(default_factory=list)
    version: str = MAPPING_VERSION
    created_at: int = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        self.dedupe()

    def dedupe(self) -> None:
        """Keep one entry per local path, the last one winning."""
        seen: dict[str, PathMapping] = {}
        for entry in self.mappings:
            seen.pop(entry.local_path, None)
            seen[entry.local_path] = entry
        self.mappings = list(seen.values())

    def get(self, local_path: str) -> PathMapping | None:
        """Get the entry for a relative local path."""
        key = normalize_local(local_path)
        for entry in self.mappings:
            if entry.local_path == key:
                return entry
        return None

    def put(self, entry: PathMapping) -> None:
        """Add or replace the entry for its local path."""
        self.discard(entry.local_path)
        self.mappings.append(entry)

    def discard(self, local_path: str) -> bool:
        """Remove the entry for a local path.

        Returns:
            True if an entry was removed.
        """
        key = normalize_local(local_path)
        before = len(self.mappings)
        self.mappings = [m for m in self.mappings if m.local_path != key]
        return len(self.mappings) != before

    def by_local_path(self) -> dict[str, PathMapping]:
        """Index entries by local path."""
        return {m.local_path: m for m in self.mappings}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON document layout."""
        return {
            "rootRemotePath": self.root_remote_path,
            "rootLocalPath": self.root_local_path,
            "version": self.version,
            "createdAt": self.created_at,
            "mappings": [m.to_dict() for m in self.mappings],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PathMappingConfig:
        """Create from the JSON document."""
        return cls(
            root_remote_path=data.get("rootRemotePath", ""),
            root_local_path=data.get("rootLocalPath", ""),
            mappings=[PathMapping.from_dict(m) for m in data.get("mappings", [])],
            version=data.get("version", MAPPING_VERSION),
            created_at=int(data.get("createdAt") or 0),
        )


def _umask_file_mode() -> int:
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


# Mode of a newly created file; read once since os.umask is process-wide
NEW_FILE_MODE = _umask_file_mode()


def write_json_atomic(path: Path, data: Any) -> None:
    """Write a JSON document through a temp file and rename it into place.

    The document keeps the mode of the file it replaces, or gets the
    umask default when new (mkstemp alone would leave it at 0600).
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        mode = path.stat().st_mode & 0o777
    except FileNotFoundError:
        mode = NEW_FILE_MODE
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class MappingStore:
    """Reads and writes the mapping document of one project root."""

    def __init__(self, root: Path) -> None:
        """Initialize the store.

        Args:
            root: Project root directory.
        """
        self._root = Path(root).absolute()
        self._lock = threading.RLock()

    @property
    def root(self) -> Path:
        """Get the project root."""
        return self._root

    @property
    def metadata_dir(self) -> Path:
        """Get the project metadata directory."""
        return self._root / METADATA_DIR

    @property
    def mapping_file(self) -> Path:
        """Get the mapping document (the project sentinel)."""
        return self.metadata_dir / MAPPING_FILE

    @property
    def backup_dir(self) -> Path:
        """Get the directory holding original file contents."""
        return self.metadata_dir / BACKUP_DIR

    @property
    def lock(self) -> threading.RLock:
        """Lock serializing writers of this project's documents."""
        return self._lock

    def exists(self) -> bool:
        """Check whether the project sentinel exists."""
        return self.mapping_file.is_file()

    def create(
        self,
        root_remote_path: str,
        entries: list[PathMapping] | None = None,
    ) -> PathMappingConfig:
        """Create (or overwrite) the mapping document.

        Args:
            root_remote_path: Remote folder the project mirrors.
            entries: Initial mapping entries.

        Returns:
            The written document.
        """
        config = PathMappingConfig(
            root_remote_path=root_remote_path,
            root_local_path=str(self._root),
            mappings=list(entries or []),
        )
        with self._lock:
            self._write(config)
        clear_project_root_cache()
        logger.info(f"Created mapping for {self._root} -> {root_remote_path}")
        return config

    def load(self) -> PathMappingConfig | None:
        """Load the mapping document.

        Returns:
            The document, or None if missing or unreadable.
        """
        if not self.mapping_file.exists():
            return None
        try:
            data = json.loads(self.mapping_file.read_text(encoding="utf-8"))
            return PathMappingConfig.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to load mapping {self.mapping_file}: {e}")
            return None

    def require(self) -> PathMappingConfig:
        """Load the mapping document or raise.

        Raises:
            MappingError: If the document is missing or unreadable.
        """
        config = self.load()
        if config is None:
            raise MappingError(f"No mapping document found in {self._root}")
        return config

    def save(self, config: PathMappingConfig, backup: bool = False) -> None:
        """Rewrite the mapping document.

        Args:
            config: Document to write.
            backup: Copy the previous document to the mapping backup area first.
        """
        with self._lock:
            if backup:
                self.backup_document()
            self._write(config)

    def backup_document(self) -> Path | None:
        """Copy the current mapping document to a timestamped backup file.

        Returns:
            Path of the backup, or None if there was nothing to back up.
        """
        if not self.mapping_file.exists():
            return None
        target = self.metadata_dir / MAPPING_BACKUP_DIR / f"path-mapping.{now_ms()}.json"
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(self.mapping_file, target)
        logger.debug(f"Backed up mapping to {target}")
        return target

    def _write(self, config: PathMappingConfig) -> None:
        config.dedupe()
        write_json_atomic(self.mapping_file, config.to_dict())

    def get(self, relative: str) -> PathMapping | None:
        """Get the mapping entry for a relative local path."""
        config = self.load()
        return config.get(relative) if config else None

    def upsert(
        self,
        relative: str,
        remote_path: str,
        content: bytes | None = None,
        *,
        server_modified: datetime | None = None,
        local_modified_at_download: datetime | None = None,
    ) -> PathMapping:
        """Add or update the entry of one file.

        When content is given the hash is recomputed and the content is
        saved to the backup area. Baseline timestamps not given are kept
        from the previous entry.

        Raises:
            MappingError: If the mapping document does not exist.
        """
        with self._lock:
            config = self.require()
            key = normalize_local(relative)
            previous = config.get(key)
            entry = PathMapping(
                local_path=key,
                remote_path=remote_path,
                content_hash=previous.content_hash if previous else None,
                server_modified=server_modified
                or (previous.server_modified if previous else None),
                local_modified_at_download=local_modified_at_download
                or (previous.local_modified_at_download if previous else None),
                is_binary=is_binary_path(key),
            )
            if content is not None:
                entry.content_hash = compute_content_hash(self.file_path(key), content)
                self.write_backup(key, content)
            config.put(entry)
            self._write(config)
            return entry

    def upsert_many(self, entries: list[PathMapping]) -> None:
        """Add or replace several entries in one document write."""
        with self._lock:
            config = self.require()
            for entry in entries:
                config.put(entry)
            self._write(config)

    def remove(self, relatives: list[str]) -> int:
        """Drop entries for the given relative paths.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            config = self.require()
            removed = sum(1 for r in relatives if config.discard(r))
            if removed:
                self._write(config)
            return removed

    def file_path(self, relative: str) -> Path:
        """Get the working-tree path of a relative local path."""
        return local_path(self._root, normalize_local(relative))

    def relative_path(self, path: Path) -> str | None:
        """Get the stored relative form of a path inside this project."""
        try:
            return normalize_local(Path(path).absolute().relative_to(self._root))
        except ValueError:
            return None

    def backup_path(self, relative: str) -> Path:
        """Get the backup-area path of a relative local path."""
        return local_path(self.backup_dir, normalize_local(relative))

    def write_backup(self, relative: str, content: bytes) -> None:
        """Save original content for later diffing.

        A failed backup is logged and does not fail the caller.
        """
        target = self.backup_path(relative)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as e:
            logger.warning(f"Could not write backup for {relative}: {e}")

    def original_content(self, relative: str) -> bytes | None:
        """Get the content saved at the last sync of a file, if any."""
        target = self.backup_path(relative)
        try:
            return target.read_bytes()
        except OSError:
            return None

    def resolve_remote_path(self, path: Path, config: PathMappingConfig | None = None) -> str | None:
        """Get the remote path of a local file or folder of this project.

        Exact mapping entries win; the project root maps to the root remote
        path; anything else is the root remote path joined with the
        relative path.
        """
        config = config or self.load()
        if config is None:
            return None
        relative = self.relative_path(path)
        if relative is None:
            return None
        entry = config.get(relative) if relative else None
        if entry is not None:
            return entry.remote_path
        if not relative:
            return config.root_remote_path
        return join_remote(config.root_remote_path, relative)

    def find_local_path(self, remote_path: str, must_exist: bool = True) -> Path | None:
        """Get the working-tree file mapped to a remote path.

        Remote paths are matched after normalization, never by prefix.

        Args:
            remote_path: Remote path of a mapped file.
            must_exist: Return None when the mapped file is not on disk.

        Returns:
            Absolute local path, or None if no entry maps the remote path.
        """
        config = self.load()
        if config is None:
            return None
        norm = normalize_remote(remote_path)
        for entry in config.mappings:
            if normalize_remote(entry.remote_path) == norm:
                path = self.file_path(entry.local_path)
                if must_exist and not path.is_file():
                    logger.debug(f"{remote_path} is mapped to missing file {path}")
                    return None
                return path
        return None


def _start_dir(path: Path) -> Path:
    path = Path(path).absolute()
    return path if path.is_dir() else path.parent


def find_nearest_config(path: Path) -> Path | None:
    """Walk up from a path to the nearest directory holding a mapping sentinel.

    Args:
        path: Any local file or directory.

    Returns:
        The project root, or None if the path is not inside a project.
    """
    current = _start_dir(path)
    for directory in (current, *current.parents):
        if (directory / METADATA_DIR / MAPPING_FILE).is_file():
            return directory
    return None


_root_cache: dict[Path, Path | None] = {}
_root_cache_lock = threading.Lock()


def resolve_project_root(path: Path) -> Path | None:
    """Memoized find_nearest_config, keyed by the starting directory."""
    start = _start_dir(path)
    with _root_cache_lock:
        if start in _root_cache:
            return _root_cache[start]
    root = find_nearest_config(start)
    with _root_cache_lock:
        _root_cache[start] = root
    return root


def clear_project_root_cache() -> None:
    """Forget memoized project roots (after creating or deleting a project)."""
    with _root_cache_lock:
        _root_cache.clear()


def resolve_remote_path(path: Path) -> str | None:
    """Get the remote path of any local file or folder inside a project."""
    root = find_nearest_config(path)
    if root is None:
        return None
    return MappingStore(root).resolve_remote_path(Path(path).absolute())


def find_local_path(path: Path, remote_path: str) -> Path | None:
    """Get the local file of the project containing path that maps to remote_path."""
    root = find_nearest_config(path)
    if root is None:
        return None
    return MappingStore(root).find_local_path(remote_path)
