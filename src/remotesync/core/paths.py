"""Path helpers shared by the sync components.

Remote paths are compared in a normalized form: forward slashes only,
no repeated slashes, no leading slash, surrounding whitespace trimmed.
Local relative paths are stored with forward slashes and converted to
native separators only when touching the disk.
"""

from __future__ import annotations

import re
from pathlib import Path, PurePosixPath

from remotesync.core.config import METADATA_DIR

_REPEATED_SLASHES = re.compile(r"/{2,}")


def normalize_remote(path: str) -> str:
    """Normalize a remote path for comparison.

    Args:
        path: Remote path as returned by the service or stored in a mapping.

    Returns:
        Normalized path (e.g. "/WEB//a/b " -> "WEB/a/b").
    """
    normalized = path.strip().replace("\\", "/")
    normalized = _REPEATED_SLASHES.sub("/", normalized)
    return normalized.lstrip("/").strip()


def belongs_to_root(path: str, root: str) -> bool:
    """Check whether a normalized remote path is the root or lies below it."""
    if not root:
        return True
    return path == root or path.startswith(root + "/")


def is_metadata_path(path: str) -> bool:
    """Check whether a path points into a project metadata directory."""
    posix = to_posix(path)
    return (
        posix == METADATA_DIR
        or posix.startswith(METADATA_DIR + "/")
        or f"/{METADATA_DIR}/" in posix
        or posix.endswith("/" + METADATA_DIR)
    )


def to_posix(path: str | Path) -> str:
    """Convert a local path to its forward-slash form."""
    if isinstance(path, Path):
        return path.as_posix()
    return path.replace("\\", "/")


def join_remote(root: str, relative: str) -> str:
    """Join a remote root and a relative path with a single slash."""
    relative = to_posix(relative).strip("/")
    if not relative:
        return root
    if not root:
        return relative
    return root.rstrip("/") + "/" + relative


def relative_remote(path: str, root: str) -> str | None:
    """Get the part of a remote path below a remote root.

    Both arguments are normalized first.

    Returns:
        Relative path, "" for the root itself, or None if outside the root.
    """
    path = normalize_remote(path)
    root = normalize_remote(root)
    if not belongs_to_root(path, root):
        return None
    if path == root:
        return ""
    return path[len(root) + 1 :] if root else path


def remote_parent(path: str) -> str:
    """Get the parent folder of a remote path, keeping its original prefix."""
    posix = to_posix(path).rstrip("/")
    parent = str(PurePosixPath(posix).parent)
    return "" if parent == "." else parent


def local_path(root: Path, relative: str) -> Path:
    """Resolve a stored forward-slash relative path under a project root."""
    return root.joinpath(*PurePosixPath(relative).parts)
