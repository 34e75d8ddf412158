"""Content hashing for change detection.

Text files are hashed with SHA-256 over their raw bytes. Binary and very
large files use a SHA-256 digest of ``"<size>:<mtime_ns>"`` instead, a cheap
proxy that avoids reading the whole file on every scan.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

HASH_BLOCK_SIZE = 8192
LARGE_FILE_THRESHOLD = 20 * 1024 * 1024  # 20 MiB

BINARY_EXTENSIONS = frozenset(
    {
        "7z", "avi", "bin", "bmp", "class", "dll", "doc", "docx", "dylib",
        "eot", "exe", "gif", "gz", "ico", "jar", "jpeg", "jpg", "mov", "mp3",
        "mp4", "otf", "pdf", "png", "ppt", "pptx", "rar", "so", "tar", "tif",
        "tiff", "ttf", "wav", "webp", "woff", "woff2", "xls", "xlsx", "zip",
    }
)  # fmt: skip


def is_binary_path(path: str | Path) -> bool:
    """Check whether a path has a binary extension."""
    suffix = os.path.splitext(str(path))[1]
    return suffix[1:].lower() in BINARY_EXTENSIONS


def hash_bytes(data: bytes) -> str:
    """Compute the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def proxy_hash(size: int, mtime_ns: int) -> str:
    """Compute the size+mtime proxy digest used for binary and large files."""
    return hashlib.sha256(f"{size}:{mtime_ns}".encode()).hexdigest()


def uses_proxy_hash(path: Path, size: int) -> bool:
    """Check whether a file is hashed by proxy rather than by content."""
    return is_binary_path(path) or size > LARGE_FILE_THRESHOLD


def compute_file_hash(path: Path) -> str:
    """Compute the change-detection hash of a file on disk.

    Args:
        path: Path to the file.

    Returns:
        Hex digest string.

    Raises:
        OSError: If the file cannot be read.
    """
    stat = path.stat()
    if uses_proxy_hash(path, stat.st_size):
        return proxy_hash(stat.st_size, stat.st_mtime_ns)

    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
            sha256.update(block)
    return sha256.hexdigest()


def compute_content_hash(path: Path, content: bytes | None = None) -> str:
    """Compute the hash to record for a file that was just written.

    Uses the given content for text files so the digest reflects exactly
    what was transferred; falls back to the on-disk file otherwise.
    """
    if content is not None and not is_binary_path(path) and len(content) <= LARGE_FILE_THRESHOLD:
        return hash_bytes(content)
    return compute_file_hash(path)
