"""Core module - Shared configuration, paths, hashing and timestamps."""

from remotesync.core.config import (
    METADATA_DIR,
    TOLERANCE_MS,
    ServerConfig,
)
from remotesync.core.hashing import (
    compute_content_hash,
    compute_file_hash,
    hash_bytes,
    is_binary_path,
)
from remotesync.core.paths import (
    belongs_to_root,
    join_remote,
    normalize_remote,
    relative_remote,
    to_posix,
)

__all__ = [
    # Config
    "METADATA_DIR",
    "ServerConfig",
    "TOLERANCE_MS",
    # Hashing
    "compute_content_hash",
    "compute_file_hash",
    "hash_bytes",
    "is_binary_path",
    # Paths
    "belongs_to_root",
    "join_remote",
    "normalize_remote",
    "relative_remote",
    "to_posix",
]
