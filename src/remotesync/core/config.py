"""Shared configuration for remotesync.

This module defines the connection settings used by the remote service client
and the constants that describe the per-project metadata layout.
"""

from __future__ import annotations

from dataclasses import dataclass

# Per-project metadata layout (relative to the project root)
METADATA_DIR = ".remotesync"
MAPPING_FILE = "path-mapping.json"
CHANGES_FILE = "changes.json"
BACKUP_DIR = "backup"
MAPPING_BACKUP_DIR = "backup-mapping"
MAPPING_VERSION = "1.0.0"

# Remote timestamps closer than this to the baseline are considered equal
TOLERANCE_MS = 2000

# Change detector debounce windows
FILE_DEBOUNCE_S = 0.1
NOTIFY_DEBOUNCE_S = 0.2

# Verifier: fraction of entries without serverModified that marks a legacy mapping
LEGACY_THRESHOLD = 0.8

DEFAULT_MAX_CONCURRENCY = 4


@dataclass
class ServerConfig:
    """Configuration for connecting to a remote file service.

    Attributes:
        server_url: Base URL of the service (e.g., "https://files.example.com").
        token: Bearer token sent with every request.
        timeout: Request/connection timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
        max_concurrency: Upper bound on simultaneous remote calls.
    """

    server_url: str
    token: str
    timeout: float = 30.0
    verify_ssl: bool = True
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS.

        Returns:
            True if server uses HTTPS.
        """
        return self.server_url.startswith("https://")
