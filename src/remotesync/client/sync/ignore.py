"""Ignore policy for local scanning.

This module provides:
- IgnorePatterns: decides which local files and directories are never tracked
- DEFAULT_IGNORE_PATTERNS: noise files matched by name
- IGNORED_DIRECTORIES / IGNORED_EXTENSIONS: excluded trees and binary media
"""

from __future__ import annotations

import fnmatch
from pathlib import Path

from remotesync.core.config import METADATA_DIR

# Default ignore patterns, matched against the file name
DEFAULT_IGNORE_PATTERNS = [
    ".DS_Store",
    "Thumbs.db",
    "desktop.ini",
    ".gitkeep",
    "*.tmp",
    ".tmp*",
    "*.swp",
    "~*",
]

IGNORED_DIRECTORIES = frozenset(
    {
        METADATA_DIR,
        ".git",
        ".svn",
        ".hg",
        "node_modules",
        ".vscode",
        ".idea",
        ".vs",
        "dist",
        "build",
        "out",
        "__pycache__",
        ".pytest_cache",
    }
)

IGNORED_EXTENSIONS = frozenset(
    {
        "exe", "dll", "so", "dylib",
        "zip", "rar", "7z", "tar", "gz",
        "jpg", "jpeg", "png", "gif", "bmp",
        "mp3", "mp4", "avi", "mov",
        "pdf", "doc", "docx",
    }
)  # fmt: skip


class IgnorePatterns:
    """Handles ignore matching for paths inside a project."""

    def __init__(self, patterns: list[str] | None = None) -> None:
        """Initialize with patterns.

        Args:
            patterns: Extra fnmatch-style patterns, matched against the
                relative path and the file name.
        """
        self._patterns = list(DEFAULT_IGNORE_PATTERNS)
        if patterns:
            self._patterns.extend(patterns)

    def add_pattern(self, pattern: str) -> None:
        """Add an ignore pattern."""
        self._patterns.append(pattern)

    def load_from_file(self, path: Path) -> None:
        """Load patterns from an ignore file (one per line, # comments)."""
        if path.exists():
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith("#"):
                        self._patterns.append(line)

    def ignores_directory(self, name: str) -> bool:
        """Check whether a directory name is excluded from scanning.

        Dot-directories are always excluded.
        """
        return name in IGNORED_DIRECTORIES or name.startswith(".")

    def ignores_relative(self, rel_str: str) -> bool:
        """Check a forward-slash path relative to the project root."""
        parts = rel_str.split("/")
        if any(self.ignores_directory(part) for part in parts[:-1]):
            return True

        name = parts[-1]
        if not name:
            return True
        if name in IGNORED_DIRECTORIES:
            return True
        suffix = name.rsplit(".", 1)[1].lower() if "." in name else ""
        if suffix in IGNORED_EXTENSIONS:
            return True

        for pattern in self._patterns:
            if pattern.endswith("/"):
                if fnmatch.fnmatch(rel_str, pattern[:-1] + "/*"):
                    return True
                if any(fnmatch.fnmatch(part, pattern[:-1]) for part in parts[:-1]):
                    return True
            elif fnmatch.fnmatch(rel_str, pattern) or fnmatch.fnmatch(name, pattern):
                return True
        return False

    def should_ignore(self, path: Path, base_path: Path) -> bool:
        """Check if a path should be ignored.

        Args:
            path: Absolute path to check.
            base_path: Project root.

        Returns:
            True if the path should be ignored. Paths outside the base are
            always ignored.
        """
        if path.is_symlink():
            return True

        try:
            rel_path = path.relative_to(base_path)
        except ValueError:
            return True

        rel_str = rel_path.as_posix()
        if rel_str == ".":
            return True
        return self.ignores_relative(rel_str)
