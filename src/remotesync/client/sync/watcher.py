"""File system watcher feeding the change detector.

This module provides:
- ProjectEventHandler: forwards watchdog file events to a ChangeDetector
- ProjectWatcher: watches one project root with a watchdog Observer

Debouncing happens in the detector; the handler only filters events.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from remotesync.client.sync.ignore import IgnorePatterns

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

    from remotesync.client.sync.change_detector import ChangeDetector

logger = logging.getLogger(__name__)


def _event_path(raw: str | bytes) -> Path:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return Path(raw)


class ProjectEventHandler(FileSystemEventHandler):
    """Forwards file events of one project to its change detector."""

    def __init__(
        self,
        detector: ChangeDetector,
        ignore_patterns: IgnorePatterns | None = None,
    ) -> None:
        """Initialize the handler.

        Args:
            detector: Detector receiving the events.
            ignore_patterns: Patterns for files to ignore.
        """
        super().__init__()
        self._detector = detector
        self._ignore = ignore_patterns or IgnorePatterns()

    def _forward(self, path: Path) -> None:
        if self._ignore.should_ignore(path, self._detector.root):
            return
        logger.debug(f"File event: {path}")
        self._detector.handle_file_event(path)

    def _handle_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return

        if isinstance(event, FileMovedEvent):
            # A move is a delete of the source plus a create of the target
            self._forward(_event_path(event.src_path))
            self._forward(_event_path(event.dest_path))
        elif isinstance(event, FileCreatedEvent | FileModifiedEvent | FileDeletedEvent):
            self._forward(_event_path(event.src_path))

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle created event."""
        self._handle_event(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle modified event."""
        self._handle_event(event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        """Handle deleted event."""
        self._handle_event(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        """Handle moved event."""
        self._handle_event(event)


class ProjectWatcher:
    """Watches a project directory and keeps its change state current."""

    def __init__(
        self,
        detector: ChangeDetector,
        ignore_patterns: list[str] | None = None,
    ) -> None:
        """Initialize the watcher.

        Args:
            detector: Detector of the watched project.
            ignore_patterns: Additional patterns to ignore.

        Raises:
            ValueError: If the project root is not a directory.
        """
        self._detector = detector
        self._watch_path = detector.root
        if not self._watch_path.is_dir():
            raise ValueError(f"Watch path must be a directory: {self._watch_path}")

        self._handler = ProjectEventHandler(detector, IgnorePatterns(ignore_patterns))
        self._observer: BaseObserver = Observer()
        self._running = False

    @property
    def watch_path(self) -> Path:
        """Get the watched directory path."""
        return self._watch_path

    @property
    def is_running(self) -> bool:
        """Check if the watcher is running."""
        return self._running

    def start(self) -> None:
        """Start watching for changes."""
        if self._running:
            return

        self._observer.schedule(self._handler, str(self._watch_path), recursive=True)
        self._observer.start()
        self._running = True
        logger.info(f"Watching {self._watch_path}")

    def stop(self) -> None:
        """Stop watching for changes."""
        if not self._running:
            return

        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._running = False

    def __enter__(self) -> ProjectWatcher:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.stop()
