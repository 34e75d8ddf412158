"""Registry of open projects.

One MappingStore and one ChangeDetector exist per project root; callers get
them through a ProjectHandle from the registry instead of constructing their
own, so writers of a project share a single lock.
"""

from __future__ import annotations

import logging
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path

from remotesync.client.mapping import MappingStore, clear_project_root_cache, resolve_project_root
from remotesync.client.sync.change_detector import ChangeDetector, HashCache
from remotesync.client.sync.ignore import IgnorePatterns
from remotesync.client.sync.watcher import ProjectWatcher

logger = logging.getLogger(__name__)


@dataclass
class ProjectHandle:
    """Per-project services."""

    root: Path
    store: MappingStore
    detector: ChangeDetector
    watcher: ProjectWatcher | None = None

    def start_watching(self) -> None:
        """Start forwarding filesystem events to the detector."""
        if self.watcher is None:
            self.watcher = ProjectWatcher(self.detector)
        if not self.watcher.is_running:
            self.watcher.start()

    def close(self) -> None:
        """Stop watching and release the detector."""
        if self.watcher is not None:
            self.watcher.stop()
            self.watcher = None
        self.detector.close()


class ProjectRegistry:
    """Opens and caches project handles keyed by project root."""

    def __init__(self, ignore: IgnorePatterns | None = None) -> None:
        self._ignore = ignore
        self._cache = HashCache()
        self._handles: dict[Path, ProjectHandle] = {}
        self._lock = threading.Lock()

    def open(self, path: Path, initialize: bool = True) -> ProjectHandle | None:
        """Get the handle of the project containing a path.

        Args:
            path: Project root or any file or folder inside it.
            initialize: Run the detector's initial scan.

        Returns:
            The handle, or None if the path is not inside a project.
        """
        root = resolve_project_root(Path(path))
        if root is None:
            return None

        with self._lock:
            handle = self._handles.get(root)
            if handle is None:
                store = MappingStore(root)
                detector = ChangeDetector(store, self._ignore, hash_cache=self._cache)
                handle = ProjectHandle(root=root, store=store, detector=detector)
                self._handles[root] = handle
                logger.debug(f"Opened project {root}")

        if initialize:
            handle.detector.initialize()
        return handle

    def get(self, root: Path) -> ProjectHandle | None:
        """Get an already open handle."""
        with self._lock:
            return self._handles.get(Path(root).absolute())

    def roots(self) -> list[Path]:
        """Get the roots of all open projects."""
        with self._lock:
            return list(self._handles)

    def close(self, root: Path) -> None:
        """Close one project."""
        with self._lock:
            handle = self._handles.pop(Path(root).absolute(), None)
        if handle is not None:
            handle.close()
            logger.debug(f"Closed project {root}")

    def close_all(self) -> None:
        """Close every open project."""
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            handle.close()

    def delete_project(self, root: Path) -> None:
        """Close a project and remove its directory tree.

        This is the only way a project's mapping document is deleted.

        Raises:
            ValueError: If root is not a project root.
            OSError: If the tree cannot be removed.
        """
        root = Path(root).absolute()
        if not MappingStore(root).exists():
            raise ValueError(f"Not a project root: {root}")
        self.close(root)
        shutil.rmtree(root)
        clear_project_root_cache()
        logger.info(f"Deleted project {root}")

    def __enter__(self) -> ProjectRegistry:
        return self

    def __exit__(self, *args: object) -> None:
        self.close_all()
