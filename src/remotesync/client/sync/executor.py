"""Applies remote changes to a project and pushes local changes back.

This module provides:
- SyncExecutor: full resync, incremental sync, project and single-file
  download, upload (optionally keeping a server backup copy) and remote delete

Full resync is all-or-nothing: the subtree is downloaded into a temporary
sibling directory and swapped in only when every file arrived. Incremental
sync is resilient: per-file failures are logged, counted and skipped.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from datetime import datetime
from pathlib import Path, PurePosixPath

from remotesync.client.api import APIError, NotFoundError, RemoteFileService
from remotesync.client.mapping import (
    MappingStore,
    PathMapping,
    clear_project_root_cache,
    find_nearest_config,
)
from remotesync.client.sync.change_detector import ChangeDetector, ChangeStatus
from remotesync.client.sync.download import ProjectDownloader, write_file_atomic
from remotesync.client.sync.limiter import CancellationToken, TransferLimiter
from remotesync.client.sync.remote_diff import RemoteDiffCollector, RemoteDiffInfo
from remotesync.client.sync.types import (
    DownloadResult,
    LocalChangesPendingError,
    ProjectNotFoundError,
    ResyncError,
    SyncError,
    SyncOutcome,
    SyncReport,
)
from remotesync.core.hashing import compute_content_hash, is_binary_path
from remotesync.core.paths import normalize_remote, relative_remote, remote_parent
from remotesync.core.timestamps import mtime_datetime, now_ms, utc_now

logger = logging.getLogger(__name__)

# Local time, as shown to the user in backup file names
SERVER_BACKUP_TIMESTAMP = "%d-%m-%Y_%H-%M-%S"


class UploadVerificationError(SyncError):
    """Content read back after an upload differs from what was sent."""


class SyncExecutor:
    """Reconciles projects with the remote file service."""

    def __init__(
        self,
        service: RemoteFileService,
        limiter: TransferLimiter | None = None,
        collector: RemoteDiffCollector | None = None,
        downloader: ProjectDownloader | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            service: Remote file service.
            limiter: Concurrency limiter shared by all remote calls.
            collector: Remote diff collector (built from service if omitted).
            downloader: Bulk downloader (built from service if omitted).
        """
        self._service = service
        self._limiter = limiter or TransferLimiter()
        self._collector = collector or RemoteDiffCollector(service, self._limiter)
        self._downloader = downloader or ProjectDownloader(service, self._limiter)

    # === Project resolution ===

    def resolve_remote_root(self, project_root: Path, remote_root: str | None = None) -> str:
        """Get the remote folder a project mirrors.

        An explicit remote root wins, then the mapping's root remote path,
        then the parent folder of the first mapped file.

        Raises:
            ProjectNotFoundError: If no remote root can be determined.
        """
        if remote_root is None:
            config = MappingStore(project_root).load()
            if config is not None:
                if config.root_remote_path:
                    remote_root = config.root_remote_path
                elif config.mappings:
                    remote_root = remote_parent(config.mappings[0].remote_path)

        if not remote_root or not normalize_remote(remote_root):
            raise ProjectNotFoundError(f"Cannot determine remote path of {project_root}")
        return remote_root

    def download_project(
        self,
        remote_root: str,
        local_root: Path,
        token: CancellationToken | None = None,
    ) -> DownloadResult:
        """Download a remote folder as a new project.

        Raises:
            SyncError: If the target already is a project.
            TransferInProgressError: If another bulk transfer is running.
        """
        local_root = Path(local_root).absolute()
        if MappingStore(local_root).exists():
            raise SyncError(f"{local_root} already is a project; use sync instead")
        result = self._downloader.download(remote_root, local_root, token)
        if result.failed:
            logger.warning(f"{len(result.failed)} file(s) could not be downloaded")
        return result

    def collect_diff(
        self,
        project_root: Path,
        remote_root: str | None = None,
        token: CancellationToken | None = None,
    ) -> RemoteDiffInfo:
        """Compute the remote diff of a project."""
        project_root = Path(project_root).absolute()
        remote_root = self.resolve_remote_root(project_root, remote_root)
        return self._collector.collect(remote_root, MappingStore(project_root), token)

    # === Full resync ===

    def _pending_changes(self, store: MappingStore, detector: ChangeDetector | None) -> list[str]:
        if detector is not None:
            detector.process_pending()
            if not detector.is_initialized:
                detector.initialize()
            return sorted(c.path for c in detector.get_changes())

        scanner = ChangeDetector(store)
        try:
            return sorted(scanner.scan(persist=False).files)
        finally:
            scanner.close()

    def full_resync(
        self,
        project_root: Path,
        remote_root: str | None = None,
        detector: ChangeDetector | None = None,
        force: bool = False,
        token: CancellationToken | None = None,
    ) -> SyncReport:
        """Replace the project with a fresh copy of its remote subtree.

        Args:
            project_root: Project to replace.
            remote_root: Remote folder (resolved from the mapping if omitted).
            detector: Change detector of the project, if one is running.
            force: Discard outstanding local changes.
            token: Cancellation token checked before each file.

        Returns:
            SUCCESS with every downloaded file, or ABORTED if cancelled.

        Raises:
            LocalChangesPendingError: If local changes exist and force is False.
            ResyncError: If the download or the swap failed; the project
                directory is left untouched.
            TransferInProgressError: If another bulk transfer is running.
        """
        root = Path(project_root).absolute()
        remote_root = self.resolve_remote_root(root, remote_root)
        store = MappingStore(root)

        pending = self._pending_changes(store, detector)
        if pending and not force:
            raise LocalChangesPendingError(pending)
        if pending:
            logger.warning(f"Discarding {len(pending)} local change(s) in {root}")

        temp = Path(tempfile.mkdtemp(prefix=f".{root.name}.sync-", dir=root.parent))
        try:
            result = self._downloader.download(remote_root, temp, token)
        except BaseException:
            shutil.rmtree(temp, ignore_errors=True)
            raise

        if result.aborted:
            shutil.rmtree(temp, ignore_errors=True)
            logger.info(f"Full resync of {root} cancelled")
            return SyncReport(outcome=SyncOutcome.ABORTED)

        if not result.complete:
            shutil.rmtree(temp, ignore_errors=True)
            raise ResyncError(
                f"Full resync of {root} failed: {len(result.failed)} file(s) and "
                f"{len(result.listing_failed)} folder(s) could not be fetched"
            )

        try:
            self._swap(root, temp)
        except OSError as e:
            shutil.rmtree(temp, ignore_errors=True)
            raise ResyncError(f"Could not replace {root}: {e}") from e

        config = store.require()
        config.root_local_path = str(root)
        store.save(config)

        clear_project_root_cache()
        if detector is not None:
            detector.reset()
            detector.initialize()

        logger.info(f"Full resync of {root} completed: {len(result.mappings)} file(s)")
        return SyncReport(
            outcome=SyncOutcome.SUCCESS,
            succeeded=[m.local_path for m in result.mappings],
        )

    def _swap(self, root: Path, temp: Path) -> None:
        """Move temp into root's place, restoring root if the move fails."""
        aside = root.parent / f".{root.name}.sync-old-{now_ms()}"
        had_root = root.exists()
        if had_root:
            os.replace(root, aside)
        try:
            os.replace(temp, root)
        except OSError:
            if had_root:
                os.replace(aside, root)
            raise
        if had_root:
            try:
                shutil.rmtree(aside)
            except OSError as e:
                logger.warning(f"Could not remove previous copy {aside}: {e}")

    # === Incremental sync ===

    def incremental_sync(
        self,
        project_root: Path,
        remote_root: str | None = None,
        diff: RemoteDiffInfo | None = None,
        detector: ChangeDetector | None = None,
        preserve_local: bool = False,
        token: CancellationToken | None = None,
    ) -> SyncReport:
        """Fetch new and modified remote files and drop removed ones.

        Args:
            project_root: Project to update.
            remote_root: Remote folder (resolved from the mapping if omitted).
            diff: Precomputed remote diff (collected if omitted).
            detector: Change detector of the project, if one is running.
            preserve_local: Leave locally modified files alone when they
                were also modified remotely.
            token: Cancellation token checked before each file.

        Returns:
            Aggregate report; per-file failures do not stop the batch.
        """
        root = Path(project_root).absolute()
        remote_root = self.resolve_remote_root(root, remote_root)
        store = MappingStore(root)
        if diff is None:
            diff = self._collector.collect(remote_root, store, token)

        report = SyncReport(diff=diff)
        norm_root = normalize_remote(remote_root)
        config = store.require()
        by_remote: dict[str, PathMapping] = {}
        for entry in config.mappings:
            by_remote.setdefault(normalize_remote(entry.remote_path), entry)

        def to_relative(norm: str) -> str | None:
            entry = by_remote.get(norm)
            if entry is not None:
                return entry.local_path
            return relative_remote(norm, norm_root) or None

        conflicts: set[str] = set()
        if preserve_local and detector is not None:
            detector.process_pending()
            modified = [
                by_local.remote_path
                for change in detector.get_changes()
                if change.status == ChangeStatus.MODIFIED
                and (by_local := config.get(change.path)) is not None
            ]
            conflicts = set(diff.conflicts(modified))

        to_fetch = sorted(set(diff.new_remote) | set(diff.modified_remote))
        for norm in to_fetch:
            if norm in conflicts:
                logger.info(f"Keeping local version of {norm}")
                report.skipped.append(to_relative(norm) or norm)
        to_fetch = [n for n in to_fetch if n not in conflicts]

        def fetch(norm: str) -> PathMapping:
            relative = to_relative(norm)
            if relative is None:
                raise SyncError(f"{norm} is outside {remote_root}")
            meta = diff.remote_meta.get(norm)
            previous = by_remote.get(norm)
            remote_path = previous.remote_path if previous else (meta.remote_path if meta else norm)
            content = self._downloader.read(remote_path)
            path = store.file_path(relative)
            write_file_atomic(path, content)
            store.write_backup(relative, content)
            return PathMapping(
                local_path=relative,
                remote_path=remote_path,
                content_hash=compute_content_hash(path, content),
                server_modified=(meta.modified if meta and meta.modified else utc_now()),
                local_modified_at_download=utc_now(),
                is_binary=is_binary_path(relative),
            )

        fetched: list[PathMapping] = []
        for unit in self._limiter.map(fetch, to_fetch, token):
            label = to_relative(unit.item) or unit.item
            if unit.skipped:
                report.outcome = SyncOutcome.ABORTED
            elif unit.error is not None:
                logger.warning(f"Failed to fetch {label}: {unit.error}")
                report.failed[label] = str(unit.error)
            elif unit.value is not None:
                fetched.append(unit.value)
                report.succeeded.append(unit.value.local_path)

        removed: list[str] = []
        for norm in diff.removed_remote:
            if token is not None and token.cancelled:
                report.outcome = SyncOutcome.ABORTED
                break
            relative = to_relative(norm)
            if relative is None:
                continue
            try:
                store.file_path(relative).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove {relative}: {e}")
                report.failed[relative] = str(e)
                continue
            removed.append(relative)
            report.succeeded.append(relative)

        if fetched or removed:
            with store.lock:
                config = store.require()
                for entry in fetched:
                    config.put(entry)
                for relative in removed:
                    config.discard(relative)
                if not config.root_remote_path:
                    config.root_remote_path = remote_root
                store.save(config, backup=True)

        if detector is not None:
            detector.process_pending()
            detector.mark_synchronized([m.local_path for m in fetched] + removed)

        if token is not None and token.cancelled:
            report.outcome = SyncOutcome.ABORTED
        logger.info(f"Incremental sync of {root}: {report.summary()}")
        return report

    # === Upload / delete ===

    def _locate(self, local_file: Path) -> tuple[MappingStore, str, str]:
        path = Path(local_file).absolute()
        root = find_nearest_config(path)
        if root is None:
            raise ProjectNotFoundError(f"{path} is not inside a project")
        store = MappingStore(root)
        relative = store.relative_path(path)
        remote_path = store.resolve_remote_path(path)
        if not relative or remote_path is None:
            raise ProjectNotFoundError(f"Cannot resolve remote path of {path}")
        return store, relative, remote_path

    def _remote_modified(self, remote_path: str) -> datetime | None:
        """Look up the current remote modification time of one file."""
        norm = normalize_remote(remote_path)
        try:
            files = self._limiter.call(lambda: self._service.list_files(remote_parent(remote_path)))
        except APIError as e:
            logger.debug(f"Could not refresh timestamp of {remote_path}: {e}")
            return None
        for remote in files:
            if normalize_remote(remote.path) == norm:
                return remote.modified
        return None

    def upload_file(
        self,
        local_file: Path,
        detector: ChangeDetector | None = None,
        verify: bool = True,
    ) -> PathMapping:
        """Upload one local file and record it as the new baseline.

        Args:
            local_file: File inside a project.
            detector: Change detector of the project, if one is running.
            verify: Read the file back and compare it with what was sent.

        Returns:
            The updated mapping entry.

        Raises:
            ProjectNotFoundError: If the file is not inside a project.
            UploadVerificationError: If the read-back content differs.
            APIError: If the upload itself failed.
            OSError: If the local file cannot be read.
        """
        store, relative, remote_path = self._locate(local_file)
        path = store.file_path(relative)
        content = path.read_bytes()

        self._limiter.call(lambda: self._service.save_file(remote_path, content))
        if verify:
            echoed = self._downloader.read(remote_path)
            if echoed != content:
                raise UploadVerificationError(
                    f"Upload of {relative} could not be verified: "
                    f"sent {len(content)} bytes, read back {len(echoed)}"
                )

        entry = store.upsert(
            relative,
            remote_path,
            content,
            server_modified=self._remote_modified(remote_path) or utc_now(),
            local_modified_at_download=mtime_datetime(path.stat().st_mtime),
        )
        if detector is not None:
            detector.mark_synchronized([relative])
        logger.info(f"Uploaded {relative} -> {remote_path}")
        return entry

    def download_file(self, local_file: Path, detector: ChangeDetector | None = None) -> PathMapping:
        """Fetch one remote file into its project and record the new baseline.

        Args:
            local_file: Target file inside a project; it need not exist yet.
            detector: Change detector of the project, if one is running.

        Returns:
            The updated mapping entry.

        Raises:
            ProjectNotFoundError: If the file is not inside a project.
            APIError: If the remote read failed.
        """
        store, relative, remote_path = self._locate(local_file)
        content = self._downloader.read(remote_path)
        path = store.file_path(relative)
        write_file_atomic(path, content)

        entry = store.upsert(
            relative,
            remote_path,
            content,
            server_modified=self._remote_modified(remote_path) or utc_now(),
            local_modified_at_download=mtime_datetime(path.stat().st_mtime),
        )
        if detector is not None:
            detector.mark_synchronized([relative])
        logger.info(f"Downloaded {remote_path} -> {relative}")
        return entry

    def upload_with_server_backup(
        self,
        local_file: Path,
        detector: ChangeDetector | None = None,
        verify: bool = True,
    ) -> tuple[PathMapping, PathMapping]:
        """Keep a copy of the current server version, then upload a file.

        The server version is saved next to the file as
        ``<name>_BKP_<timestamp><ext>``, both locally and on the server,
        before the local file is uploaded. A failed run removes the local
        backup copy.

        Returns:
            Mapping entries of the backup copy and of the uploaded file.

        Raises:
            SyncError: If the file does not exist on the server.
            UploadVerificationError: If an upload could not be verified.
            APIError: If a remote call failed.
        """
        store, relative, remote_path = self._locate(local_file)
        path = store.file_path(relative)
        if not path.is_file():
            raise SyncError(f"{path} is not a file")

        try:
            current = self._downloader.read(remote_path)
        except NotFoundError as e:
            raise SyncError(f"{remote_path} does not exist on the server; nothing to back up") from e

        stamp = datetime.now().strftime(SERVER_BACKUP_TIMESTAMP)
        backup = path.with_name(f"{path.stem}_BKP_{stamp}{path.suffix}")
        write_file_atomic(backup, current)
        try:
            backup_entry = self.upload_file(backup, detector, verify=verify)
            entry = self.upload_file(path, detector, verify=verify)
        except BaseException:
            backup.unlink(missing_ok=True)
            store.remove([PurePosixPath(relative).with_name(backup.name).as_posix()])
            raise
        logger.info(f"Uploaded {relative} after saving the server copy as {backup.name}")
        return backup_entry, entry

    def upload_changes(
        self,
        project_root: Path,
        detector: ChangeDetector,
        propagate_deletes: bool = False,
        verify: bool = True,
        token: CancellationToken | None = None,
    ) -> SyncReport:
        """Upload every locally modified or added file of a project.

        Args:
            project_root: Project to upload from.
            detector: Change detector of the project.
            propagate_deletes: Also delete remotely the files deleted locally.
            verify: Read every upload back.
            token: Cancellation token checked before each file.

        Returns:
            Aggregate report.
        """
        root = Path(project_root).absolute()
        detector.process_pending()
        if not detector.is_initialized:
            detector.initialize()

        report = SyncReport()
        for change in sorted(detector.get_changes(), key=lambda c: c.path):
            if token is not None and token.cancelled:
                report.outcome = SyncOutcome.ABORTED
                break
            path = root.joinpath(*change.path.split("/"))
            try:
                if change.status == ChangeStatus.DELETED:
                    if not propagate_deletes:
                        report.skipped.append(change.path)
                        continue
                    self.delete_remote(path, detector)
                else:
                    self.upload_file(path, detector, verify=verify)
            except (APIError, SyncError, OSError) as e:
                logger.warning(f"Failed to upload {change.path}: {e}")
                report.failed[change.path] = str(e)
                continue
            report.succeeded.append(change.path)

        logger.info(f"Upload of {root}: {report.summary()}")
        return report

    def delete_remote(self, local_file: Path, detector: ChangeDetector | None = None) -> None:
        """Delete the remote counterpart of a local file and drop its mapping.

        Raises:
            ProjectNotFoundError: If the file is not inside a project.
            APIError: If the remote delete failed.
        """
        store, relative, remote_path = self._locate(local_file)
        self._limiter.call(lambda: self._service.delete_file(remote_path))
        store.remove([relative])
        if detector is not None:
            detector.mark_synchronized([relative])
        logger.info(f"Deleted remote file {remote_path}")
