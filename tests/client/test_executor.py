"""Tests for the sync executor."""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from remotesync.client.api import APIError
from remotesync.client.mapping import MappingStore, PathMapping
from remotesync.client.sync.change_detector import ChangeDetector, ChangeStatus
from remotesync.client.sync.executor import SyncExecutor, UploadVerificationError
from remotesync.client.sync.limiter import CancellationToken
from remotesync.client.sync.types import (
    LocalChangesPendingError,
    ProjectNotFoundError,
    ResyncError,
    SyncError,
    SyncOutcome,
)
from remotesync.core.hashing import hash_bytes

# Modification time the fake service gives files by default
BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


def snapshot(root: Path) -> dict[str, bytes]:
    """Read every file below root."""
    return {p.relative_to(root).as_posix(): p.read_bytes() for p in root.rglob("*") if p.is_file()}


def detector_for(project: Path) -> ChangeDetector:
    detector = ChangeDetector(MappingStore(project), file_debounce_s=0.01, notify_debounce_s=0.01)
    detector.initialize()
    return detector


class TestResolveRemoteRoot:
    """Tests for remote root resolution."""

    def test_explicit_wins(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should prefer an explicit remote root."""
        assert SyncExecutor(remote).resolve_remote_root(project, "/OTHER") == "/OTHER"

    def test_from_mapping(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should use the mapping's root remote path."""
        assert SyncExecutor(remote).resolve_remote_root(project) == "/WEB/site"

    def test_from_first_mapping(self, remote, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
        """Should fall back to the parent folder of the first mapped file."""
        MappingStore(tmp_path).create("", [PathMapping("a.txt", "/WEB/docs/a.txt")])

        assert SyncExecutor(remote).resolve_remote_root(tmp_path) == "/WEB/docs"

    def test_unresolvable(self, remote, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
        """Should raise when nothing identifies the remote folder."""
        with pytest.raises(ProjectNotFoundError):
            SyncExecutor(remote).resolve_remote_root(tmp_path)


class TestDownloadProject:
    """Tests for downloading a remote folder as a project."""

    def test_refuses_existing_project(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should not download over an existing project."""
        with pytest.raises(SyncError):
            SyncExecutor(remote).download_project("/WEB/site", project)

    def test_creates_project(self, remote, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
        """Should create a project with every remote file."""
        result = SyncExecutor(remote).download_project("/WEB/site", tmp_path / "copy")

        assert result.complete
        assert MappingStore(tmp_path / "copy").exists()


class TestFullResync:
    """Tests for the all-or-nothing full resync."""

    def test_replaces_tree(self, remote, project: Path, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
        """Should swap in a fresh copy and leave no temporary directories."""
        remote.put("/WEB/site/index.html", "<html>new home</html>", BASE_TIME + timedelta(minutes=1))
        remote.put("/WEB/site/about.html", "<html>about</html>")

        report = SyncExecutor(remote).full_resync(project)

        assert report.outcome == SyncOutcome.SUCCESS
        assert (project / "index.html").read_text() == "<html>new home</html>"
        assert (project / "about.html").exists()
        assert sorted(p.name for p in tmp_path.iterdir()) == ["site"]
        config = MappingStore(project).require()
        assert config.root_local_path == str(project.absolute())
        assert len(config.mappings) == 4

    def test_blocked_by_local_changes(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should refuse to discard local edits and touch nothing."""
        (project / "index.html").write_text("<html>local edit</html>")
        before = snapshot(project)
        reads = remote.count("read_file")

        with pytest.raises(LocalChangesPendingError) as exc_info:
            SyncExecutor(remote).full_resync(project)

        assert exc_info.value.paths == ["index.html"]
        assert snapshot(project) == before
        assert remote.count("read_file") == reads

    def test_blocked_by_added_file(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should also refuse when unsynced new files exist."""
        (project / "notes.txt").write_text("mine")

        with pytest.raises(LocalChangesPendingError):
            SyncExecutor(remote).full_resync(project)

    def test_force_discards_local_changes(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should overwrite local edits when forced."""
        (project / "index.html").write_text("<html>local edit</html>")

        SyncExecutor(remote).full_resync(project, force=True)

        assert (project / "index.html").read_text() == "<html>home</html>"

    def test_failure_leaves_tree_untouched(self, remote, project: Path, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
        """Should keep the project byte-identical when a file fails."""
        before = snapshot(project)
        remote.put("/WEB/site/index.html", "<html>new home</html>", BASE_TIME + timedelta(minutes=1))
        remote.fail_reads.add("WEB/site/css/style.css")

        with pytest.raises(ResyncError):
            SyncExecutor(remote).full_resync(project)

        assert snapshot(project) == before
        assert sorted(p.name for p in tmp_path.iterdir()) == ["site"]

    def test_listing_failure_leaves_tree_untouched(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should treat a failed folder listing as a failed resync."""
        before = snapshot(project)
        remote.fail_listings.add("WEB/site/img")

        with pytest.raises(ResyncError):
            SyncExecutor(remote).full_resync(project)

        assert snapshot(project) == before

    def test_swap_failure_restores(self, remote, project: Path, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
        """Should put the original tree back when moving the new one in fails."""
        before = snapshot(project)
        real_replace = os.replace

        def flaky_replace(src, dst):  # type: ignore[no-untyped-def]
            if Path(dst) == project and ".sync-old-" not in Path(src).name:
                raise OSError("disk full")
            return real_replace(src, dst)

        with patch("remotesync.client.sync.executor.os.replace", side_effect=flaky_replace):
            with pytest.raises(ResyncError):
                SyncExecutor(remote).full_resync(project)

        assert snapshot(project) == before
        assert sorted(p.name for p in tmp_path.iterdir()) == ["site"]

    def test_cancelled(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should report ABORTED and leave the project alone."""
        before = snapshot(project)
        token = CancellationToken()
        token.cancel()

        report = SyncExecutor(remote).full_resync(project, token=token)

        assert report.outcome == SyncOutcome.ABORTED
        assert snapshot(project) == before

    def test_resets_detector(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should start change tracking afresh after the swap."""
        detector = detector_for(project)

        SyncExecutor(remote).full_resync(project, detector=detector)

        assert detector.is_initialized
        assert detector.get_changes() == []
        detector.close()


class TestIncrementalSync:
    """Tests for incremental sync."""

    def test_applies_remote_changes(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should fetch new and modified files and drop removed ones."""
        remote.put("/WEB/site/about.html", "<html>about</html>")
        remote.put("/WEB/site/index.html", "<html>new home</html>", BASE_TIME + timedelta(minutes=1))
        del remote.files["WEB/site/css/style.css"]

        report = SyncExecutor(remote).incremental_sync(project)

        assert report.ok
        assert sorted(report.succeeded) == ["about.html", "css/style.css", "index.html"]
        assert (project / "index.html").read_text() == "<html>new home</html>"
        assert (project / "about.html").read_text() == "<html>about</html>"
        assert not (project / "css" / "style.css").exists()
        store = MappingStore(project)
        assert store.get("css/style.css") is None
        entry = store.get("index.html")
        assert entry is not None
        assert entry.server_modified == BASE_TIME + timedelta(minutes=1)
        assert entry.content_hash == hash_bytes(b"<html>new home</html>")
        assert store.original_content("index.html") == b"<html>new home</html>"
        assert list((store.metadata_dir / "backup-mapping").glob("*.json"))

    def test_converges(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should leave nothing to do for a second diff."""
        remote.put("/WEB/site/about.html", "<html>about</html>")
        remote.touch("/WEB/site/index.html", BASE_TIME + timedelta(minutes=1))
        executor = SyncExecutor(remote)

        executor.incremental_sync(project)

        assert executor.collect_diff(project).is_empty

    def test_per_file_failure_isolated(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should apply the other files when one fetch fails."""
        remote.put("/WEB/site/a.html", "a")
        remote.put("/WEB/site/b.html", "b")
        remote.fail_reads.add("WEB/site/a.html")

        report = SyncExecutor(remote).incremental_sync(project)

        assert list(report.failed) == ["a.html"]
        assert report.succeeded == ["b.html"]
        assert MappingStore(project).get("a.html") is None
        assert MappingStore(project).get("b.html") is not None

    def test_preserve_local_skips_conflicts(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should keep locally modified files that also changed remotely."""
        (project / "index.html").write_text("<html>local edit</html>")
        remote.put("/WEB/site/index.html", "<html>remote edit</html>", BASE_TIME + timedelta(minutes=1))
        detector = detector_for(project)

        report = SyncExecutor(remote).incremental_sync(project, detector=detector, preserve_local=True)

        assert report.skipped == ["index.html"]
        assert (project / "index.html").read_text() == "<html>local edit</html>"
        assert detector.get_change("index.html").status == ChangeStatus.MODIFIED  # type: ignore[union-attr]
        detector.close()

    def test_overwrites_without_preserve_local(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should take the remote version by default."""
        (project / "index.html").write_text("<html>local edit</html>")
        remote.put("/WEB/site/index.html", "<html>remote edit</html>", BASE_TIME + timedelta(minutes=1))
        detector = detector_for(project)

        SyncExecutor(remote).incremental_sync(project, detector=detector)

        assert (project / "index.html").read_text() == "<html>remote edit</html>"
        assert detector.get_change("index.html") is None
        detector.close()

    def test_nothing_to_do(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should not rewrite the mapping when nothing changed."""
        report = SyncExecutor(remote).incremental_sync(project)

        assert report.ok
        assert report.succeeded == []
        assert not (MappingStore(project).metadata_dir / "backup-mapping").exists()


class TestUpload:
    """Tests for uploads and remote deletes."""

    def test_upload_file(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should upload, verify and record the new baseline."""
        (project / "css" / "style.css").write_text("body { color: blue; }")

        entry = SyncExecutor(remote).upload_file(project / "css" / "style.css")

        assert remote.content("/WEB/site/css/style.css") == b"body { color: blue; }"
        assert entry.content_hash == hash_bytes(b"body { color: blue; }")
        assert entry.server_modified == remote.now
        assert MappingStore(project).original_content("css/style.css") == b"body { color: blue; }"

    def test_upload_new_file(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should derive the remote path of an unmapped file from the project root."""
        (project / "docs").mkdir()
        (project / "docs" / "new.md").write_text("# new")

        entry = SyncExecutor(remote).upload_file(project / "docs" / "new.md")

        assert entry.remote_path == "/WEB/site/docs/new.md"
        assert remote.content("WEB/site/docs/new.md") == b"# new"

    def test_upload_verification_failure(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should raise and keep the old baseline when the read-back differs."""
        (project / "index.html").write_text("<html>edit</html>")
        remote.save_transform = lambda content: content + b"!"
        before = MappingStore(project).get("index.html")

        with pytest.raises(UploadVerificationError):
            SyncExecutor(remote).upload_file(project / "index.html")

        assert MappingStore(project).get("index.html") == before

    def test_upload_outside_project(self, remote, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
        """Should refuse files outside any project."""
        path = tmp_path / "loose.txt"
        path.write_text("x")

        with pytest.raises(ProjectNotFoundError):
            SyncExecutor(remote).upload_file(path)

    def test_upload_changes(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should upload modified and added files and keep deletions local."""
        (project / "css" / "style.css").write_text("body { color: blue; }")
        (project / "new.txt").write_text("new")
        (project / "index.html").unlink()
        detector = detector_for(project)

        report = SyncExecutor(remote).upload_changes(project, detector)

        assert sorted(report.succeeded) == ["css/style.css", "new.txt"]
        assert report.skipped == ["index.html"]
        assert remote.content("WEB/site/new.txt") == b"new"
        assert "WEB/site/index.html" in remote.files
        assert [c.path for c in detector.get_changes()] == ["index.html"]
        detector.close()

    def test_upload_changes_propagates_deletes(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should delete remotely what was deleted locally when asked."""
        (project / "index.html").unlink()
        detector = detector_for(project)

        report = SyncExecutor(remote).upload_changes(project, detector, propagate_deletes=True)

        assert report.succeeded == ["index.html"]
        assert "WEB/site/index.html" not in remote.files
        assert MappingStore(project).get("index.html") is None
        detector.close()


class TestSingleFileTransfers:
    """Tests for single-file download and upload with a server backup copy."""

    def test_download_file(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should replace the local copy and record the remote baseline."""
        remote.put("/WEB/site/index.html", "<html>remote edit</html>", BASE_TIME + timedelta(minutes=1))
        (project / "index.html").write_text("<html>local edit</html>")
        detector = detector_for(project)

        entry = SyncExecutor(remote).download_file(project / "index.html", detector)

        assert (project / "index.html").read_text() == "<html>remote edit</html>"
        assert entry.server_modified == BASE_TIME + timedelta(minutes=1)
        assert entry.local_modified_at_download is not None
        assert entry.content_hash == hash_bytes(b"<html>remote edit</html>")
        assert MappingStore(project).original_content("index.html") == b"<html>remote edit</html>"
        assert detector.get_change("index.html") is None
        detector.close()

    def test_download_new_file(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should create missing folders and a mapping entry."""
        remote.put("/WEB/site/docs/new.md", "# new")

        SyncExecutor(remote).download_file(project / "docs" / "new.md")

        assert (project / "docs" / "new.md").read_text() == "# new"
        assert MappingStore(project).get("docs/new.md").remote_path == "/WEB/site/docs/new.md"  # type: ignore[union-attr]

    def test_download_missing_remote_file(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should raise and leave the mapping alone when the server lacks the file."""
        with pytest.raises(APIError):
            SyncExecutor(remote).download_file(project / "missing.txt")

        assert MappingStore(project).get("missing.txt") is None
        assert not (project / "missing.txt").exists()

    def test_upload_with_server_backup(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should save the server version next to the file before uploading."""
        (project / "index.html").write_text("<html>local edit</html>")
        detector = detector_for(project)

        backup, entry = SyncExecutor(remote).upload_with_server_backup(project / "index.html", detector)

        backups = list(project.glob("index_BKP_*.html"))
        assert [p.name for p in backups] == [backup.local_path]
        assert backups[0].read_text() == "<html>home</html>"
        assert remote.content(f"WEB/site/{backup.local_path}") == b"<html>home</html>"
        assert remote.content("WEB/site/index.html") == b"<html>local edit</html>"
        assert entry.local_path == "index.html"
        assert MappingStore(project).get(backup.local_path) is not None
        assert detector.get_changes() == []
        detector.close()

    def test_server_backup_requires_remote_file(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should refuse when there is no server version to keep."""
        (project / "notes.txt").write_text("notes")

        with pytest.raises(SyncError):
            SyncExecutor(remote).upload_with_server_backup(project / "notes.txt")

        assert list(project.glob("notes_BKP_*")) == []
        assert "WEB/site/notes.txt" not in remote.files

    def test_server_backup_cleaned_up_on_failure(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should remove the local backup copy when the upload fails."""
        (project / "index.html").write_text("<html>local edit</html>")
        remote.fail_saves.add("WEB/site/index.html")

        with pytest.raises(APIError):
            SyncExecutor(remote).upload_with_server_backup(project / "index.html")

        assert list(project.glob("index_BKP_*")) == []
        config = MappingStore(project).require()
        assert [m.local_path for m in config.mappings if "_BKP_" in m.local_path] == []
        assert remote.content("WEB/site/index.html") == b"<html>home</html>"
