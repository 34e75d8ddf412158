"""Tests for the remote diff collector."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

from remotesync.client.mapping import MappingStore, PathMapping
from remotesync.client.sync.remote_diff import RemoteDiffCollector, RemoteDiffInfo

# Modification time the fake service gives files by default
BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


def collect(remote, project: Path, **kwargs) -> RemoteDiffInfo:  # type: ignore[no-untyped-def]
    """Collect the diff of the /WEB/site project."""
    return RemoteDiffCollector(remote, **kwargs).collect("/WEB/site", MappingStore(project))


class TestPartition:
    """Tests for the new/modified/removed partition."""

    def test_up_to_date_project_is_empty(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should report nothing right after a download."""
        info = collect(remote, project)

        assert info.is_empty
        assert info.total_remote_files == 3

    def test_partition(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should sort remote changes into three disjoint sets."""
        remote.put("/WEB/site/about.html", "<html>about</html>")
        remote.touch("/WEB/site/index.html", BASE_TIME + timedelta(seconds=30))
        del remote.files["WEB/site/css/style.css"]

        info = collect(remote, project)

        assert info.new_remote == ["WEB/site/about.html"]
        assert info.modified_remote == ["WEB/site/index.html"]
        assert info.removed_remote == ["WEB/site/css/style.css"]
        assert info.remote_meta["WEB/site/about.html"].remote_path == "/WEB/site/about.html"
        sets = [set(info.new_remote), set(info.modified_remote), set(info.removed_remote)]
        assert not (sets[0] & sets[1] or sets[0] & sets[2] or sets[1] & sets[2])

    def test_stale_mapping_pruned(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should drop entries missing both remotely and locally instead of reporting them."""
        del remote.files["WEB/site/css/style.css"]
        (project / "css" / "style.css").unlink()

        info = collect(remote, project)

        assert info.removed_remote == []
        assert info.pruned == ["css/style.css"]
        assert MappingStore(project).get("css/style.css") is None

    def test_idempotent(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should give the same result when run twice without changes."""
        remote.put("/WEB/site/about.html", "<html>about</html>")
        del remote.files["WEB/site/css/style.css"]
        (project / "css" / "style.css").unlink()

        first = collect(remote, project)
        second = collect(remote, project)

        assert (first.new_remote, first.modified_remote, first.removed_remote) == (
            second.new_remote,
            second.modified_remote,
            second.removed_remote,
        )
        assert second.pruned == []


class TestTolerance:
    """Tests for the timestamp tolerance."""

    def test_within_tolerance_not_modified(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should ignore a difference of exactly 2000 ms."""
        remote.touch("/WEB/site/index.html", BASE_TIME + timedelta(milliseconds=2000))

        assert collect(remote, project).modified_remote == []

    def test_beyond_tolerance_modified(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should flag a difference of 2001 ms."""
        remote.touch("/WEB/site/index.html", BASE_TIME + timedelta(milliseconds=2001))

        assert collect(remote, project).modified_remote == ["WEB/site/index.html"]

    def test_remote_older_only_logged(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should not flag files whose remote time went backwards."""
        remote.touch("/WEB/site/index.html", BASE_TIME - timedelta(minutes=5))

        assert collect(remote, project).modified_remote == []

    def test_remote_older_opt_in(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should flag server rollbacks when asked to."""
        remote.touch("/WEB/site/index.html", BASE_TIME - timedelta(minutes=5))

        assert collect(remote, project, flag_remote_older=True).modified_remote == ["WEB/site/index.html"]

    def test_missing_baseline_not_classified(self, remote, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
        """Should neither flag nor report new a mapped file without baseline."""
        root = tmp_path / "legacy"
        root.mkdir()
        (root / "index.html").write_text("x")
        MappingStore(root).create("/WEB/site", [PathMapping("index.html", "/WEB/site/index.html")])

        info = RemoteDiffCollector(remote).collect("/WEB/site", MappingStore(root))

        assert "WEB/site/index.html" not in info.modified_remote
        assert "WEB/site/index.html" not in info.new_remote

    def test_falls_back_to_local_download_time(self, remote, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
        """Should use localModifiedAtDownload when serverModified is missing."""
        root = tmp_path / "legacy"
        root.mkdir()
        (root / "index.html").write_text("x")
        entry = PathMapping(
            "index.html",
            "/WEB/site/index.html",
            local_modified_at_download=BASE_TIME - timedelta(seconds=10),
        )
        MappingStore(root).create("/WEB/site", [entry])

        info = RemoteDiffCollector(remote).collect("/WEB/site", MappingStore(root))

        assert info.modified_remote == ["WEB/site/index.html"]


class TestRobustness:
    """Tests for normalization and partial listings."""

    def test_path_spelling_variants_match(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should match mapping entries despite slash variants."""
        store = MappingStore(project)
        config = store.require()
        for entry in config.mappings:
            entry.remote_path = "//" + entry.remote_path.lstrip("/").replace("/", "//")
        store.save(config)

        assert collect(remote, project).is_empty

    def test_failed_listing_not_removed(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should not treat files under an unlisted folder as removed."""
        remote.fail_listings.add("WEB/site/css")

        info = collect(remote, project)

        assert info.removed_remote == []
        assert info.incomplete == ["/WEB/site/css"]
        assert MappingStore(project).get("css/style.css") is not None

    def test_conflicts(self, remote, project: Path) -> None:  # type: ignore[no-untyped-def]
        """Should intersect remote modifications with local ones."""
        remote.touch("/WEB/site/index.html", BASE_TIME + timedelta(seconds=30))
        info = collect(remote, project)

        assert info.conflicts(["/WEB/site/index.html", "/WEB/site/css/style.css"]) == ["WEB/site/index.html"]
