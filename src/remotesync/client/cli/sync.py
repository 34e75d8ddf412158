"""Sync commands for the remotesync CLI.

Commands:
- diff: Show what changed remotely since the last sync
- sync: Bring a project up to date with the server
- verify: Check a project's integrity against the server
- upload: Upload local files or all local changes
- watch: Track local changes until interrupted
"""

from __future__ import annotations

import sys
import time
from pathlib import Path

import click

from remotesync.client.api import APIError
from remotesync.client.cli.config import create_service, get_max_concurrency
from remotesync.client.cli.project import STATUS_SYMBOLS, open_project
from remotesync.client.mapping import MappingError
from remotesync.client.project import ProjectRegistry
from remotesync.client.sync import (
    LocalChangesPendingError,
    SyncError,
    SyncExecutor,
    SyncOutcome,
    SyncReport,
    TieredVerifier,
    TransferInProgressError,
    TransferLimiter,
    VerificationStatus,
)

SYNC_ERRORS = (SyncError, TransferInProgressError, MappingError, APIError)


def _print_report(report: SyncReport) -> None:
    for relative in report.skipped:
        click.echo(f"  - {relative} (skipped)")
    for relative, error in sorted(report.failed.items()):
        click.echo(f"  ! {relative}: {error}", err=True)
    click.echo(report.summary())


@click.command()
@click.argument("path", default=".", type=click.Path(exists=True, path_type=Path))
def diff(path: Path) -> None:
    """Show remote changes of the project containing PATH."""
    with ProjectRegistry() as registry:
        handle = open_project(registry, path, initialize=False)
        with create_service() as service:
            executor = SyncExecutor(service, TransferLimiter(get_max_concurrency()))
            try:
                info = executor.collect_diff(handle.root)
            except SYNC_ERRORS as e:
                click.echo(f"Error: {e}", err=True)
                sys.exit(1)

    for remote in info.new_remote:
        click.echo(f"  + {remote}")
    for remote in info.modified_remote:
        click.echo(f"  M {remote}")
    for remote in info.removed_remote:
        click.echo(f"  - {remote}")
    for folder in info.incomplete:
        click.echo(f"  ? {folder} (listing failed)", err=True)
    click.echo(info.summary())


@click.command()
@click.argument("path", default=".", type=click.Path(exists=True, path_type=Path))
@click.option("--full", is_flag=True, help="Replace the whole project with a fresh download.")
@click.option("--force", is_flag=True, help="With --full, discard local changes.")
@click.option(
    "--preserve-local",
    is_flag=True,
    help="Keep locally modified files that also changed on the server.",
)
def sync(path: Path, full: bool, force: bool, preserve_local: bool) -> None:
    """Bring the project containing PATH up to date with the server.

    By default only new, modified and removed remote files are applied.
    Use --full to download the whole subtree again and swap it in.
    """
    with ProjectRegistry() as registry:
        handle = open_project(registry, path)
        with create_service() as service:
            executor = SyncExecutor(service, TransferLimiter(get_max_concurrency()))
            try:
                if full:
                    report = executor.full_resync(handle.root, detector=handle.detector, force=force)
                else:
                    report = executor.incremental_sync(
                        handle.root,
                        detector=handle.detector,
                        preserve_local=preserve_local,
                    )
            except LocalChangesPendingError as e:
                click.echo(f"Error: {len(e.paths)} local change(s) would be lost:", err=True)
                for relative in e.paths:
                    click.echo(f"  {relative}", err=True)
                click.echo("Upload them first or use --force.", err=True)
                sys.exit(1)
            except SYNC_ERRORS as e:
                click.echo(f"Error: {e}", err=True)
                sys.exit(1)

    _print_report(report)
    if report.outcome == SyncOutcome.ABORTED or report.failed:
        sys.exit(1)


@click.command()
@click.argument("path", default=".", type=click.Path(exists=True, path_type=Path))
def verify(path: Path) -> None:
    """Check the project containing PATH against the server."""
    with ProjectRegistry() as registry:
        handle = open_project(registry, path, initialize=False)
        with create_service() as service:
            verifier = TieredVerifier(service, TransferLimiter(get_max_concurrency()))
            try:
                result = verifier.verify(handle.root)
            except SYNC_ERRORS as e:
                click.echo(f"Error: {e}", err=True)
                sys.exit(1)

    if result.status == VerificationStatus.ERROR:
        click.echo(f"Error: {result.error}", err=True)
        sys.exit(1)
    if result.status == VerificationStatus.NEEDS_RERUN:
        click.echo(f"Mapping upgraded ({result.backfilled} entries). Run verify again.")
        return

    for difference in result.differences:
        click.echo(f"  {difference.diff_type.value}: {difference.local_path}")
    for relative in result.unverified:
        click.echo(f"  ? {relative} (could not be checked)", err=True)
    click.echo(result.summary())
    if result.status != VerificationStatus.UP_TO_DATE:
        sys.exit(1)


@click.command()
@click.argument("paths", nargs=-1, type=click.Path(exists=True, path_type=Path))
@click.option("--all", "upload_all", is_flag=True, help="Upload every local change of the project.")
@click.option("--delete", is_flag=True, help="With --all, also delete files removed locally.")
@click.option("--no-verify", is_flag=True, help="Skip reading uploads back.")
@click.option(
    "--server-backup",
    is_flag=True,
    help="First save the current server version as <name>_BKP_<timestamp><ext>.",
)
def upload(
    paths: tuple[Path, ...],
    upload_all: bool,
    delete: bool,
    no_verify: bool,
    server_backup: bool,
) -> None:
    """Upload local files, or every local change with --all."""
    if not paths:
        paths = (Path("."),)
    if upload_all and server_backup:
        click.echo("Error: --server-backup works on single files only.", err=True)
        sys.exit(1)

    with ProjectRegistry() as registry, create_service() as service:
        executor = SyncExecutor(service, TransferLimiter(get_max_concurrency()))
        if upload_all:
            failed = False
            for path in paths:
                handle = open_project(registry, path)
                report = executor.upload_changes(
                    handle.root,
                    handle.detector,
                    propagate_deletes=delete,
                    verify=not no_verify,
                )
                _print_report(report)
                failed = failed or not report.ok
            if failed:
                sys.exit(1)
            return

        errors = 0
        for path in paths:
            if path.is_dir():
                click.echo(f"Error: {path} is a directory; use --all.", err=True)
                errors += 1
                continue
            handle = open_project(registry, path, initialize=False)
            try:
                if server_backup:
                    backup, entry = executor.upload_with_server_backup(
                        path, handle.detector, verify=not no_verify
                    )
                    click.echo(f"  ↑ {backup.local_path} (server copy)")
                else:
                    entry = executor.upload_file(path, handle.detector, verify=not no_verify)
            except (*SYNC_ERRORS, OSError) as e:
                click.echo(f"Error: {path}: {e}", err=True)
                errors += 1
                continue
            click.echo(f"  ↑ {entry.local_path}")
        if errors:
            sys.exit(1)


@click.command()
@click.argument("path", default=".", type=click.Path(exists=True, path_type=Path))
def watch(path: Path) -> None:
    """Track local changes of the project containing PATH until interrupted."""
    with ProjectRegistry() as registry:
        handle = open_project(registry, path)

        def on_change(root: Path) -> None:
            changes = sorted(handle.detector.get_changes(), key=lambda c: c.path)
            click.echo(f"{len(changes)} local change(s) in {root}")
            for change in changes:
                click.echo(f"  {STATUS_SYMBOLS.get(change.status, '?')} {change.path}")

        handle.detector.subscribe(on_change)
        handle.start_watching()
        click.echo(f"Watching {handle.root} (Ctrl+C to stop)")
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            click.echo("\nStopped")
