"""Project commands for the remotesync CLI.

Commands:
- download: Download a remote folder as a new project
- status: Show local changes of a project
- reset: Forget the recorded change state and rescan
- remote-path: Print the remote path of a local file
- local-diff: Show local edits of a file against its downloaded original
- fetch: Download single files from the server
- local-path: Print the local file mapped to a server path
"""

from __future__ import annotations

import difflib
import sys
from pathlib import Path

import click

from remotesync.client.api import APIError
from remotesync.client.cli.config import create_service, get_max_concurrency
from remotesync.client.mapping import find_local_path, find_nearest_config, resolve_remote_path
from remotesync.client.project import ProjectHandle, ProjectRegistry
from remotesync.client.sync import ChangeStatus, SyncError, SyncExecutor, TransferInProgressError, TransferLimiter

STATUS_SYMBOLS = {
    ChangeStatus.MODIFIED: "M",
    ChangeStatus.ADDED: "A",
    ChangeStatus.DELETED: "D",
}


def open_project(registry: ProjectRegistry, path: Path, initialize: bool = True) -> ProjectHandle:
    """Open the project containing path, exiting if there is none."""
    handle = registry.open(path, initialize=initialize)
    if handle is None:
        click.echo(f"Error: {path} is not inside a remotesync project.", err=True)
        sys.exit(1)
    return handle


@click.command()
@click.argument("remote_path")
@click.argument("target", type=click.Path(file_okay=False, path_type=Path))
def download(remote_path: str, target: Path) -> None:
    """Download REMOTE_PATH into TARGET as a new project."""
    with create_service() as service:
        executor = SyncExecutor(service, TransferLimiter(get_max_concurrency()))
        try:
            result = executor.download_project(remote_path, target)
        except (SyncError, TransferInProgressError, APIError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    click.echo(f"Downloaded {len(result.mappings)} file(s) into {target}")
    for relative, error in sorted(result.failed.items()):
        click.echo(f"  ! {relative}: {error}", err=True)
    if not result.complete:
        sys.exit(1)


@click.command()
@click.argument("path", default=".", type=click.Path(exists=True, path_type=Path))
def status(path: Path) -> None:
    """Show local changes of the project containing PATH."""
    with ProjectRegistry() as registry:
        handle = open_project(registry, path)
        changes = sorted(handle.detector.get_changes(), key=lambda c: c.path)

    if not changes:
        click.echo(f"No local changes in {handle.root}")
        return
    click.echo(f"{len(changes)} local change(s) in {handle.root}:")
    for change in changes:
        click.echo(f"  {STATUS_SYMBOLS.get(change.status, '?')} {change.path}")


@click.command()
@click.argument("path", default=".", type=click.Path(exists=True, path_type=Path))
def reset(path: Path) -> None:
    """Forget the recorded change state of a project and rescan it."""
    with ProjectRegistry() as registry:
        handle = open_project(registry, path, initialize=False)
        handle.detector.reset()
        handle.detector.initialize()
        count = len(handle.detector.get_changes())
    click.echo(f"Change state reset: {count} local change(s)")


@click.command("remote-path")
@click.argument("path", type=click.Path(exists=True, path_type=Path))
def remote_path(path: Path) -> None:
    """Print the remote path of a local file or folder."""
    resolved = resolve_remote_path(path)
    if resolved is None:
        click.echo(f"Error: {path} is not inside a remotesync project.", err=True)
        sys.exit(1)
    click.echo(resolved)


@click.command("local-diff")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def local_diff(path: Path) -> None:
    """Show local edits of a file against the version last synchronized."""
    root = find_nearest_config(path)
    if root is None:
        click.echo(f"Error: {path} is not inside a remotesync project.", err=True)
        sys.exit(1)

    with ProjectRegistry() as registry:
        store = open_project(registry, root, initialize=False).store
        relative = store.relative_path(path)
        original = store.original_content(relative) if relative else None
    if original is None:
        click.echo(f"Error: No original content recorded for {path}.", err=True)
        sys.exit(1)

    before = original.decode("utf-8", errors="replace").splitlines(keepends=True)
    after = path.read_bytes().decode("utf-8", errors="replace").splitlines(keepends=True)
    lines = list(difflib.unified_diff(before, after, f"a/{relative}", f"b/{relative}"))
    if not lines:
        click.echo("No local edits")
        return
    click.echo("".join(lines), nl=False)


@click.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(dir_okay=False, path_type=Path))
def fetch(paths: tuple[Path, ...]) -> None:
    """Download single files of a project from the server, replacing local copies."""
    errors = 0
    with ProjectRegistry() as registry, create_service() as service:
        executor = SyncExecutor(service, TransferLimiter(get_max_concurrency()))
        for path in paths:
            handle = open_project(registry, path, initialize=False)
            try:
                entry = executor.download_file(path, handle.detector)
            except (SyncError, APIError, OSError) as e:
                click.echo(f"Error: {path}: {e}", err=True)
                errors += 1
                continue
            click.echo(f"  ↓ {entry.local_path}")
    if errors:
        sys.exit(1)


@click.command("local-path")
@click.argument("server_path")
@click.argument("path", default=".", type=click.Path(exists=True, path_type=Path))
def local_path(server_path: str, path: Path) -> None:
    """Print the local file mapped to SERVER_PATH in the project containing PATH."""
    found = find_local_path(path, server_path)
    if found is None:
        click.echo(f"Error: No local file is mapped to {server_path}.", err=True)
        sys.exit(1)
    click.echo(str(found))
