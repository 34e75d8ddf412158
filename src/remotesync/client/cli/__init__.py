"""Command-line interface for remotesync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- configure: Store the server URL and access token
- download: Download a remote folder as a new project
- status: Show local changes of a project
- diff: Show remote changes of a project
- sync: Bring a project up to date with the server
- verify: Check a project's integrity against the server
- upload: Upload local files or all local changes
- reset: Forget the recorded change state and rescan
- watch: Track local changes until interrupted
- remote-path: Print the remote path of a local file
- local-diff: Show local edits of a file against its downloaded original
- fetch: Download single files from the server
- local-path: Print the local file mapped to a server path
"""

from __future__ import annotations

import logging

import click

from remotesync.client.cli.config import (
    create_service,
    get_config_dir,
    get_config_file,
    get_server_config,
    load_config,
    save_config,
)
from remotesync.client.cli.project import (
    download,
    fetch,
    local_diff,
    local_path,
    remote_path,
    reset,
    status,
)
from remotesync.client.cli.sync import diff, sync, upload, verify, watch


@click.group()
@click.version_option(package_name="remotesync")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def cli(verbose: bool) -> None:
    """remotesync - Mirror remote folders as local projects."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@click.command()
@click.option("--server", required=True, help="Server URL (e.g., https://files.example.com).")
@click.option("--token", required=True, help="Access token.")
@click.option("--max-concurrency", type=click.IntRange(min=1), default=None, help="Simultaneous remote calls.")
@click.option("--no-verify-ssl", is_flag=True, help="Do not verify TLS certificates.")
@click.option("--check", is_flag=True, help="Check that the server is reachable.")
def configure(
    server: str,
    token: str,
    max_concurrency: int | None,
    no_verify_ssl: bool,
    check: bool,
) -> None:
    """Store the server URL and access token."""
    config = load_config()
    config["server_url"] = server.rstrip("/")
    config["token"] = token
    config["verify_ssl"] = not no_verify_ssl
    if max_concurrency is not None:
        config["max_concurrency"] = max_concurrency
    save_config(config)
    click.echo(f"Configuration saved to {get_config_file()}")

    if check:
        with create_service() as service:
            if not service.health_check():
                click.echo(f"Warning: {service.config.server_url} is not reachable.", err=True)
                return
        click.echo("Server is reachable.")


# Setup commands
cli.add_command(configure)

# Project commands
cli.add_command(download)
cli.add_command(status)
cli.add_command(reset)
cli.add_command(remote_path)
cli.add_command(local_diff)
cli.add_command(local_path)
cli.add_command(fetch)

# Sync commands
cli.add_command(diff)
cli.add_command(sync)
cli.add_command(verify)
cli.add_command(upload)
cli.add_command(watch)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "main",
    "get_config_dir",
    "get_config_file",
    "get_server_config",
    "load_config",
    "save_config",
]
