"""Configuration utilities for the remotesync CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any

import click

from remotesync.client.api import HTTPRemoteService
from remotesync.core.config import DEFAULT_MAX_CONCURRENCY, ServerConfig

CONFIG_DIR_ENV = "REMOTESYNC_CONFIG_DIR"


def get_config_dir() -> Path:
    """Get the configuration directory for remotesync.

    Returns:
        Path from $REMOTESYNC_CONFIG_DIR, or ~/.remotesync.
    """
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".remotesync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_server_config() -> ServerConfig | None:
    """Build the server configuration from the config file.

    Returns:
        The configuration, or None if the server is not configured.
    """
    config = load_config()
    if not config.get("server_url") or not config.get("token"):
        return None
    return ServerConfig(
        server_url=config["server_url"],
        token=config["token"],
        verify_ssl=bool(config.get("verify_ssl", True)),
        max_concurrency=int(config.get("max_concurrency", DEFAULT_MAX_CONCURRENCY)),
    )


def create_service() -> HTTPRemoteService:
    """Create the remote service, exiting if the server is not configured."""
    server_config = get_server_config()
    if server_config is None:
        click.echo("Error: Server not configured. Run 'remotesync configure' first.", err=True)
        sys.exit(1)
    return HTTPRemoteService(server_config)


def get_max_concurrency() -> int:
    """Get the configured bound on simultaneous remote calls."""
    return int(load_config().get("max_concurrency", DEFAULT_MAX_CONCURRENCY))
