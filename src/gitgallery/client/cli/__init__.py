"""Command-line interface for GitGallery.

This module provides the main CLI entry point and assembles all commands.

Commands:
- configure: Set the GitHub token, repository, library and preferences
- sync: Upload new photos of the selected albums
- status: Show local and remote sync state
- ls: List photos stored in the repository
- reconcile: Drop local records of photos deleted elsewhere
- delete: Delete photos from the repository
- download: Download photos from the repository
- reset: Wipe the repository branch and all local state
- cache: Prune, purge or warm the local content cache
"""

from __future__ import annotations

import logging

import click

from gitgallery.client.cli.cache import cache
from gitgallery.client.cli.config import (
    get_config_dir,
    get_config_file,
    load_config,
    save_config,
)
from gitgallery.client.cli.configure import configure
from gitgallery.client.cli.repo import delete, download, reset
from gitgallery.client.cli.sync import list_entries, reconcile, status, sync


@click.group()
@click.version_option(package_name="gitgallery")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def cli(verbose: bool) -> None:
    """GitGallery - Photo library backup to a GitHub repository."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Setup
cli.add_command(configure)

# Sync commands
cli.add_command(sync)
cli.add_command(status)
cli.add_command(list_entries)
cli.add_command(reconcile)

# Repository commands
cli.add_command(delete)
cli.add_command(download)
cli.add_command(reset)

# Cache commands
cli.add_command(cache)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "load_config",
    "save_config",
]
