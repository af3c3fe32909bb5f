"""Repository commands for GitGallery CLI.

Commands:
- delete: Delete photos from the repository
- download: Download photos from the repository
- reset: Wipe the repository branch and all local state
"""

from __future__ import annotations

import sys

import click

from gitgallery.client.cli.session import run_with_engine
from gitgallery.client.sync.engine import SyncEngine
from gitgallery.client.sync.types import BulkDeleteResult


@click.command()
@click.argument("paths", nargs=-1, required=True)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
def delete(paths: tuple[str, ...], yes: bool) -> None:
    """Delete photos from the repository.

    PATHS are repository paths as shown by 'gitgallery ls'. Deleted photos
    are excluded from automatic upload until uploaded again explicitly.
    """
    if not yes and not click.confirm(f"Delete {len(paths)} photos from the repository?"):
        sys.exit(0)

    async def run(engine: SyncEngine) -> BulkDeleteResult:
        return await engine.delete_repo_files_bulk(list(paths))

    result = run_with_engine(run)
    click.echo(f"Deleted {len(result.deleted)} photos")
    if result.failed:
        for path in result.failed:
            click.echo(f"  failed: {path}", err=True)
        sys.exit(1)


@click.command()
@click.argument("paths", nargs=-1, required=True)
def download(paths: tuple[str, ...]) -> None:
    """Download photos from the repository.

    Files go to the configured download directory (or into the library with
    download mode 'library').
    """

    def on_progress(processed: int, total: int) -> None:
        click.echo(f"[{processed}/{total}]", err=True)

    async def run(engine: SyncEngine) -> tuple[list[str], str | None]:
        locations = await engine.download_repo_files(list(paths), on_progress=on_progress)
        return locations, engine.get_status().last_error

    locations, last_error = run_with_engine(run)
    if last_error:
        click.echo(f"Warning: {last_error}", err=True)
    for location in locations:
        click.echo(location)
    missing = len(paths) - len(locations)
    if missing:
        click.echo(f"{missing} files could not be downloaded", err=True)
        sys.exit(1)


@click.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
def reset(yes: bool) -> None:
    """Wipe the repository branch and all local state.

    Replaces the branch history with a single empty commit, then clears the
    local index, blocklist and content cache. This cannot be undone.
    """
    if not yes:
        click.confirm(
            "This deletes every photo in the repository. Continue?", abort=True
        )

    async def run(engine: SyncEngine) -> None:
        await engine.reset_repo_and_caches()

    run_with_engine(run)
    click.echo("Repository and local caches reset.")
