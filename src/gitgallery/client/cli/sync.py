"""Sync commands for GitGallery CLI.

Commands:
- sync: Upload new photos of the selected albums
- status: Show local and remote sync state
- ls: List photos stored in the repository
- reconcile: Drop local records of photos deleted elsewhere
"""

from __future__ import annotations

from datetime import datetime

import click

from gitgallery.client.cli.session import run_with_engine
from gitgallery.client.state import LAST_UPLOAD_RUN_KEY
from gitgallery.client.sync.engine import SyncEngine
from gitgallery.client.sync.types import CompletionEvent, UploadBatchResult


def _format_time(value: int | str | None) -> str:
    if not value:
        return "never"
    return datetime.fromtimestamp(int(value) / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _format_size(size: int | None) -> str:
    if size is None:
        return "?"
    if size < 1024:
        return f"{size} B"
    value = size / 1024
    for unit in ("KB", "MB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


@click.command()
@click.option("--force", is_flag=True, help="Re-upload photos already recorded as uploaded.")
def sync(force: bool) -> None:
    """Upload new photos of the selected albums.

    Photos deleted from the repository with 'gitgallery delete' are not
    uploaded again unless --force is given.
    """

    async def run(engine: SyncEngine) -> tuple[UploadBatchResult | None, str | None]:
        engine.completed.subscribe(_echo_completion)
        await engine.hydrate_recent_meta()
        if force:
            assets = await engine.collect_assets()
            result = await engine.run_sync_for_assets(assets, allow_blocked=True, force=True)
        else:
            result = await engine.run_sync_once()
        return result, engine.get_status().last_error

    def _echo_completion(event: CompletionEvent) -> None:
        click.echo(f"Uploaded {event.total - event.failed}/{event.total} photos")

    result, last_error = run_with_engine(run)
    if result is None:
        click.echo(last_error or "Nothing to upload.")
        return
    if result.skipped:
        click.echo(f"Skipped {len(result.skipped)} photos")
    if result.failed:
        click.echo(f"{len(result.failed)} uploads failed:", err=True)
        for fingerprint in result.failed:
            click.echo(f"  {fingerprint}", err=True)
    if result.cancelled:
        click.echo("Sync cancelled.", err=True)


@click.command()
def status() -> None:
    """Show local and remote sync state."""

    async def run(engine: SyncEngine) -> None:
        await engine.hydrate_recent_meta()
        records = engine.index.list_assets()
        uploaded = sum(1 for record in records if record.uploaded)
        failed = [record for record in records if not record.uploaded and record.last_error]
        repo = engine.cache.repo_dir.name

        click.echo(f"Repository cache: {repo}")
        click.echo(f"Local records: {len(records)} ({uploaded} uploaded, {len(records) - uploaded} pending)")
        click.echo(f"Remote entries loaded: {len(engine.meta)}")
        click.echo(f"Blocked from auto-sync: {len(engine.index.blocklist())}")
        click.echo(f"Last upload: {_format_time(engine.index.get_key(LAST_UPLOAD_RUN_KEY))}")
        for record in failed[:10]:
            click.echo(f"  failed: {record.fingerprint}: {record.last_error}")

    run_with_engine(run)


@click.command("ls")
@click.option("--limit", "-n", type=int, default=50, show_default=True, help="Entries to show.")
@click.option("--offset", type=int, default=0, help="Entries to skip.")
@click.option("--all", "load_all", is_flag=True, help="Load every metadata shard first.")
def list_entries(limit: int, offset: int, load_all: bool) -> None:
    """List photos stored in the repository, newest upload first."""

    async def run(engine: SyncEngine) -> None:
        if load_all:
            await engine.meta.ensure_all_loaded()
        entries = await engine.get_cloud_entries(limit, offset)
        if not entries:
            click.echo("No photos in the repository.")
            return
        for entry in entries:
            click.echo(
                f"{_format_time(entry.uploaded_at)}  {_format_size(entry.file_size):>9}  {entry.repo_path}"
            )

    run_with_engine(run)


@click.command()
@click.option("--rescan", is_flag=True, help="Also forget photos no longer in the library.")
def reconcile(rescan: bool) -> None:
    """Drop local records of photos deleted from the repository elsewhere."""

    async def run(engine: SyncEngine) -> tuple[int, int]:
        swept = await engine.rescan_library() if rescan else 0
        return await engine.verify_and_clean_upload_index(), swept

    removed, swept = run_with_engine(run)
    click.echo(f"Removed {removed} stale upload records")
    if rescan:
        click.echo(f"Removed {swept} records of photos no longer in the library")
