"""Content cache commands for GitGallery CLI.

Commands:
- cache prune: Evict expired entries and shrink the cache to its budget
- cache purge: Delete the cache of the configured repository
- cache warm: Prefetch previews of the most recent photos
"""

from __future__ import annotations

import click

from gitgallery.client.cache import PruneResult
from gitgallery.client.cli.session import run_with_engine
from gitgallery.client.sync.engine import SyncEngine


@click.group()
def cache() -> None:
    """Local preview and original cache."""


@cache.command()
@click.option("--force", is_flag=True, help="Prune even if pruned recently.")
def prune(force: bool) -> None:
    """Evict expired entries and shrink the cache to its budget."""

    async def run(engine: SyncEngine) -> PruneResult:
        return await engine.cache.prune(force=force)

    result = run_with_engine(run)
    if result.skipped:
        click.echo("Cache was pruned recently; use --force to prune again.")
        return
    click.echo(
        f"Removed {result.removed} entries ({result.freed_bytes} bytes), "
        f"{result.total_bytes} bytes remain"
    )


@cache.command()
def purge() -> None:
    """Delete the cache of the configured repository."""

    async def run(engine: SyncEngine) -> None:
        await engine.cache.purge_repo()

    run_with_engine(run)
    click.echo("Cache purged.")


@cache.command()
@click.option("--limit", "-n", type=int, default=60, show_default=True, help="Previews to fetch.")
def warm(limit: int) -> None:
    """Prefetch previews of the most recently uploaded photos."""

    async def run(engine: SyncEngine) -> int:
        entries = await engine.get_cloud_entries(limit)
        return await engine.cache.prefetch_previews(entries)

    fetched = run_with_engine(run)
    click.echo(f"Cached {fetched} previews")
