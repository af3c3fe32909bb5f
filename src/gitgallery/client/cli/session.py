"""Engine wiring for CLI commands.

This module provides:
- open_engine: Build a SyncEngine from the saved configuration
- run_with_engine: Run one engine coroutine, reporting errors the CLI way
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import click

from gitgallery.client.api import APIError, AuthenticationError, GitHubStorage
from gitgallery.client.cli.config import ConfigError, build_settings, load_config, require_config
from gitgallery.client.media import FolderMediaLibrary
from gitgallery.client.state import LocalIndex
from gitgallery.client.sync.engine import SyncEngine
from gitgallery.client.sync.types import SyncError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@asynccontextmanager
async def open_engine(config: dict[str, Any]) -> AsyncIterator[SyncEngine]:
    """Build a SyncEngine for the configured repository and library.

    Closes the HTTP client and the database on exit.

    Raises:
        ConfigError: If the configuration is incomplete.
    """
    github, repo, library = require_config(config)
    settings = build_settings(config)
    settings.data_dir.mkdir(parents=True, exist_ok=True)

    index = LocalIndex(settings.database_path)
    try:
        async with GitHubStorage(github, repo) as storage:
            engine = SyncEngine(storage, index, FolderMediaLibrary(library), settings)
            if config.get("download_dir"):
                engine.set_download_directory(config["download_dir"])
            yield engine
    finally:
        index.close()


def run_with_engine(func: Callable[[SyncEngine], Awaitable[T]]) -> T:
    """Open the engine, await func(engine) and close everything again.

    Exits with status 1 on configuration, authentication and remote errors.
    """

    async def main() -> T:
        async with open_engine(load_config()) as engine:
            return await func(engine)

    try:
        return asyncio.run(main())
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except AuthenticationError as e:
        click.echo(f"Error: GitHub rejected the token ({e})", err=True)
        sys.exit(1)
    except (APIError, SyncError) as e:
        logger.debug("Command failed", exc_info=True)
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
