"""Configuration command for GitGallery CLI.

Commands:
- configure: Set the GitHub token, repository, library and sync preferences
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from gitgallery.client.cli.config import (
    ConfigError,
    get_config_file,
    load_config,
    parse_repo,
    save_config,
)


@click.command()
@click.option("--token", default=None, help="GitHub token with contents write access.")
@click.option("--repo", default=None, help="Repository as owner/name.")
@click.option("--branch", default=None, help="Branch to sync (default: main).")
@click.option(
    "--library",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Photo directory used as the device library.",
)
@click.option(
    "--album",
    "albums",
    multiple=True,
    help="Album (sub-directory) included in sync; repeatable.",
)
@click.option("--all-albums", is_flag=True, help="Sync every album (clears --album selection).")
@click.option(
    "--download-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory downloads are written to.",
)
@click.option(
    "--download-mode",
    type=click.Choice(["directory", "library"]),
    default=None,
    help="Write downloads to --download-dir or import them into the library.",
)
@click.option(
    "--auto-delete/--no-auto-delete",
    default=None,
    help="Delete photos from the library once uploaded.",
)
def configure(
    token: str | None,
    repo: str | None,
    branch: str | None,
    library: Path | None,
    albums: tuple[str, ...],
    all_albums: bool,
    download_dir: Path | None,
    download_mode: str | None,
    auto_delete: bool | None,
) -> None:
    """Configure GitGallery.

    Only the given options change; everything else keeps its saved value.
    Prompts for the token and repository when none is saved yet.
    """
    config = load_config()

    if token is None and not config.get("token"):
        token = click.prompt("GitHub token", hide_input=True)
    if repo is None and not config.get("repo"):
        repo = click.prompt("Repository (owner/name)")

    if token is not None:
        config["token"] = token
    if repo is not None:
        try:
            parse_repo(repo)
        except ConfigError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        config["repo"] = repo.strip().strip("/")
    if branch is not None:
        config["branch"] = branch
    if library is not None:
        config["library"] = str(library.expanduser().resolve())
    if all_albums:
        config.pop("albums", None)
    elif albums:
        config["albums"] = list(albums)
    if download_dir is not None:
        config["download_dir"] = str(download_dir.expanduser().resolve())
    if download_mode is not None:
        config["download_mode"] = download_mode
    if auto_delete is not None:
        config["auto_delete_after_sync"] = auto_delete

    save_config(config)
    click.echo(f"Configuration saved to {get_config_file()}")
    click.echo(f"  Repository: {config['repo']}@{config.get('branch') or 'main'}")
    if config.get("library"):
        click.echo(f"  Library: {config['library']}")
    if config.get("albums"):
        click.echo(f"  Albums: {', '.join(config['albums'])}")
