"""Configuration utilities for GitGallery CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from gitgallery.core.config import DEFAULT_API_URL, GitHubConfig, RepoInfo, SyncSettings


class ConfigError(Exception):
    """Configuration is missing or invalid."""


def get_config_dir() -> Path:
    """Get the configuration directory for GitGallery.

    Returns:
        Path to ~/.gitgallery or equivalent.
    """
    return Path.home() / ".gitgallery"


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


def parse_repo(value: str, branch: str | None = None) -> RepoInfo:
    """Parse "owner/name" into a RepoInfo.

    Raises:
        ConfigError: If the value is not of the form owner/name.
    """
    owner, sep, name = value.strip().strip("/").partition("/")
    if not sep or not owner or not name or "/" in name:
        raise ConfigError(f"Repository must be given as owner/name, got '{value}'")
    return RepoInfo(owner=owner, name=name, branch=branch or "")


def get_data_dir(config: dict[str, Any]) -> Path:
    """Directory holding the database, cache and fallback downloads."""
    if config.get("data_dir"):
        return Path(config["data_dir"]).expanduser()
    return get_config_dir() / "data"


def build_settings(config: dict[str, Any]) -> SyncSettings:
    """SyncSettings from the saved configuration."""
    return SyncSettings(
        data_dir=get_data_dir(config),
        auto_delete_after_sync=bool(config.get("auto_delete_after_sync", False)),
        selected_albums=list(config.get("albums") or []),
        selection_initialized="albums" in config,
        download_mode=config.get("download_mode") or "directory",
    )


def require_config(config: dict[str, Any]) -> tuple[GitHubConfig, RepoInfo, Path]:
    """Connection settings and library root from the saved configuration.

    Raises:
        ConfigError: If the token, repository or library is not configured.
    """
    missing = [key for key in ("token", "repo", "library") if not config.get(key)]
    if missing:
        raise ConfigError(
            f"Missing configuration: {', '.join(missing)}. Run 'gitgallery configure' first."
        )
    github = GitHubConfig(token=config["token"], api_url=config.get("api_url") or DEFAULT_API_URL)
    repo = parse_repo(config["repo"], config.get("branch"))
    return github, repo, Path(config["library"]).expanduser()

