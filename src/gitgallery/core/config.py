"""Shared configuration classes for gitgallery.

This module defines the configuration objects passed into the sync engine
and its collaborators. Nothing here reads global state; the CLI (or any other
front end) builds these from its own settings file and injects them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_BRANCH = "main"

MiB = 1024 * 1024
HOUR = 60 * 60
DAY = 24 * HOUR


@dataclass
class GitHubConfig:
    """Configuration for connecting to the GitHub contents API.

    Attributes:
        token: OAuth or personal access token.
        api_url: Base URL of the API (e.g., "https://api.github.com").
        timeout: Request timeout in seconds.
    """

    token: str
    api_url: str = DEFAULT_API_URL
    timeout: float = 30.0

    def __post_init__(self) -> None:
        """Normalize API URL."""
        self.api_url = self.api_url.rstrip("/")


@dataclass(frozen=True)
class RepoInfo:
    """Identity of the remote repository used as the storage tier.

    Attributes:
        owner: Repository owner (user or organization).
        name: Repository name.
        branch: Branch holding the gallery (blank means "main").
    """

    owner: str
    name: str
    branch: str = DEFAULT_BRANCH

    def __post_init__(self) -> None:
        """Resolve blank branch names to the default branch."""
        if not (self.branch or "").strip():
            object.__setattr__(self, "branch", DEFAULT_BRANCH)

    @property
    def full_name(self) -> str:
        """Get "owner/name" form."""
        return f"{self.owner}/{self.name}"


@dataclass
class CacheSettings:
    """Tunables for the local content cache.

    Attributes:
        preview_max_width: Width previews are downscaled to.
        preview_quality: JPEG quality for derived previews (1-95).
        preview_touch_interval: Seconds between lastAccessed writes.
        view_touch_interval: Seconds between lastViewed writes.
        prune_interval: Minimum seconds between eviction runs per repo.
        max_age_preview: Age in seconds after which preview-only entries expire.
        max_age_original: Age in seconds after which entries with an original expire.
        size_budget: Total cache budget in bytes.
        prune_target_ratio: Fraction of the budget eviction shrinks down to.
    """

    preview_max_width: int = 1280
    preview_quality: int = 72
    preview_touch_interval: float = 30.0
    view_touch_interval: float = 5.0
    prune_interval: float = 4 * HOUR
    max_age_preview: float = 30 * DAY
    max_age_original: float = 60 * DAY
    size_budget: int = 400 * MiB
    prune_target_ratio: float = 0.8


@dataclass
class SyncSettings:
    """User-facing sync preferences consumed by the orchestrator.

    Attributes:
        data_dir: Application-private directory (database, cache, downloads).
        auto_delete_after_sync: Delete device assets after they upload.
        selected_albums: Albums included in sync-all (empty means every album).
        selection_initialized: Whether the album selection has been set up.
        preload_target: Metadata entry count loaded at startup.
        download_mode: "directory" (user-chosen folder) or "library" (media library).
        page_size: Assets fetched per media-library page.
    """

    data_dir: Path
    auto_delete_after_sync: bool = False
    selected_albums: list[str] = field(default_factory=list)
    selection_initialized: bool = False
    preload_target: int = 450
    download_mode: str = "directory"
    page_size: int = 60

    def __post_init__(self) -> None:
        """Coerce data_dir to a Path."""
        self.data_dir = Path(self.data_dir)

    @property
    def database_path(self) -> Path:
        """Path of the local index database."""
        return self.data_dir / "gitgallery.db"

    @property
    def cache_dir(self) -> Path:
        """Root directory of the content cache."""
        return self.data_dir / "cloud-cache"

    @property
    def downloads_dir(self) -> Path:
        """App-private fallback directory for downloads."""
        return self.data_dir / "Download" / "GitGallery"
