"""Tests for core configuration classes."""

from __future__ import annotations

from pathlib import Path

from gitgallery.core.config import CacheSettings, GitHubConfig, RepoInfo, SyncSettings


class TestGitHubConfig:
    """Tests for GitHubConfig class."""

    def test_init_basic(self) -> None:
        """Should initialize with the public API by default."""
        config = GitHubConfig(token="test-token")
        assert config.token == "test-token"
        assert config.api_url == "https://api.github.com"
        assert config.timeout == 30.0

    def test_url_trailing_slash_removed(self) -> None:
        """Should strip trailing slash from the API URL."""
        config = GitHubConfig(token="t", api_url="https://ghe.example.com/api/v3/")
        assert config.api_url == "https://ghe.example.com/api/v3"


class TestRepoInfo:
    """Tests for RepoInfo class."""

    def test_full_name(self) -> None:
        assert RepoInfo(owner="octo", name="photos").full_name == "octo/photos"

    def test_default_branch(self) -> None:
        assert RepoInfo(owner="octo", name="photos").branch == "main"

    def test_blank_branch_means_main(self) -> None:
        """Whitespace-only branch names resolve to main."""
        assert RepoInfo(owner="octo", name="photos", branch="  ").branch == "main"

    def test_is_hashable(self) -> None:
        """Frozen, so it can key dictionaries."""
        repos = {RepoInfo("a", "b"): 1}
        assert repos[RepoInfo("a", "b", "main")] == 1


class TestSyncSettings:
    """Tests for SyncSettings class."""

    def test_paths_derived_from_data_dir(self, tmp_path: Path) -> None:
        settings = SyncSettings(data_dir=tmp_path)
        assert settings.database_path == tmp_path / "gitgallery.db"
        assert settings.cache_dir == tmp_path / "cloud-cache"
        assert settings.downloads_dir == tmp_path / "Download" / "GitGallery"

    def test_data_dir_coerced_to_path(self, tmp_path: Path) -> None:
        settings = SyncSettings(data_dir=str(tmp_path))  # type: ignore[arg-type]
        assert isinstance(settings.data_dir, Path)

    def test_defaults(self, tmp_path: Path) -> None:
        settings = SyncSettings(data_dir=tmp_path)
        assert settings.selected_albums == []
        assert settings.selection_initialized is False
        assert settings.download_mode == "directory"
        assert settings.preload_target == 450


class TestCacheSettings:
    """Tests for CacheSettings defaults."""

    def test_defaults(self) -> None:
        settings = CacheSettings()
        assert settings.preview_max_width == 1280
        assert settings.size_budget == 400 * 1024 * 1024
        assert settings.prune_target_ratio == 0.8
        assert settings.max_age_original > settings.max_age_preview
