"""Core module - Identity, paths, and shared configuration."""

from gitgallery.core.config import (
    CacheSettings,
    GitHubConfig,
    RepoInfo,
    SyncSettings,
)
from gitgallery.core.fingerprint import (
    IMAGES_ROOT,
    asset_fingerprint,
    content_hash,
    encode_content,
    fingerprint,
    guess_extension,
    normalize_path,
    now_ms,
    repo_path,
    sanitize_filename,
)
from gitgallery.core.types import BatchType, MetaEntry

__all__ = [
    # Config
    "CacheSettings",
    "GitHubConfig",
    "RepoInfo",
    "SyncSettings",
    # Fingerprint & paths
    "IMAGES_ROOT",
    "asset_fingerprint",
    "content_hash",
    "encode_content",
    "fingerprint",
    "guess_extension",
    "normalize_path",
    "now_ms",
    "repo_path",
    "sanitize_filename",
    # Types
    "BatchType",
    "MetaEntry",
]
