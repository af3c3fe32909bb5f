"""Sync operations between the device library and the repository.

Architecture:
    MediaLibrary → SyncEngine → JobQueue → GitHubStorage
                        ↘ MetaStore (manifest + shards)
                        ↘ LocalIndex / ContentCache

Components:
- **SyncEngine**: Orchestrates upload, delete, download, reconcile and reset
- **JobQueue**: Serializes every mutating batch
- **MetaStore**: Sharded remote metadata, loaded lazily
- **prepare_asset**: Reads device content and derives path and hash
- **retry_with_backoff**: Exponential backoff for transient remote reads

All public symbols are re-exported here.
"""

from gitgallery.client.sync.downloads import build_download_name, resolve_download_directory
from gitgallery.client.sync.engine import SyncEngine
from gitgallery.client.sync.metadata import (
    MANIFEST_PATH,
    META_ROOT,
    Manifest,
    ManifestShard,
    MetaStore,
    Shard,
    ShardDocument,
    ShardState,
    bucket_for_entry,
    bucket_from_fingerprint,
    bucket_from_repo_path,
    bucket_from_timestamp,
    shard_path,
)
from gitgallery.client.sync.prepare import prepare_asset
from gitgallery.client.sync.queue import JobQueue
from gitgallery.client.sync.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_RETRIES,
    retry_with_backoff,
)
from gitgallery.client.sync.types import (
    BulkDeleteResult,
    CancelledException,
    CompletionEvent,
    DownloadError,
    PrepareError,
    PreparedAsset,
    StepOutcome,
    StepResult,
    SyncError,
    SyncStatus,
    UploadBatchResult,
    UploadError,
    UploadIndexEntry,
    UploadStep,
)

__all__ = [
    # Engine
    "SyncEngine",
    "JobQueue",
    # Metadata
    "MANIFEST_PATH",
    "META_ROOT",
    "Manifest",
    "ManifestShard",
    "MetaStore",
    "Shard",
    "ShardDocument",
    "ShardState",
    "bucket_for_entry",
    "bucket_from_fingerprint",
    "bucket_from_repo_path",
    "bucket_from_timestamp",
    "shard_path",
    # Preparation & downloads
    "prepare_asset",
    "build_download_name",
    "resolve_download_directory",
    # Retry
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_BACKOFF",
    "DEFAULT_MAX_RETRIES",
    "retry_with_backoff",
    # Types
    "BulkDeleteResult",
    "CancelledException",
    "CompletionEvent",
    "DownloadError",
    "PrepareError",
    "PreparedAsset",
    "StepOutcome",
    "StepResult",
    "SyncError",
    "SyncStatus",
    "UploadBatchResult",
    "UploadError",
    "UploadIndexEntry",
    "UploadStep",
]
