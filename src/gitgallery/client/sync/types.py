"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError, UploadError, DownloadError, PrepareError: Exception classes
- CancelledException: Raised when the user cancels the active batch
- SyncStatus, CompletionEvent: Observable engine state
- UploadIndexEntry: Per-asset upload state served to the UI
- PreparedAsset: Asset content read and ready to be uploaded
- UploadStep, StepOutcome, StepResult, FailurePolicy: Per-asset upload steps
- UploadBatchResult, BulkDeleteResult: Batch results
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING

from gitgallery.core.types import BatchType

if TYPE_CHECKING:
    from gitgallery.client.media import MediaAsset
    from gitgallery.client.state import AssetSyncRecord
    from gitgallery.core.types import MetaEntry

CANCELLED_MESSAGE = "Sync cancelled by user"
PERMISSION_MESSAGE = "Media library permission not granted"
DIRECTORY_PERMISSION_MESSAGE = "Download directory permission not granted"
NO_ASSETS_MESSAGE = "No photos found in selected albums"
INCOMPLETE_SCAN_MESSAGE = "Library scan incomplete; kept records of unseen photos"


class SyncError(Exception):
    """Base exception for sync errors."""


class UploadError(SyncError):
    """Failed to upload an asset."""


class DownloadError(SyncError):
    """Failed to download a file."""


class PrepareError(SyncError):
    """Asset content could not be read."""


class CancelledException(Exception):
    """Raised when a sync operation is cancelled."""

    def __init__(self, message: str = CANCELLED_MESSAGE) -> None:
        super().__init__(message)


@dataclass
class SyncStatus:
    """Snapshot of what the engine is doing.

    Attributes:
        running: A batch is in progress.
        pending_uploads: Items of the current batch not processed yet.
        completed_uploads: Uploads completed since the engine started.
        is_deleting: The current batch deletes remote files.
        last_batch_total: Size of the current (or last) batch.
        last_batch_uploaded: Items processed in the current batch.
        last_batch_type: Kind of the current batch.
        last_error: Message of the most recent failure.
    """

    running: bool = False
    pending_uploads: int = 0
    completed_uploads: int = 0
    is_deleting: bool = False
    last_batch_total: int = 0
    last_batch_uploaded: int = 0
    last_batch_type: BatchType | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class CompletionEvent:
    """Emitted when a batch finishes."""

    type: BatchType
    total: int
    failed: int
    timestamp: int


@dataclass
class UploadIndexEntry:
    """Upload state of one asset as seen by the UI."""

    fingerprint: str
    uploaded: bool = False
    repo_path: str | None = None
    file_size: int | None = None
    creation_time: int | None = None
    content_hash: str | None = None
    last_seen_at: int | None = None
    last_uploaded_at: int | None = None
    last_error: str | None = None

    @classmethod
    def from_record(cls, record: AssetSyncRecord) -> UploadIndexEntry:
        return cls(
            fingerprint=record.fingerprint,
            uploaded=record.uploaded,
            repo_path=record.repo_path,
            file_size=record.file_size,
            creation_time=record.created_at,
            content_hash=record.content_hash,
            last_seen_at=record.last_seen_at,
            last_uploaded_at=record.last_uploaded_at,
            last_error=record.last_error,
        )

    @classmethod
    def from_meta(cls, entry: MetaEntry) -> UploadIndexEntry:
        """Entry for an asset known only from remote metadata."""
        return cls(
            fingerprint=entry.fingerprint,
            uploaded=True,
            repo_path=entry.repo_path,
            file_size=entry.file_size,
            creation_time=entry.created_at,
            content_hash=entry.content_hash,
            last_seen_at=entry.uploaded_at or entry.created_at,
            last_uploaded_at=entry.uploaded_at,
        )


@dataclass
class PreparedAsset:
    """An asset whose content has been read for upload.

    Attributes:
        asset: Source asset.
        fingerprint: Identity key.
        repo_path: Destination path in the repository.
        content: Raw file bytes.
        content_base64: Transport form of content.
        content_hash: Digest of content_base64.
        file_size: Size in bytes.
        creation_time: Capture time (epoch ms).
    """

    asset: MediaAsset
    fingerprint: str
    repo_path: str
    content: bytes
    content_base64: str
    content_hash: str
    file_size: int
    creation_time: int | None = None


class UploadStep(Enum):
    """Steps of uploading one prepared asset, in execution order."""

    RECORD_PENDING = auto()
    RESOLVE_SHA = auto()
    PUT_FILE = auto()
    MARK_UPLOADED = auto()
    UNBLOCK = auto()
    UPSERT_META = auto()


class StepOutcome(Enum):
    """Result of uploading one asset."""

    OK = auto()
    FAILED = auto()


class FailurePolicy(Enum):
    """What a step failure means for the asset being uploaded."""

    FAIL_ITEM = auto()  # record the failure, continue with the next asset
    CONTINUE = auto()  # log it, run the remaining steps


UPLOAD_STEPS: tuple[UploadStep, ...] = tuple(UploadStep)

STEP_FAILURE_POLICY: dict[UploadStep, FailurePolicy] = {
    UploadStep.RECORD_PENDING: FailurePolicy.FAIL_ITEM,
    UploadStep.RESOLVE_SHA: FailurePolicy.FAIL_ITEM,
    UploadStep.PUT_FILE: FailurePolicy.FAIL_ITEM,
    UploadStep.MARK_UPLOADED: FailurePolicy.FAIL_ITEM,
    UploadStep.UNBLOCK: FailurePolicy.CONTINUE,
    UploadStep.UPSERT_META: FailurePolicy.FAIL_ITEM,
}


@dataclass
class StepResult:
    """Outcome of uploading one asset.

    Attributes:
        fingerprint: Asset identity.
        outcome: OK when every step ran, FAILED otherwise.
        step: Last step attempted.
        error: Failure message.
    """

    fingerprint: str
    outcome: StepOutcome
    step: UploadStep | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome == StepOutcome.OK


@dataclass
class UploadBatchResult:
    """Result of one upload batch."""

    requested: int = 0
    prepared: int = 0
    skipped: dict[str, str] = field(default_factory=dict)
    results: list[StepResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def uploaded(self) -> list[str]:
        return [r.fingerprint for r in self.results if r.success]

    @property
    def failed(self) -> list[str]:
        return [r.fingerprint for r in self.results if r.outcome == StepOutcome.FAILED]


@dataclass
class BulkDeleteResult:
    """Paths deleted and paths that failed."""

    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
