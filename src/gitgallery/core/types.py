"""Shared types for gitgallery.

This module defines the records and enums used by the metadata store, the
content cache and the sync orchestrator:
- MetaEntry: "this file is present on the remote" record
- BatchType: kind of batch reported in sync status
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any


class BatchType(str, Enum):
    """Kind of batch the orchestrator last ran."""

    UPLOAD = "upload"
    DELETE = "delete"
    DOWNLOAD = "download"


def _finite(value: Any) -> int | None:
    """Return value as an int when it is a finite number, else None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


@dataclass
class MetaEntry:
    """Remote metadata for one uploaded asset.

    Stored inside date-bucketed shard documents. Serialized with camelCase
    keys so documents written by other clients stay readable.

    Attributes:
        fingerprint: Cross-store identity of the asset.
        repo_path: Path of the media file in the repository.
        preview_repo_path: Optional path of a pre-rendered preview.
        created_at: Capture time (epoch ms).
        file_size: Size in bytes.
        content_hash: Hash of the uploaded content.
        uploaded_at: Upload time (epoch ms).
        asset_id: Device-local asset reference of the uploader.
        updated_at: Last time the entry was written (epoch ms).
    """

    fingerprint: str
    repo_path: str
    preview_repo_path: str | None = None
    created_at: int | None = None
    file_size: int | None = None
    content_hash: str | None = None
    uploaded_at: int | None = None
    asset_id: str | None = None
    updated_at: int | None = None

    @classmethod
    def from_dict(cls, data: Any, fingerprint: str | None = None) -> MetaEntry | None:
        """Create from a shard document entry.

        Lenient: returns None for entries without a repo path, and replaces
        non-finite numbers with None.

        Args:
            data: Raw JSON value.
            fingerprint: Key the entry was stored under (used as fallback).
        """
        if not isinstance(data, dict):
            return None
        repo_path = _text(data.get("repoPath"))
        if not repo_path:
            return None
        fp = _text(data.get("fingerprint")) or fingerprint
        if not fp:
            return None
        asset_id = data.get("assetId")
        return cls(
            fingerprint=fp,
            repo_path=repo_path,
            preview_repo_path=_text(data.get("previewRepoPath")),
            created_at=_finite(data.get("createdAt")),
            file_size=_finite(data.get("fileSize")),
            content_hash=_text(data.get("contentHash")),
            uploaded_at=_finite(data.get("uploadedAt")),
            asset_id=str(asset_id) if asset_id not in (None, "") else None,
            updated_at=_finite(data.get("updatedAt")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the shard document form."""
        data: dict[str, Any] = {
            "fingerprint": self.fingerprint,
            "repoPath": self.repo_path,
            "previewRepoPath": self.preview_repo_path,
            "createdAt": self.created_at,
            "fileSize": self.file_size,
            "contentHash": self.content_hash,
            "uploadedAt": self.uploaded_at,
            "assetId": self.asset_id,
        }
        if self.updated_at is not None:
            data["updatedAt"] = self.updated_at
        return data
