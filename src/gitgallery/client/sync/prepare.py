"""Reading assets for upload.

This module provides:
- prepare_asset: Read an asset and compute everything the upload needs
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from gitgallery.client.sync.types import PrepareError, PreparedAsset
from gitgallery.core.fingerprint import content_hash, encode_content, repo_path

if TYPE_CHECKING:
    from gitgallery.client.media import MediaAsset, MediaLibrary

logger = logging.getLogger(__name__)


async def prepare_asset(asset: MediaAsset, media: MediaLibrary) -> PreparedAsset:
    """Read an asset's content and derive its remote location.

    Args:
        asset: Asset to prepare.
        media: Library the asset belongs to.

    Returns:
        PreparedAsset ready for upload.

    Raises:
        PrepareError: If the content is inline or not readable (yet).
    """
    if asset.uri and asset.uri.startswith("data:"):
        raise PrepareError(f"Asset {asset.id} has an inline data URI")

    try:
        content = await media.read_asset(asset)
    except OSError as e:
        raise PrepareError(f"Cannot read asset {asset.id}: {e}") from e

    fp = asset.fingerprint
    encoded = encode_content(content)
    return PreparedAsset(
        asset=asset,
        fingerprint=fp,
        repo_path=repo_path(asset.folder_name, asset.filename or fp, fp),
        content=content,
        content_base64=encoded,
        content_hash=content_hash(encoded),
        file_size=len(content),
        creation_time=asset.creation_time,
    )
