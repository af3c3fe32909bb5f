"""Download destinations and naming.

This module provides:
- build_download_name: Unique, sanitized filename plus MIME type
- resolve_download_directory: Validate the user-chosen download directory
- write_download: Write downloaded bytes without clobbering existing files
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from urllib.parse import unquote, urlparse

from gitgallery.core.fingerprint import sanitize_filename

logger = logging.getLogger(__name__)

DEFAULT_DOWNLOAD_EXTENSION = "bin"

DOWNLOAD_MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "heic": "image/heic",
    "heif": "image/heic",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "tif": "image/tiff",
    "tiff": "image/tiff",
    "svg": "image/svg+xml",
}


def mime_type_for_extension(ext: str) -> str:
    return DOWNLOAD_MIME_TYPES.get(ext.lower(), "application/octet-stream")


def build_download_name(base_name: str, timestamp: int) -> tuple[str, str]:
    """Name a downloaded file "{name}-{timestamp}.{ext}".

    Args:
        base_name: Last segment of the repository path.
        timestamp: Download time (epoch ms).

    Returns:
        Tuple of (file name, MIME type). The extension falls back to "bin".
    """
    fallback = f"download-{timestamp}"
    sanitized = sanitize_filename(base_name, fallback)
    stem, dot, ext = sanitized.rpartition(".")
    if not dot:
        stem = sanitized
        ext = base_name.rsplit(".", 1)[-1] if "." in base_name else ""
    stem = stem or fallback
    ext = ext or DEFAULT_DOWNLOAD_EXTENSION
    return f"{stem}-{timestamp}.{ext}", mime_type_for_extension(ext)


def resolve_download_directory(value: str | None) -> Path | None:
    """Turn a stored path or file:// URI into a writable directory.

    Returns:
        The directory, or None when unset, missing or not writable.
    """
    if not value:
        return None
    if value.startswith("file://"):
        path = Path(unquote(urlparse(value).path))
    else:
        path = Path(value).expanduser()
    if not path.is_dir() or not os.access(path, os.W_OK):
        logger.warning(f"Download directory not usable: {path}")
        return None
    return path


def write_download(directory: Path, file_name: str, data: bytes) -> Path:
    """Write data under directory, suffixing the name if it exists.

    Raises:
        OSError: If the directory cannot be created or written.
    """
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / file_name
    counter = 1
    while target.exists():
        target = directory / f"{Path(file_name).stem}-{counter}{Path(file_name).suffix}"
        counter += 1
    target.write_bytes(data)
    return target
