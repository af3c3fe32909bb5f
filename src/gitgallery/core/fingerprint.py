"""Asset identity and remote path derivation.

This module provides pure functions shared by every store:
- fingerprint: Stable cross-store identity of an asset
- content_hash: Digest recorded in metadata for uploaded content
- repo_path: Canonical repository path for an asset
- sanitize_filename / normalize_path: Path segment helpers

Two different fingerprints may sanitize to the same repository path. That
collision is not detected; the later upload replaces the earlier file.
"""

from __future__ import annotations

import base64
import hashlib
import re
import time
import unicodedata
from urllib.parse import unquote

IMAGES_ROOT = "gitgallery/images"
UNSORTED_FOLDER = "Unsorted"
DEFAULT_EXTENSION = "jpg"

_CONTROL_CHARS = re.compile(r"[\u0000-\u001f\u007f-\u009f]")
_SEPARATORS = re.compile(r"[\\/]")
_RESERVED = re.compile(r'[:*?"<>|]')
_WHITESPACE = re.compile(r"\s+")
_UNSAFE = re.compile(r"[^a-zA-Z0-9._ -]+")
_EDGE_DASHES = re.compile(r"^-+|-+$")


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def fingerprint(name: str | None, timestamp: int | float | None, size: int | None) -> str:
    """Build the identity key of an asset.

    Args:
        name: Original filename.
        timestamp: Creation (or modification) time in epoch ms.
        size: File size in bytes.

    Returns:
        "{name}|{timestamp}|{size}" with missing parts replaced by 0.
    """
    stamp = int(timestamp) if timestamp else 0
    return f"{name}|{stamp}|{int(size or 0)}"


def asset_fingerprint(
    asset_id: str,
    filename: str | None,
    creation_time: int | None,
    modification_time: int | None,
    file_size: int | None,
) -> str:
    """Fingerprint a media-library asset, applying the standard fallbacks."""
    name = filename or f"asset-{asset_id}"
    if creation_time is not None:
        stamp = creation_time
    elif modification_time is not None:
        stamp = modification_time
    else:
        stamp = 0
    return fingerprint(name, stamp, file_size)


def encode_content(data: bytes) -> str:
    """Encode raw bytes into the base64 transport form used by the API."""
    return base64.b64encode(data).decode("ascii")


def content_hash(content_base64: str) -> str:
    """Digest of the base64 transport text (not the raw bytes).

    Existing repositories carry hashes computed this way, so the convention
    is kept: SHA-256 over the ASCII base64 string, base64-encoded.
    """
    digest = hashlib.sha256(content_base64.encode("ascii")).digest()
    return base64.b64encode(digest).decode("ascii")


def sanitize_filename(name: str, fallback: str = "asset") -> str:
    """Make a name safe to use as a single repository path segment.

    Args:
        name: Raw folder or file name.
        fallback: Returned when nothing usable is left.

    Returns:
        Sanitized segment containing only [A-Za-z0-9._ -].
    """
    value = unicodedata.normalize("NFC", name or "")
    value = _CONTROL_CHARS.sub("", value)
    value = _SEPARATORS.sub("-", value)
    value = _RESERVED.sub("-", value)
    value = _WHITESPACE.sub(" ", value).strip()
    value = _UNSAFE.sub("-", value)
    value = _EDGE_DASHES.sub("", value)
    if not value or value in (".", ".."):
        return fallback
    return value


def normalize_path(path: str) -> str:
    """Use forward slashes and collapse repeated separators."""
    return re.sub(r"/+", "/", path.replace("\\", "/"))


def _file_segment(filename: str | None, fp: str) -> str:
    original = filename if filename and filename.strip() else ""
    segment = sanitize_filename(original, f"asset-{fp}")
    if "." in segment:
        return segment
    return f"{segment}.{DEFAULT_EXTENSION}"


def repo_path(folder_name: str | None, filename: str | None, fp: str) -> str:
    """Canonical repository path for an asset.

    Args:
        folder_name: Album or directory name on the device.
        filename: Original filename.
        fp: Asset fingerprint (used when the filename is unusable).

    Returns:
        "gitgallery/images/{folder}/{file}".
    """
    folder = sanitize_filename(folder_name or "", UNSORTED_FOLDER)
    return normalize_path(f"{IMAGES_ROOT}/{folder}/{_file_segment(filename, fp)}")


def folder_from_uri(uri: str | None) -> str | None:
    """Parent directory name of a file:// URI, if there is one."""
    if not uri or not uri.lower().startswith("file://"):
        return None
    decoded = unquote(uri)
    parts = [part for part in re.sub(r"^file://", "", decoded, flags=re.I).split("/") if part]
    if len(parts) < 2:
        return None
    return parts[-2]


def guess_extension(name: str | None, default: str = DEFAULT_EXTENSION) -> str:
    """Lower-cased extension of a filename or path, without the dot."""
    if not name:
        return default
    last = name.rsplit("/", 1)[-1]
    if "." not in last:
        return default
    ext = last.rsplit(".", 1)[-1].split("?", 1)[0].lower()
    return ext or default
