"""Device media library interface.

This module provides:
- MediaAsset: One photo or video known to the device library
- AssetPage: One page of an enumeration
- MediaLibrary: Protocol the sync engine consumes
- FolderMediaLibrary: A directory tree used as the library (albums are folders)

The engine never talks to a platform photo API directly; a front end passes
an object implementing MediaLibrary.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from gitgallery.core.fingerprint import asset_fingerprint, folder_from_uri

logger = logging.getLogger(__name__)

MEDIA_EXTENSIONS = frozenset(
    {".jpg", ".jpeg", ".png", ".gif", ".heic", ".heif", ".webp", ".tif", ".tiff", ".bmp",
     ".dng", ".mp4", ".mov", ".m4v"}
)
DOWNLOAD_ALBUM = "Download"


@dataclass
class MediaAsset:
    """An asset in the device media library.

    Attributes:
        id: Library-local identifier.
        filename: Original filename.
        uri: Location of the content (file:// URI when local).
        creation_time: Capture time (epoch ms).
        modification_time: Last modification (epoch ms).
        file_size: Size in bytes.
        album: Album title the asset was enumerated from.
    """

    id: str
    filename: str | None = None
    uri: str | None = None
    creation_time: int | None = None
    modification_time: int | None = None
    file_size: int | None = None
    album: str | None = None

    @property
    def fingerprint(self) -> str:
        return asset_fingerprint(
            self.id, self.filename, self.creation_time, self.modification_time, self.file_size
        )

    @property
    def folder_name(self) -> str | None:
        """Folder used for the remote path: the URI's parent, then the album."""
        return folder_from_uri(self.uri) or self.album


@dataclass
class AssetPage:
    """One page of assets, newest first."""

    assets: list[MediaAsset] = field(default_factory=list)
    end_cursor: str | None = None
    has_next_page: bool = False


class MediaLibrary(Protocol):
    """Operations the sync engine needs from the device library."""

    async def ensure_permissions(self, write: bool = False) -> bool:
        """Whether access is granted (prompting the user if needed)."""
        ...

    async def list_albums(self) -> list[str]:
        ...

    async def list_assets(
        self, album: str | None = None, first: int = 60, after: str | None = None
    ) -> AssetPage:
        """Enumerate assets newest first, one page at a time."""
        ...

    async def read_asset(self, asset: MediaAsset) -> bytes:
        """Full content of an asset.

        Raises:
            OSError: If the content is not readable (yet).
        """
        ...

    async def request_download(self, asset: MediaAsset) -> None:
        """Ask the platform to materialize network-backed content locally."""
        ...

    async def delete_assets(self, assets: list[MediaAsset]) -> None:
        ...

    async def save_to_library(self, path: Path, album: str = DOWNLOAD_ALBUM) -> str:
        """Import a file into the library; returns the stored location."""
        ...


class FolderMediaLibrary:
    """Media library backed by a directory tree.

    Every sub-directory is an album; files directly under the root belong
    to no album. Asset ids are paths relative to the root.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()

    def _scan(self, album: str | None) -> list[MediaAsset]:
        base = self.root / album if album else self.root
        if not base.is_dir():
            return []
        assets: list[MediaAsset] = []
        for path in base.rglob("*"):
            if not path.is_file() or path.suffix.lower() not in MEDIA_EXTENSIONS:
                continue
            if path.name.startswith("."):
                continue
            stat = path.stat()
            mtime = int(stat.st_mtime * 1000)
            birth = getattr(stat, "st_birthtime", None)
            relative = path.relative_to(self.root)
            assets.append(
                MediaAsset(
                    id=relative.as_posix(),
                    filename=path.name,
                    uri=path.resolve().as_uri(),
                    creation_time=int(birth * 1000) if birth else mtime,
                    modification_time=mtime,
                    file_size=stat.st_size,
                    album=relative.parts[0] if len(relative.parts) > 1 else None,
                )
            )
        assets.sort(key=lambda a: (a.creation_time or 0, a.id), reverse=True)
        return assets

    def path_of(self, asset: MediaAsset) -> Path:
        return self.root / asset.id

    async def ensure_permissions(self, write: bool = False) -> bool:
        mode = os.R_OK | (os.W_OK if write else 0)
        return self.root.is_dir() and os.access(self.root, mode)

    async def list_albums(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir() and not p.name.startswith("."))

    async def list_assets(
        self, album: str | None = None, first: int = 60, after: str | None = None
    ) -> AssetPage:
        assets = self._scan(album)
        start = int(after) if after else 0
        page = assets[start : start + first]
        end = start + len(page)
        return AssetPage(assets=page, end_cursor=str(end), has_next_page=end < len(assets))

    async def read_asset(self, asset: MediaAsset) -> bytes:
        return self.path_of(asset).read_bytes()

    async def request_download(self, asset: MediaAsset) -> None:
        # Local files are always materialized
        logger.debug(f"Nothing to materialize for {asset.id}")

    async def delete_assets(self, assets: list[MediaAsset]) -> None:
        for asset in assets:
            self.path_of(asset).unlink(missing_ok=True)

    async def save_to_library(self, path: Path, album: str = DOWNLOAD_ALBUM) -> str:
        target_dir = self.root / album
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / Path(path).name
        shutil.copy2(path, target)
        return target.as_uri()
