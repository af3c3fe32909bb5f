"""Tests for the directory-backed media library."""

from __future__ import annotations

from pathlib import Path

import pytest

from gitgallery.client.media import FolderMediaLibrary, MediaAsset


@pytest.fixture
def library_root(tmp_path: Path) -> Path:
    """Library with two albums and one loose photo."""
    root = tmp_path / "Pictures"
    (root / "Camera").mkdir(parents=True)
    (root / "Screenshots").mkdir()
    (root / "Camera" / "IMG_1.jpg").write_bytes(b"one")
    (root / "Camera" / "IMG_2.HEIC").write_bytes(b"two!")
    (root / "Camera" / "notes.txt").write_text("not media")
    (root / "Camera" / ".hidden.jpg").write_bytes(b"x")
    (root / "Screenshots" / "s.png").write_bytes(b"png")
    (root / "loose.jpg").write_bytes(b"loose")
    return root


class TestMediaAsset:
    """Tests for MediaAsset derived properties."""

    def test_fingerprint(self) -> None:
        asset = MediaAsset(id="1", filename="a.jpg", creation_time=5, file_size=3)
        assert asset.fingerprint == "a.jpg|5|3"

    def test_folder_prefers_uri_parent(self) -> None:
        asset = MediaAsset(id="1", uri="file:///sd/DCIM/Camera/a.jpg", album="Recents")
        assert asset.folder_name == "Camera"

    def test_folder_falls_back_to_album(self) -> None:
        asset = MediaAsset(id="1", uri="content://media/1", album="Recents")
        assert asset.folder_name == "Recents"


class TestFolderMediaLibrary:
    """Tests for FolderMediaLibrary."""

    @pytest.mark.asyncio
    async def test_list_albums(self, library_root: Path) -> None:
        library = FolderMediaLibrary(library_root)
        assert await library.list_albums() == ["Camera", "Screenshots"]

    @pytest.mark.asyncio
    async def test_list_assets_of_album(self, library_root: Path) -> None:
        """Only media files are listed; hidden files are skipped."""
        library = FolderMediaLibrary(library_root)
        page = await library.list_assets(album="Camera")

        assert sorted(a.id for a in page.assets) == ["Camera/IMG_1.jpg", "Camera/IMG_2.HEIC"]
        assert all(a.album == "Camera" for a in page.assets)
        assert page.has_next_page is False

    @pytest.mark.asyncio
    async def test_list_whole_library(self, library_root: Path) -> None:
        library = FolderMediaLibrary(library_root)
        page = await library.list_assets()

        ids = {a.id for a in page.assets}
        assert ids == {"Camera/IMG_1.jpg", "Camera/IMG_2.HEIC", "Screenshots/s.png", "loose.jpg"}
        loose = next(a for a in page.assets if a.id == "loose.jpg")
        assert loose.album is None
        assert loose.folder_name == "Pictures"

    @pytest.mark.asyncio
    async def test_pagination(self, library_root: Path) -> None:
        library = FolderMediaLibrary(library_root)
        first = await library.list_assets(first=3)
        second = await library.list_assets(first=3, after=first.end_cursor)

        assert len(first.assets) == 3
        assert first.has_next_page is True
        assert len(second.assets) == 1
        assert second.has_next_page is False
        assert {a.id for a in first.assets}.isdisjoint(a.id for a in second.assets)

    @pytest.mark.asyncio
    async def test_asset_metadata(self, library_root: Path) -> None:
        library = FolderMediaLibrary(library_root)
        page = await library.list_assets(album="Camera")
        asset = next(a for a in page.assets if a.filename == "IMG_2.HEIC")

        assert asset.file_size == 4
        assert asset.uri is not None and asset.uri.startswith("file://")
        assert asset.folder_name == "Camera"
        assert await library.read_asset(asset) == b"two!"

    @pytest.mark.asyncio
    async def test_permissions(self, library_root: Path, tmp_path: Path) -> None:
        assert await FolderMediaLibrary(library_root).ensure_permissions() is True
        assert await FolderMediaLibrary(tmp_path / "missing").ensure_permissions() is False

    @pytest.mark.asyncio
    async def test_read_missing_raises_oserror(self, library_root: Path) -> None:
        library = FolderMediaLibrary(library_root)
        with pytest.raises(OSError):
            await library.read_asset(MediaAsset(id="Camera/gone.jpg"))

    @pytest.mark.asyncio
    async def test_delete_assets(self, library_root: Path) -> None:
        library = FolderMediaLibrary(library_root)
        await library.delete_assets([MediaAsset(id="loose.jpg")])
        assert not (library_root / "loose.jpg").exists()

    @pytest.mark.asyncio
    async def test_save_to_library(self, library_root: Path, tmp_path: Path) -> None:
        """Imported files land in the Download album."""
        source = tmp_path / "x-1.jpg"
        source.write_bytes(b"x")
        library = FolderMediaLibrary(library_root)

        location = await library.save_to_library(source)

        assert (library_root / "Download" / "x-1.jpg").read_bytes() == b"x"
        assert location.startswith("file://")
        assert "Download" in await library.list_albums()
