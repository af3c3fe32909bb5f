"""Shared pytest fixtures for gitgallery tests."""

from __future__ import annotations

from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from gitgallery.client.media import MediaAsset
from gitgallery.client.state import LocalIndex
from gitgallery.client.sync.engine import SyncEngine
from gitgallery.core.config import SyncSettings
from tests.fakes import BASE_TIME, FakeMediaLibrary, FakeStorage


AssetFactory = Callable[..., MediaAsset]


@pytest.fixture
def storage() -> FakeStorage:
    """Empty in-memory repository."""
    return FakeStorage()


@pytest.fixture
def media() -> FakeMediaLibrary:
    """Empty device library with permissions granted."""
    return FakeMediaLibrary()


@pytest.fixture
def index(tmp_path: Path) -> Generator[LocalIndex, None, None]:
    """Local index in a temporary database."""
    local_index = LocalIndex(tmp_path / "data" / "gitgallery.db")
    yield local_index
    local_index.close()


@pytest.fixture
def settings(tmp_path: Path) -> SyncSettings:
    return SyncSettings(data_dir=tmp_path / "data")


@pytest.fixture
def engine(
    storage: FakeStorage, index: LocalIndex, media: FakeMediaLibrary, settings: SyncSettings
) -> SyncEngine:
    """Sync engine over the fake repository and library."""
    return SyncEngine(storage, index, media, settings, materialize_delay=0)  # type: ignore[arg-type]


@pytest.fixture
def add_asset(media: FakeMediaLibrary) -> AssetFactory:
    """Add a photo to the fake library and return it."""
    counter = iter(range(1, 10_000))

    def factory(
        filename: str | None = None,
        album: str | None = "Camera",
        created: int | None = None,
        content: bytes | None = None,
    ) -> MediaAsset:
        n = next(counter)
        data = content if content is not None else f"photo-{n}".encode()
        asset = MediaAsset(
            id=f"asset-{n}",
            filename=filename or f"IMG_{n:04d}.jpg",
            creation_time=created if created is not None else BASE_TIME + n * 1000,
            file_size=len(data),
            album=album,
        )
        return media.add(asset, data)

    return factory
