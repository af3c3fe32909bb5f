"""Local content cache for remote previews and originals.

This module provides:
- ContentCache: Per-repository on-disk cache with locking and eviction
- CacheManifest: Per-entry bookkeeping stored next to the cached files
- cache_tag, path_variants, repo_key: Helpers shared with tests

Layout:
    <root>/<owner>__<repo>__<branch>/<fingerprint>/manifest.json
                                                   preview.jpg
                                                   original.<ext>

Each entry directory belongs to one fingerprint. Its manifest carries a tag
built from the remote entry (hash, size, path, upload time); when the tag no
longer matches, the directory is wiped and rebuilt. Every operation on an
entry directory, eviction included, runs under that entry's lock.
"""

from __future__ import annotations

import asyncio
import io
import json
import logging
import re
import shutil
import unicodedata
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, unquote

from PIL import Image, ImageOps

from gitgallery.client.api import APIError, NotFoundError, RemoteFile
from gitgallery.client.locks import KeyedLock
from gitgallery.core.config import CacheSettings
from gitgallery.core.fingerprint import guess_extension, now_ms

if TYPE_CHECKING:
    from gitgallery.client.api import GitHubStorage
    from gitgallery.core.config import RepoInfo
    from gitgallery.core.types import MetaEntry

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
PREVIEW_FILE = "preview.jpg"

# Pillow raises these for unreadable or hostile images
IMAGE_ERRORS: tuple[type[Exception], ...] = (OSError, ValueError, Image.DecompressionBombError)


def sanitize_segment(value: str) -> str:
    """Make a value safe as a cache directory name."""
    return re.sub(r"[^a-zA-Z0-9_\-.]", "_", value)


def repo_key(repo: RepoInfo) -> str:
    """Directory name of a repository's cache partition."""
    return "__".join(sanitize_segment(part) for part in (repo.owner, repo.name, repo.branch))


def cache_tag(entry: MetaEntry) -> str:
    """Composite tag identifying the remote version of an entry."""
    content_hash = entry.content_hash or "nohash"
    size = entry.file_size if entry.file_size is not None else -1
    repo_path = entry.repo_path or "nop"
    uploaded_at = entry.uploaded_at if entry.uploaded_at is not None else -1
    return f"{content_hash}|{size}|{repo_path}|{uploaded_at}"


def path_variants(path: str) -> list[str]:
    """Spellings of a repository path to try when fetching.

    Raw, percent-decoded, per-segment re-encoded and NFC-normalized forms,
    without duplicates and in that order.
    """
    variants = [path]
    variants.append(unquote(path))
    variants.append("/".join(quote(unquote(segment), safe="") for segment in path.split("/")))
    variants.append(unicodedata.normalize("NFC", path))
    return list(dict.fromkeys(variants))


@dataclass
class CachedFile:
    """A file stored in an entry directory."""

    file: str
    updated_at: int

    @classmethod
    def from_dict(cls, data: Any) -> CachedFile | None:
        if not isinstance(data, dict) or not isinstance(data.get("file"), str):
            return None
        updated_at = data.get("updatedAt")
        return cls(file=data["file"], updated_at=updated_at if isinstance(updated_at, int) else 0)

    def to_dict(self) -> dict[str, Any]:
        return {"file": self.file, "updatedAt": self.updated_at}


@dataclass
class CacheManifest:
    """Bookkeeping for one cached entry (times in epoch ms)."""

    fingerprint: str
    tag: str
    preview: CachedFile | None = None
    original: CachedFile | None = None
    last_accessed: int | None = None
    last_viewed: int | None = None

    @classmethod
    def from_dict(cls, data: Any) -> CacheManifest | None:
        """Parse a manifest; None when it lacks identity fields."""
        if not isinstance(data, dict):
            return None
        if not data.get("fingerprint") or not data.get("tag"):
            return None
        return cls(
            fingerprint=str(data["fingerprint"]),
            tag=str(data["tag"]),
            preview=CachedFile.from_dict(data.get("preview")),
            original=CachedFile.from_dict(data.get("original")),
            last_accessed=data.get("lastAccessed"),
            last_viewed=data.get("lastViewed"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"fingerprint": self.fingerprint, "tag": self.tag}
        if self.preview:
            data["preview"] = self.preview.to_dict()
        if self.original:
            data["original"] = self.original.to_dict()
        if self.last_accessed is not None:
            data["lastAccessed"] = self.last_accessed
        if self.last_viewed is not None:
            data["lastViewed"] = self.last_viewed
        return data

    @property
    def last_used(self) -> int:
        return max(
            self.last_viewed or 0,
            self.last_accessed or 0,
            self.preview.updated_at if self.preview else 0,
            self.original.updated_at if self.original else 0,
        )


def _read_manifest(path: Path) -> CacheManifest | None:
    try:
        return CacheManifest.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, ValueError):
        return None


def _write_file(path: Path, data: bytes) -> None:
    """Write through a temporary file so readers never see partial content."""
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_bytes(data)
    tmp.replace(path)


def _dir_size(path: Path) -> int:
    total = 0
    for child in path.iterdir():
        if child.is_file():
            total += child.stat().st_size
    return total


def render_preview(data: bytes, dest: Path, max_width: int, quality: int) -> None:
    """Downscale an image to max_width and save it as JPEG."""
    with Image.open(io.BytesIO(data)) as source:
        image = ImageOps.exif_transpose(source)
        if image.width > max_width:
            height = max(1, round(image.height * max_width / image.width))
            image = image.resize((max_width, height), Image.Resampling.LANCZOS)
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        buffer = io.BytesIO()
        image.save(buffer, "JPEG", quality=quality)
    _write_file(dest, buffer.getvalue())


class _EntryContext:
    """Mutable view of an entry directory while its lock is held."""

    def __init__(self, directory: Path, manifest: CacheManifest, dirty: bool) -> None:
        self.dir = directory
        self.manifest = manifest
        self.dirty = dirty

    def path(self, file: str) -> Path:
        return self.dir / file

    def has_file(self, cached: CachedFile | None) -> bool:
        return cached is not None and self.path(cached.file).is_file()

    def set_preview(self, preview: CachedFile) -> None:
        self.manifest.preview = preview
        self.manifest.last_accessed = preview.updated_at
        self.dirty = True

    def set_original(self, original: CachedFile) -> None:
        self.manifest.original = original
        self.manifest.last_viewed = original.updated_at
        self.manifest.last_accessed = original.updated_at
        self.dirty = True

    def clear_original(self) -> None:
        if self.manifest.original or self.manifest.last_viewed:
            self.manifest.original = None
            self.manifest.last_viewed = None
            self.dirty = True

    def touch_access(self, now: int) -> None:
        self.manifest.last_accessed = now
        self.dirty = True

    def touch_view(self, now: int) -> None:
        self.manifest.last_viewed = now
        self.manifest.last_accessed = now
        self.dirty = True

    def replace_files(self, prefix: str) -> None:
        """Delete stored files named prefix.* before writing a new one."""
        for old in self.dir.glob(f"{prefix}.*"):
            old.unlink(missing_ok=True)


@dataclass
class PruneResult:
    """Outcome of an eviction run."""

    removed: int = 0
    freed_bytes: int = 0
    total_bytes: int = 0
    skipped: bool = False


@dataclass
class _EntryStat:
    key: str
    dir: Path
    size: int
    last_used: int
    has_original: bool


class ContentCache:
    """On-disk cache of remote previews and originals for one repository.

    Usage:
        cache = ContentCache(settings.cache_dir, storage)
        path = await cache.ensure_preview(entry)
    """

    def __init__(
        self,
        root: Path,
        storage: GitHubStorage,
        settings: CacheSettings | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        """Initialize the cache.

        Args:
            root: Cache root shared by all repositories.
            storage: Remote storage bridge; its repository keys the partition.
            settings: Size, age and preview tunables.
            locks: Per-entry lock map (a private one by default).
        """
        self.root = Path(root)
        self._storage = storage
        self.settings = settings or CacheSettings()
        self._locks = locks or KeyedLock()
        self._last_prune: int | None = None
        self._warmed = False

    @property
    def repo_dir(self) -> Path:
        """Cache partition of the storage's repository."""
        return self.root / repo_key(self._storage.repo)

    def _lock_key(self, dir_name: str) -> str:
        return f"{repo_key(self._storage.repo)}::{dir_name}"

    def entry_dir(self, fingerprint: str) -> Path:
        return self.repo_dir / sanitize_segment(fingerprint)

    # === Entry access ===

    @asynccontextmanager
    async def _entry(self, entry: MetaEntry) -> AsyncIterator[_EntryContext]:
        await self.prune()
        directory = self.entry_dir(entry.fingerprint)
        async with self._locks.hold(self._lock_key(directory.name)):
            directory.mkdir(parents=True, exist_ok=True)
            manifest_path = directory / MANIFEST_NAME
            tag = cache_tag(entry)
            manifest = _read_manifest(manifest_path)
            stale = manifest is None and manifest_path.exists()
            if manifest is not None and (manifest.fingerprint != entry.fingerprint or manifest.tag != tag):
                stale = True
                manifest = None
            if stale:
                logger.debug(f"Discarding stale cache entry {directory.name}")
                shutil.rmtree(directory, ignore_errors=True)
                directory.mkdir(parents=True, exist_ok=True)

            ctx = _EntryContext(
                directory,
                manifest or CacheManifest(fingerprint=entry.fingerprint, tag=tag),
                dirty=manifest is None,
            )
            yield ctx
            if ctx.dirty:
                _write_file(manifest_path, json.dumps(ctx.manifest.to_dict()).encode("utf-8"))

    async def ensure_preview(self, entry: MetaEntry) -> Path:
        """Path of a cached preview for entry, fetching it if needed."""
        async with self._entry(entry) as ctx:
            manifest = ctx.manifest
            cached = manifest.preview
            if cached is not None and ctx.has_file(cached):
                now = now_ms()
                interval = self.settings.preview_touch_interval * 1000
                if not manifest.last_accessed or now - manifest.last_accessed > interval:
                    ctx.touch_access(now)
                return ctx.path(cached.file)

            preview = await self._build_preview(ctx, entry)
            ctx.set_preview(preview)
            if manifest.original and not ctx.has_file(manifest.original):
                ctx.clear_original()
            return ctx.path(preview.file)

    async def ensure_original(self, entry: MetaEntry) -> Path:
        """Path of the cached full-resolution file, fetching it if needed."""
        async with self._entry(entry) as ctx:
            manifest = ctx.manifest
            cached = manifest.original
            if cached is not None and ctx.has_file(cached):
                now = now_ms()
                interval = self.settings.view_touch_interval * 1000
                if not manifest.last_viewed or now - manifest.last_viewed > interval:
                    ctx.touch_view(now)
                return ctx.path(cached.file)

            remote, used_path = await self._fetch([entry.repo_path])
            name = f"original.{guess_extension(used_path, 'bin')}"
            ctx.replace_files("original")
            _write_file(ctx.path(name), remote.content)
            ctx.set_original(CachedFile(file=name, updated_at=now_ms()))
            return ctx.path(name)

    async def prefetch_previews(self, entries: Iterable[MetaEntry], workers: int = 3) -> int:
        """Warm previews for entries with a small number of concurrent fetches.

        Returns:
            Number of previews available afterwards.
        """
        semaphore = asyncio.Semaphore(max(1, workers))

        async def fetch_one(entry: MetaEntry) -> bool:
            async with semaphore:
                try:
                    await self.ensure_preview(entry)
                except (APIError, *IMAGE_ERRORS) as e:
                    logger.warning(f"Preview prefetch failed for {entry.repo_path}: {e}")
                    return False
                return True

        results = await asyncio.gather(*(fetch_one(entry) for entry in entries))
        return sum(results)

    # === Fetching ===

    async def _fetch(self, paths: list[str | None]) -> tuple[RemoteFile, str]:
        """Download the first path (in any spelling) that exists remotely."""
        candidates = [path for path in paths if path]
        if not candidates:
            raise NotFoundError("No repository path to fetch", 404)
        last_error: APIError | None = None
        for candidate in candidates:
            for variant in path_variants(candidate):
                try:
                    remote = await self._storage.get_file(variant)
                except APIError as e:
                    last_error = e
                    continue
                if remote is not None:
                    return remote, variant
        if last_error is not None:
            raise last_error
        raise NotFoundError(f"Not found on remote: {', '.join(candidates)}", 404)

    async def _build_preview(self, ctx: _EntryContext, entry: MetaEntry) -> CachedFile:
        original: RemoteFile | None = None
        used_path = ""
        if entry.repo_path:
            try:
                original, used_path = await self._fetch([entry.repo_path])
                ctx.replace_files("preview")
                await asyncio.to_thread(
                    render_preview,
                    original.content,
                    ctx.path(PREVIEW_FILE),
                    self.settings.preview_max_width,
                    self.settings.preview_quality,
                )
                return CachedFile(file=PREVIEW_FILE, updated_at=now_ms())
            except APIError:
                if not entry.preview_repo_path:
                    raise
            except IMAGE_ERRORS as e:
                logger.debug(f"Cannot render preview for {entry.repo_path}: {e}")

        if entry.preview_repo_path:
            remote, used_path = await self._fetch([entry.preview_repo_path])
            name = f"preview.{guess_extension(used_path)}"
            ctx.replace_files("preview")
            _write_file(ctx.path(name), remote.content)
            return CachedFile(file=name, updated_at=now_ms())

        if original is not None:
            # Undecodable format: keep the original bytes as the preview
            name = f"preview.{guess_extension(used_path, 'bin')}"
            ctx.replace_files("preview")
            _write_file(ctx.path(name), original.content)
            return CachedFile(file=name, updated_at=now_ms())

        raise NotFoundError(f"No content to build a preview for {entry.fingerprint}", 404)

    # === Maintenance ===

    async def warm_repo(self) -> None:
        """Run eviction once for this cache instance."""
        if self._warmed:
            return
        self._warmed = True
        await self.prune()

    async def purge_repo(self) -> None:
        """Delete the whole partition of the repository."""
        directory = self.repo_dir
        async with self._locks.hold(self._lock_key("__purge")):
            await asyncio.to_thread(shutil.rmtree, directory, True)
        self._last_prune = None
        self._warmed = False
        logger.info(f"Purged content cache {directory}")

    async def prune(self, force: bool = False) -> PruneResult:
        """Evict old entries and shrink the cache under its budget.

        Runs at most once per prune interval unless force is set.
        """
        now = now_ms()
        interval = self.settings.prune_interval * 1000
        if not force and self._last_prune is not None and now - self._last_prune < interval:
            return PruneResult(skipped=True)
        self._last_prune = now

        result = PruneResult()
        directory = self.repo_dir
        if not directory.is_dir():
            return result

        survivors: list[_EntryStat] = []
        for entry_dir in sorted(directory.iterdir()):
            if not entry_dir.is_dir():
                continue
            key = self._lock_key(entry_dir.name)
            # A fetch holding the lock may not have written its manifest yet
            async with self._locks.hold(key):
                if not entry_dir.is_dir():
                    continue
                manifest = _read_manifest(entry_dir / MANIFEST_NAME)
                if manifest is None:
                    shutil.rmtree(entry_dir, ignore_errors=True)
                    result.removed += 1
                    continue

                stat = _EntryStat(
                    key=key,
                    dir=entry_dir,
                    size=_dir_size(entry_dir),
                    last_used=manifest.last_used,
                    has_original=manifest.original is not None,
                )
                max_age = (
                    self.settings.max_age_original if stat.has_original else self.settings.max_age_preview
                )
                if now - stat.last_used > max_age * 1000:
                    shutil.rmtree(entry_dir, ignore_errors=True)
                    result.removed += 1
                    result.freed_bytes += stat.size
                    continue
            survivors.append(stat)

        total = sum(stat.size for stat in survivors)
        if total > self.settings.size_budget:
            target = self.settings.size_budget * self.settings.prune_target_ratio
            # Oldest first; entries holding an original go last on ties
            survivors.sort(key=lambda stat: (stat.last_used, stat.has_original))
            for stat in survivors:
                if total <= target:
                    break
                if not await self._evict_unchanged(stat):
                    continue
                total -= stat.size
                result.removed += 1
                result.freed_bytes += stat.size

        result.total_bytes = total
        if result.removed:
            logger.info(
                f"Cache eviction removed {result.removed} entries "
                f"({result.freed_bytes} bytes), {total} bytes remain"
            )
        return result

    async def _evict_unchanged(self, stat: _EntryStat) -> bool:
        """Delete an entry unless it was used or rebuilt since it was measured."""
        async with self._locks.hold(stat.key):
            manifest = _read_manifest(stat.dir / MANIFEST_NAME)
            if manifest is None or manifest.last_used != stat.last_used:
                return False
            shutil.rmtree(stat.dir, ignore_errors=True)
            return True
