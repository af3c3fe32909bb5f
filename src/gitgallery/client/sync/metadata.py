"""Sharded remote metadata store.

This module provides:
- MetaStore: Lazily loaded mirror of "what is on the remote"
- Manifest, ShardDocument: Versioned JSON documents stored in the repository
- Shard, ShardState: In-memory state of one shard
- Bucket helpers: bucket_for_entry, shard_path, bucket_from_shard_path

Layout:
    gitgallery/meta/manifest.json               index of every shard
    gitgallery/meta/YYYY/MM/DD/meta_dict.json   entries captured that UTC day
    gitgallery/meta/unknown/meta_dict.json      entries without a usable date
    gitgallery/meta/shards/<bucket>.json        legacy flat layout (read/write)
    gitgallery/meta/misc/<bucket>/meta_dict.json  legacy layout (read only)

Invariants:
    A shard document's bucket equals the bucket encoded in its path. Every
    bucket with at least one entry has one manifest row carrying the SHA of
    the last version this store wrote or read. Empty buckets have neither a
    manifest row nor a remote file.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

from gitgallery.core.fingerprint import now_ms
from gitgallery.core.types import MetaEntry

if TYPE_CHECKING:
    from gitgallery.client.api import GitHubStorage, RemoteFile

logger = logging.getLogger(__name__)

META_ROOT = "gitgallery/meta"
MANIFEST_PATH = f"{META_ROOT}/manifest.json"
LEGACY_SHARD_DIR = f"{META_ROOT}/shards"
SHARD_FILENAME = "meta_dict.json"

MANIFEST_VERSION = 1
SHARD_VERSION = 1
DEFAULT_PRELOAD_TARGET = 450
UNKNOWN_BUCKET = "unknown"

CREATE_MANIFEST_MESSAGE = "Create GitGallery meta manifest"
UPDATE_MANIFEST_MESSAGE = "Update GitGallery meta manifest"

_DATE_BUCKET = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_LIBRARY_PATH = re.compile(r"gitgallery/library/(\d{4})/(\d{2})/(\d{2})/")
_DATED_SHARD = re.compile(rf"^{META_ROOT}/(\d{{4}})/(\d{{2}})/(\d{{2}})/{re.escape(SHARD_FILENAME)}$")
_UNKNOWN_SHARD = re.compile(rf"^{META_ROOT}/unknown/{re.escape(SHARD_FILENAME)}$")
_LEGACY_SHARD = re.compile(rf"^{LEGACY_SHARD_DIR}/(.+)\.json$")
_MISC_SHARD = re.compile(rf"^{META_ROOT}/misc/(.+)/{re.escape(SHARD_FILENAME)}$")


# === Buckets ===


def sanitize_bucket(bucket: str | None) -> str:
    """Lower-case a bucket name and replace anything but [0-9a-z-]."""
    cleaned = re.sub(r"[^0-9a-z-]", "-", (bucket or "").strip().lower())
    return cleaned or UNKNOWN_BUCKET


def bucket_from_timestamp(value: int | float | None) -> str:
    """UTC "YYYY-MM-DD" of an epoch-ms timestamp, or "unknown"."""
    if not value:
        return UNKNOWN_BUCKET
    try:
        date = datetime.fromtimestamp(value / 1000, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return UNKNOWN_BUCKET
    return date.strftime("%Y-%m-%d")


def bucket_from_fingerprint(fingerprint: str) -> str:
    """Bucket of the timestamp embedded in a fingerprint."""
    # Filenames may contain "|"; the last two fields are always numeric
    parts = fingerprint.rsplit("|", 2)
    if len(parts) == 3:
        try:
            return bucket_from_timestamp(float(parts[1]))
        except ValueError:
            pass
    return UNKNOWN_BUCKET


def bucket_from_repo_path(path: str | None) -> str:
    """Bucket encoded in a dated library path, or "unknown"."""
    match = _LIBRARY_PATH.search(path or "")
    if not match:
        return UNKNOWN_BUCKET
    return "-".join(match.groups())


def bucket_for_entry(entry: MetaEntry) -> str:
    """Resolve the shard bucket of an entry.

    Tries capture time, upload time, the repository path, then the
    fingerprint timestamp; falls back to "unknown".
    """
    candidates = (
        bucket_from_timestamp(entry.created_at),
        bucket_from_timestamp(entry.uploaded_at),
        bucket_from_repo_path(entry.repo_path),
        bucket_from_fingerprint(entry.fingerprint),
    )
    for bucket in candidates:
        if bucket != UNKNOWN_BUCKET:
            return sanitize_bucket(bucket)
    return UNKNOWN_BUCKET


def shard_path(bucket: str) -> str:
    """Repository path of a bucket's shard document."""
    match = _DATE_BUCKET.match(bucket)
    if match:
        year, month, day = match.groups()
        return f"{META_ROOT}/{year}/{month}/{day}/{SHARD_FILENAME}"
    if bucket == UNKNOWN_BUCKET:
        return f"{META_ROOT}/{UNKNOWN_BUCKET}/{SHARD_FILENAME}"
    return f"{LEGACY_SHARD_DIR}/{sanitize_bucket(bucket)}.json"


def bucket_from_shard_path(path: str | None) -> str | None:
    """Bucket of a shard file path, or None if path is not a shard."""
    if not path:
        return None
    normalized = path.replace("\\", "/")
    match = _DATED_SHARD.match(normalized)
    if match:
        return "-".join(match.groups())
    if _UNKNOWN_SHARD.match(normalized):
        return UNKNOWN_BUCKET
    match = _LEGACY_SHARD.match(normalized) or _MISC_SHARD.match(normalized)
    if match:
        return sanitize_bucket(match.group(1))
    return None


# === Documents ===


def _number(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if value != value or value in (float("inf"), float("-inf")):
        return default
    return int(value)


@dataclass
class ShardDocument:
    """Entries of one bucket, as stored in the repository."""

    bucket: str
    entries: dict[str, MetaEntry] = field(default_factory=dict)
    version: int = SHARD_VERSION
    generated_at: int = field(default_factory=now_ms)

    @classmethod
    def from_dict(cls, bucket: str, data: Any) -> ShardDocument:
        """Normalize a raw document, dropping malformed entries."""
        if not isinstance(data, dict):
            return cls(bucket=bucket)
        now = now_ms()
        entries: dict[str, MetaEntry] = {}
        raw_entries = data.get("entries")
        if isinstance(raw_entries, dict):
            for key, raw in raw_entries.items():
                entry = MetaEntry.from_dict(raw, fingerprint=key)
                if entry is None:
                    continue
                if entry.updated_at is None:
                    entry.updated_at = now
                entries[entry.fingerprint] = entry
        return cls(
            bucket=bucket,
            entries=entries,
            version=_number(data.get("version"), SHARD_VERSION),
            generated_at=_number(data.get("generatedAt"), now),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "bucket": self.bucket,
            "generatedAt": self.generated_at,
            "entries": {fp: entry.to_dict() for fp, entry in self.entries.items()},
        }


@dataclass
class ManifestShard:
    """Manifest row describing one shard."""

    path: str
    count: int
    updated_at: int
    sha: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "count": self.count,
            "updatedAt": self.updated_at,
            "sha": self.sha,
        }


@dataclass
class Manifest:
    """Index of every shard in the repository."""

    shards: dict[str, ManifestShard] = field(default_factory=dict)
    version: int = MANIFEST_VERSION
    updated_at: int = field(default_factory=now_ms)

    @classmethod
    def from_dict(cls, data: Any) -> Manifest | None:
        """Normalize a raw manifest; None if it is not a JSON object."""
        if not isinstance(data, dict):
            return None
        shards: dict[str, ManifestShard] = {}
        raw_shards = data.get("shards")
        if isinstance(raw_shards, dict):
            for key, raw in raw_shards.items():
                if not isinstance(raw, dict):
                    continue
                bucket = sanitize_bucket(key)
                path = raw.get("path")
                sha = raw.get("sha")
                shards[bucket] = ManifestShard(
                    path=path if isinstance(path, str) and path else shard_path(bucket),
                    count=_number(raw.get("count"), 0),
                    updated_at=_number(raw.get("updatedAt"), 0),
                    sha=sha if isinstance(sha, str) else None,
                )
        return cls(
            shards=shards,
            version=_number(data.get("version"), MANIFEST_VERSION),
            updated_at=_number(data.get("updatedAt"), now_ms()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": MANIFEST_VERSION,
            "updatedAt": self.updated_at,
            "shards": {bucket: row.to_dict() for bucket, row in self.shards.items()},
        }


def _encode(document: dict[str, Any]) -> bytes:
    return json.dumps(document, indent=2).encode("utf-8")


def _decode(file: RemoteFile) -> Any | None:
    try:
        return json.loads(file.text())
    except (UnicodeDecodeError, ValueError):
        logger.warning(f"Unreadable metadata document at {file.path}")
        return None


# === In-memory state ===


class ShardState(Enum):
    """Lifecycle of a shard known to the store.

    A bucket with no Shard object at all is unknown.
    """

    NOT_LOADED = auto()  # Listed in the manifest, document not fetched
    LOADED = auto()  # Document cached, matches remote
    DIRTY = auto()  # Document mutated, write pending
    PERSISTED = auto()  # Document written by this store


@dataclass
class Shard:
    """In-memory state of one bucket."""

    bucket: str
    path: str
    sha: str | None = None
    count: int = 0
    updated_at: int = 0
    doc: ShardDocument | None = None
    state: ShardState = ShardState.NOT_LOADED

    def unload(self) -> None:
        """Forget the cached document so the next access refetches it."""
        self.doc = None
        self.state = ShardState.NOT_LOADED


class _ReverseIndex:
    """Lookups over every entry of the loaded shards."""

    def __init__(self) -> None:
        self.by_fingerprint: dict[str, MetaEntry] = {}
        self.path_to_fingerprint: dict[str, str] = {}
        self.fingerprint_to_bucket: dict[str, str] = {}
        self.bucket_to_fingerprints: dict[str, set[str]] = {}
        self.fingerprint_to_paths: dict[str, set[str]] = {}

    def __len__(self) -> int:
        return len(self.by_fingerprint)

    def clear(self) -> None:
        self.by_fingerprint.clear()
        self.path_to_fingerprint.clear()
        self.fingerprint_to_bucket.clear()
        self.bucket_to_fingerprints.clear()
        self.fingerprint_to_paths.clear()

    def remove(self, fingerprint: str) -> None:
        self.by_fingerprint.pop(fingerprint, None)
        bucket = self.fingerprint_to_bucket.pop(fingerprint, None)
        if bucket is not None:
            members = self.bucket_to_fingerprints.get(bucket)
            if members is not None:
                members.discard(fingerprint)
                if not members:
                    del self.bucket_to_fingerprints[bucket]
        for path in self.fingerprint_to_paths.pop(fingerprint, set()):
            if self.path_to_fingerprint.get(path) == fingerprint:
                del self.path_to_fingerprint[path]

    def evict_bucket(self, bucket: str) -> None:
        for fingerprint in list(self.bucket_to_fingerprints.get(bucket, ())):
            self.remove(fingerprint)

    def ingest(self, doc: ShardDocument) -> None:
        """Replace the bucket's entries with the document's entries."""
        self.evict_bucket(doc.bucket)
        for fingerprint, entry in doc.entries.items():
            # An entry may move between buckets when its dates change
            self.remove(fingerprint)
            self.by_fingerprint[fingerprint] = entry
            self.fingerprint_to_bucket[fingerprint] = doc.bucket
            self.bucket_to_fingerprints.setdefault(doc.bucket, set()).add(fingerprint)
            paths = {p for p in (entry.repo_path, entry.preview_repo_path) if p}
            for path in paths:
                self.path_to_fingerprint[path] = fingerprint
            if paths:
                self.fingerprint_to_paths[fingerprint] = paths

    def get(self, fingerprint_or_path: str) -> MetaEntry | None:
        entry = self.by_fingerprint.get(fingerprint_or_path)
        if entry is not None:
            return entry
        resolved = self.path_to_fingerprint.get(fingerprint_or_path)
        if resolved is None:
            return None
        return self.by_fingerprint.get(resolved)


# === Store ===


class MetaStore:
    """Manifest plus date-bucketed shards, loaded on demand.

    All mutations must be serialized by the caller (the sync job queue).
    Concurrent reads and loads are safe.
    """

    def __init__(
        self,
        storage: GitHubStorage,
        preload_target: int = DEFAULT_PRELOAD_TARGET,
    ) -> None:
        """Initialize the store.

        Args:
            storage: Remote storage bridge for the repository.
            preload_target: Entry count load() tries to reach.
        """
        self._storage = storage
        self.preload_target = preload_target
        self._manifest: Manifest | None = None
        self._manifest_sha: str | None = None
        self._shards: dict[str, Shard] = {}
        self._index = _ReverseIndex()
        self._base_lock = asyncio.Lock()
        self.fetched_at: int | None = None

    # === Introspection ===

    @property
    def loaded(self) -> bool:
        """Whether the manifest has been fetched (or rebuilt)."""
        return self._manifest is not None

    @property
    def manifest(self) -> Manifest | None:
        return self._manifest

    @property
    def manifest_sha(self) -> str | None:
        return self._manifest_sha

    def shard(self, bucket: str) -> Shard | None:
        """In-memory state of a bucket (None means unknown)."""
        return self._shards.get(sanitize_bucket(bucket))

    def __len__(self) -> int:
        return len(self._index)

    # === Loading ===

    async def load(self, preload_target: int | None = None) -> None:
        """Fetch the manifest and preload the freshest shards.

        Shards are loaded newest first until the in-memory entry count
        reaches the target or no shards remain.
        """
        target = self.preload_target if preload_target is None else preload_target
        await self._ensure_base()
        for bucket in self._buckets_by_freshness():
            if len(self._index) >= target:
                break
            await self.ensure_shard_loaded(bucket)

    async def ensure_all_loaded(self) -> None:
        """Load every shard listed in the manifest."""
        await self._ensure_base()
        for bucket in self._buckets_by_freshness():
            await self.ensure_shard_loaded(bucket)

    async def ensure_shard_loaded(self, bucket: str) -> Shard:
        """Fetch a bucket's document unless it is cached already."""
        shard, _ = await self._load_shard(bucket)
        return shard

    async def _load_shard(self, bucket: str) -> tuple[Shard, ShardDocument]:
        await self._ensure_base()
        key = sanitize_bucket(bucket)
        shard = self._shards.get(key)
        if shard is None:
            shard = self._shards[key] = Shard(bucket=key, path=shard_path(key))
        if shard.doc is not None:
            return shard, shard.doc

        doc, sha = await self._fetch_shard(key, shard.path)
        shard.doc = doc
        shard.sha = sha
        shard.count = len(doc.entries)
        shard.updated_at = doc.generated_at
        shard.state = ShardState.LOADED
        if doc.entries:
            self._index.ingest(doc)
            self._mark_manifest(shard)
        else:
            self._index.evict_bucket(key)
            self._require_manifest().shards.pop(key, None)
        return shard, doc

    def invalidate(self) -> None:
        """Drop all cached state; the next access refetches the manifest."""
        self._manifest = None
        self._manifest_sha = None
        self._shards = {}
        self._index.clear()
        self.fetched_at = None

    # === Queries ===

    def get_entry(self, fingerprint_or_path: str) -> MetaEntry | None:
        """Look up a loaded entry by fingerprint or repository path."""
        return self._index.get(fingerprint_or_path)

    def cached_entries(self, limit: int | None = None, offset: int = 0) -> list[MetaEntry]:
        """Loaded entries, most recently uploaded first."""
        entries = sorted(
            self._index.by_fingerprint.values(),
            key=lambda entry: entry.uploaded_at or 0,
            reverse=True,
        )
        if limit is None or limit <= 0:
            return entries[offset:]
        return entries[offset : offset + limit]

    # === Mutations ===

    async def upsert(self, entry: MetaEntry) -> MetaEntry:
        """Write an entry into its bucket's shard and update the manifest.

        An entry whose dates moved it to another bucket is dropped from the
        shard that held it before.

        Raises:
            VersionConflictError: If the shard or manifest changed remotely.
        """
        await self._ensure_base()
        bucket = bucket_for_entry(entry)
        previous = self._index.fingerprint_to_bucket.get(entry.fingerprint)
        shard, doc = await self._load_shard(bucket)

        stored = replace(entry, updated_at=now_ms())
        doc.entries[stored.fingerprint] = stored
        shard.state = ShardState.DIRTY
        try:
            await self._persist_shard(shard, doc, f"Update meta shard {bucket}")
        except Exception:
            shard.unload()
            self._index.evict_bucket(bucket)
            raise
        self._mark_manifest(shard)
        try:
            if previous is not None and previous != bucket:
                logger.debug(f"Moving {stored.fingerprint} from bucket {previous} to {bucket}")
                await self._drop_entries(previous, [stored.fingerprint])
        finally:
            self._index.ingest(doc)
            await self._write_manifest()
        return stored

    async def remove(self, fingerprints: list[str]) -> int:
        """Delete entries from their shards.

        Emptied shards are deleted remotely and dropped from the manifest.
        The manifest is written once at the end, also when a later group
        fails after earlier groups changed the remote.

        Returns:
            Number of entries removed.
        """
        unique = list(dict.fromkeys(fp for fp in fingerprints if fp))
        if not unique:
            return 0
        await self._ensure_base()

        grouped: dict[str, list[str]] = {}
        for fingerprint in unique:
            bucket = self._index.fingerprint_to_bucket.get(fingerprint) or bucket_from_fingerprint(
                fingerprint
            )
            grouped.setdefault(sanitize_bucket(bucket), []).append(fingerprint)

        removed = 0
        try:
            for bucket, group in grouped.items():
                removed += await self._drop_entries(bucket, group)
        finally:
            if removed:
                await self._write_manifest()
        logger.info(f"Removed {removed} metadata entries")
        return removed

    # === Internals ===

    async def _drop_entries(self, bucket: str, fingerprints: list[str]) -> int:
        """Remove entries from one shard, then rewrite or delete the shard.

        Returns:
            Number of entries removed (0 leaves the remote untouched).
        """
        shard, doc = await self._load_shard(bucket)
        dropped = [fp for fp in fingerprints if doc.entries.pop(fp, None) is not None]
        if not dropped:
            return 0
        shard.state = ShardState.DIRTY
        try:
            if doc.entries:
                await self._persist_shard(shard, doc, f"Update meta shard {bucket}")
                self._index.ingest(doc)
                self._mark_manifest(shard)
            else:
                await self._delete_shard(shard)
        except Exception:
            # Memory no longer matches the remote; refetch on next access
            shard.unload()
            self._index.evict_bucket(bucket)
            raise
        return len(dropped)

    def _require_manifest(self) -> Manifest:
        if self._manifest is None:
            raise RuntimeError("Metadata manifest is not loaded")
        return self._manifest

    def _buckets_by_freshness(self) -> list[str]:
        ordered = sorted(
            self._shards.values(),
            key=lambda shard: (shard.updated_at or 0, shard.bucket),
            reverse=True,
        )
        return [shard.bucket for shard in ordered]

    def _mark_manifest(self, shard: Shard) -> None:
        rows = self._require_manifest().shards
        if shard.count == 0:
            rows.pop(shard.bucket, None)
            return
        rows[shard.bucket] = ManifestShard(
            path=shard.path,
            count=shard.count,
            updated_at=shard.updated_at,
            sha=shard.sha,
        )

    async def _ensure_base(self) -> None:
        if self._manifest is not None:
            return
        async with self._base_lock:
            if self._manifest is not None:
                return
            self._index.clear()
            self._shards = {}

            file = await self._storage.get_file(MANIFEST_PATH)
            manifest = Manifest.from_dict(_decode(file)) if file is not None else None
            if manifest is None:
                if file is None:
                    logger.info("No metadata manifest on remote, rebuilding from shards")
                else:
                    logger.warning("Metadata manifest unreadable, rebuilding from shards")
                manifest = await self._rebuild_manifest()
                self._manifest_sha = await self._storage.put_file(
                    MANIFEST_PATH,
                    _encode(manifest.to_dict()),
                    CREATE_MANIFEST_MESSAGE,
                    sha=file.sha if file is not None else None,
                )
            else:
                self._manifest_sha = file.sha if file is not None else None
                for bucket, row in manifest.shards.items():
                    self._shards[bucket] = Shard(
                        bucket=bucket,
                        path=row.path,
                        sha=row.sha,
                        count=row.count,
                        updated_at=row.updated_at,
                    )
            self._manifest = manifest
            self.fetched_at = now_ms()

    async def _rebuild_manifest(self) -> Manifest:
        """Walk the metadata directory and index every shard file found."""
        manifest = Manifest()
        for bucket, path in await self._list_shard_files():
            doc, sha = await self._fetch_shard(bucket, path)
            shard = Shard(
                bucket=bucket,
                path=path,
                sha=sha,
                count=len(doc.entries),
                updated_at=doc.generated_at,
                doc=doc,
                state=ShardState.LOADED,
            )
            self._shards[bucket] = shard
            if shard.count == 0:
                continue
            self._index.ingest(doc)
            manifest.shards[bucket] = ManifestShard(
                path=path, count=shard.count, updated_at=shard.updated_at, sha=sha
            )
        logger.info(f"Rebuilt metadata manifest with {len(manifest.shards)} shards")
        return manifest

    async def _list_shard_files(self) -> list[tuple[str, str]]:
        files: list[tuple[str, str]] = []
        pending = [META_ROOT]
        while pending:
            listing = await self._storage.list_directory(pending.pop(0))
            for item in listing or []:
                if item.type == "dir":
                    pending.append(item.path)
                elif item.type == "file":
                    bucket = bucket_from_shard_path(item.path)
                    if bucket is not None:
                        files.append((bucket, item.path))
        return files

    async def _fetch_shard(self, bucket: str, path: str) -> tuple[ShardDocument, str | None]:
        file = await self._storage.get_file(path)
        if file is None:
            return ShardDocument(bucket=bucket), None
        return ShardDocument.from_dict(bucket, _decode(file)), file.sha

    async def _persist_shard(self, shard: Shard, doc: ShardDocument, message: str) -> None:
        doc.bucket = shard.bucket
        doc.version = SHARD_VERSION
        doc.generated_at = now_ms()
        shard.sha = await self._storage.put_file(shard.path, _encode(doc.to_dict()), message, sha=shard.sha)
        shard.count = len(doc.entries)
        shard.updated_at = doc.generated_at
        shard.state = ShardState.PERSISTED

    async def _delete_shard(self, shard: Shard) -> None:
        await self._storage.delete_file(shard.path, shard.sha, f"Delete meta shard {shard.bucket}")
        self._shards.pop(shard.bucket, None)
        self._index.evict_bucket(shard.bucket)
        self._require_manifest().shards.pop(shard.bucket, None)

    async def _write_manifest(self) -> None:
        manifest = self._require_manifest()
        manifest.updated_at = now_ms()
        self._manifest_sha = await self._storage.put_file(
            MANIFEST_PATH,
            _encode(manifest.to_dict()),
            UPDATE_MANIFEST_MESSAGE,
            sha=self._manifest_sha,
        )
