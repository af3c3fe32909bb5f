"""Sync engine orchestrating uploads, deletes and downloads.

This module provides:
- SyncEngine: Owns the job queue, metadata store, local index and content
  cache, and exposes every sync operation to a front end

All mutating operations are serialized through one JobQueue. Status and
index changes are published through observer registries; callbacks run
synchronously on the event loop thread.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from gitgallery.client.api import VersionConflictError
from gitgallery.client.cache import ContentCache
from gitgallery.client.events import EventEmitter, Signal, Unsubscribe
from gitgallery.client.media import DOWNLOAD_ALBUM
from gitgallery.client.state import (
    DOWNLOAD_DIRECTORY_KEY,
    LAST_DOWNLOAD_RUN_KEY,
    LAST_MANIFEST_SHA_KEY,
    LAST_UPLOAD_RUN_KEY,
    MIGRATION_COMPLETED_KEY,
    AssetSyncRecord,
)
from gitgallery.client.sync.downloads import (
    build_download_name,
    resolve_download_directory,
    write_download,
)
from gitgallery.client.sync.metadata import MetaStore
from gitgallery.client.sync.prepare import prepare_asset
from gitgallery.client.sync.queue import JobQueue
from gitgallery.client.sync.retry import retry_with_backoff
from gitgallery.client.sync.types import (
    DIRECTORY_PERMISSION_MESSAGE,
    INCOMPLETE_SCAN_MESSAGE,
    NO_ASSETS_MESSAGE,
    PERMISSION_MESSAGE,
    STEP_FAILURE_POLICY,
    UPLOAD_STEPS,
    BulkDeleteResult,
    CancelledException,
    CompletionEvent,
    DownloadError,
    FailurePolicy,
    PrepareError,
    PreparedAsset,
    StepOutcome,
    StepResult,
    SyncStatus,
    UploadBatchResult,
    UploadError,
    UploadIndexEntry,
    UploadStep,
)
from gitgallery.core.fingerprint import now_ms
from gitgallery.core.types import BatchType, MetaEntry

if TYPE_CHECKING:
    from gitgallery.client.api import GitHubStorage
    from gitgallery.client.media import MediaAsset, MediaLibrary
    from gitgallery.client.state import LocalIndex
    from gitgallery.core.config import CacheSettings, SyncSettings

logger = logging.getLogger(__name__)

# Pause before re-reading assets the OS was asked to materialize
MATERIALIZE_DELAY = 0.35  # seconds
PAGINATION_GUARD = 200
RESET_MESSAGE = "Reset GitGallery repository - {timestamp}"

ProgressCallback = Callable[[int, int], None]


@dataclass
class _UploadContext:
    item: PreparedAsset
    remote_sha: str | None = None


class SyncEngine:
    """Coordinates photo synchronization between the device and the repository.

    Usage:
        engine = SyncEngine(storage, index, media, settings)
        unsubscribe = engine.status_changed.subscribe(lambda: print(engine.get_status()))
        await engine.run_sync_once()
    """

    def __init__(
        self,
        storage: GitHubStorage,
        index: LocalIndex,
        media: MediaLibrary,
        settings: SyncSettings,
        meta: MetaStore | None = None,
        cache: ContentCache | None = None,
        cache_settings: CacheSettings | None = None,
        queue: JobQueue | None = None,
        materialize_delay: float = MATERIALIZE_DELAY,
    ) -> None:
        """Initialize the sync engine.

        Args:
            storage: Remote storage bridge for the repository.
            index: Local durable index.
            media: Device media library.
            settings: Sync preferences.
            meta: Metadata store (built from storage by default).
            cache: Content cache (built under settings.cache_dir by default).
            cache_settings: Tunables for the default cache.
            queue: Job queue (a private one by default).
            materialize_delay: Seconds to wait before re-reading assets.
        """
        self._storage = storage
        self._index = index
        self._media = media
        self.settings = settings
        self._meta = meta or MetaStore(storage, preload_target=settings.preload_target)
        self._cache = cache or ContentCache(settings.cache_dir, storage, cache_settings)
        self._queue = queue or JobQueue()
        self._materialize_delay = materialize_delay

        self.index_changed = Signal("upload_index")
        self.status_changed = Signal("sync_status")
        self.cache_invalidated = Signal("cache_invalidated")
        self.completed: EventEmitter[CompletionEvent] = EventEmitter("completion")

        self._status = SyncStatus()
        self._last_completion: CompletionEvent | None = None
        self._upload_index: dict[str, UploadIndexEntry] = {}
        self._blocklist: set[str] | None = None
        self._meta_ready = False
        self._cancel_token: asyncio.Event | None = None

        self._step_handlers: dict[UploadStep, Callable[[_UploadContext], Awaitable[None]]] = {
            UploadStep.RECORD_PENDING: self._step_record_pending,
            UploadStep.RESOLVE_SHA: self._step_resolve_sha,
            UploadStep.PUT_FILE: self._step_put_file,
            UploadStep.MARK_UPLOADED: self._step_mark_uploaded,
            UploadStep.UNBLOCK: self._step_unblock,
            UploadStep.UPSERT_META: self._step_upsert_meta,
        }

    # === Collaborators ===

    @property
    def meta(self) -> MetaStore:
        return self._meta

    @property
    def cache(self) -> ContentCache:
        return self._cache

    @property
    def index(self) -> LocalIndex:
        return self._index

    @property
    def queue(self) -> JobQueue:
        return self._queue

    # === Status ===

    def get_status(self) -> SyncStatus:
        """Current status snapshot."""
        return self._status

    @property
    def last_completion(self) -> CompletionEvent | None:
        return self._last_completion

    def subscribe_status(self, callback: Callable[[], None]) -> Unsubscribe:
        return self.status_changed.subscribe(callback)

    def subscribe_completion(self, callback: Callable[[CompletionEvent], None]) -> Unsubscribe:
        return self.completed.subscribe(callback)

    def _set_status(self, **changes: object) -> None:
        self._status = replace(self._status, **changes)
        self.status_changed.emit()

    def _record_completion(self, batch_type: BatchType, total: int, failed: int) -> None:
        event = CompletionEvent(type=batch_type, total=total, failed=failed, timestamp=now_ms())
        self._last_completion = event
        logger.info(f"{batch_type.value} batch finished: {total - failed}/{total} succeeded")
        self.completed.emit(event)

    def _idle_status(self, **changes: object) -> None:
        idle: dict[str, object] = {
            "running": False,
            "is_deleting": False,
            "last_batch_total": 0,
            "last_batch_uploaded": 0,
            "last_batch_type": None,
            "pending_uploads": 0,
        }
        idle.update(changes)
        self._set_status(**idle)

    # === Blocklist ===

    def _ensure_blocklist(self) -> set[str]:
        if self._blocklist is None:
            self._blocklist = self._index.blocklist()
        return self._blocklist

    def is_blocked(self, fingerprint: str) -> bool:
        """Whether automatic upload of fingerprint is suppressed."""
        return fingerprint in self._ensure_blocklist()

    def block(self, fingerprint: str | None) -> None:
        if not fingerprint:
            return
        blocklist = self._ensure_blocklist()
        if fingerprint in blocklist:
            return
        self._index.add_block(fingerprint)
        blocklist.add(fingerprint)

    def unblock(self, fingerprint: str | None) -> None:
        if not fingerprint:
            return
        blocklist = self._ensure_blocklist()
        if fingerprint not in blocklist:
            return
        self._index.remove_block(fingerprint)
        blocklist.discard(fingerprint)

    # === Upload index ===

    def refresh_upload_index(self) -> None:
        """Rebuild the in-memory upload index from the local index."""
        self._upload_index.clear()
        for record in self._index.list_assets():
            self._put_index_entry(record.fingerprint, record.asset_id, UploadIndexEntry.from_record(record))
        self.index_changed.emit()

    def _ensure_upload_index(self) -> None:
        if not self._upload_index:
            self.refresh_upload_index()

    def _put_index_entry(self, fingerprint: str, asset_id: str | None, entry: UploadIndexEntry) -> None:
        if asset_id:
            self._upload_index[asset_id] = entry
        self._upload_index[fingerprint] = entry

    def _update_index(self, record: AssetSyncRecord) -> None:
        self._put_index_entry(record.fingerprint, record.asset_id, UploadIndexEntry.from_record(record))
        self.index_changed.emit()

    def _remove_from_index(self, fingerprint: str, asset_id: str | None = None) -> None:
        self._upload_index.pop(fingerprint, None)
        if asset_id:
            self._upload_index.pop(asset_id, None)
        self.index_changed.emit()

    def _merge_meta_into_index(self) -> bool:
        """Mark every asset known from remote metadata as uploaded."""
        changed = False
        for entry in self._meta.cached_entries():
            current = self._upload_index.get(entry.fingerprint)
            incoming = UploadIndexEntry.from_meta(entry)
            if current is None:
                self._upload_index[entry.fingerprint] = incoming
                changed = True
            elif (
                not current.uploaded
                or current.repo_path != incoming.repo_path
                or current.content_hash != incoming.content_hash
            ):
                merged = replace(
                    current,
                    uploaded=True,
                    repo_path=incoming.repo_path,
                    content_hash=incoming.content_hash,
                    file_size=incoming.file_size,
                    creation_time=incoming.creation_time,
                    last_uploaded_at=incoming.last_uploaded_at,
                    last_error=None,
                )
                self._upload_index[entry.fingerprint] = merged
                changed = True
        if changed:
            self.index_changed.emit()
        return changed

    def get_upload_index(self) -> dict[str, UploadIndexEntry]:
        """Upload state keyed by both asset id and fingerprint."""
        self._ensure_upload_index()
        return dict(self._upload_index)

    def get_asset_status(self, key: str) -> UploadIndexEntry | None:
        """Upload state by device asset id or fingerprint."""
        self._ensure_upload_index()
        return self._upload_index.get(key)

    def is_asset_uploaded(self, asset: MediaAsset) -> bool:
        """Whether the asset is on the remote (blocked assets never are)."""
        fingerprint = asset.fingerprint
        if self.is_blocked(fingerprint):
            return False
        self._ensure_upload_index()
        entry = self._upload_index.get(asset.id) or self._upload_index.get(fingerprint)
        if entry is not None and entry.uploaded:
            return True
        return self._meta.get_entry(fingerprint) is not None

    # === Remote metadata ===

    async def _ensure_meta(self, force: bool = False) -> None:
        if force:
            self._meta.invalidate()
            self._meta_ready = False
        if self._meta_ready:
            return
        await self._meta.load()
        self._meta_ready = True
        if self._meta.manifest_sha:
            self._index.set_key(LAST_MANIFEST_SHA_KEY, self._meta.manifest_sha)

    async def hydrate_recent_meta(self, max_age_hours: float = 24, force: bool = False) -> None:
        """Load remote metadata, refetching when it is older than max_age_hours."""
        await self._cache.warm_repo()
        was_ready = self._meta_ready
        needs_fresh = force or not self._meta_ready
        if not needs_fresh and max_age_hours > 0 and self._last_completion is not None:
            max_age_ms = max_age_hours * 60 * 60 * 1000
            needs_fresh = now_ms() - self._last_completion.timestamp > max_age_ms

        await self._ensure_meta(force=needs_fresh)
        self._ensure_upload_index()
        changed = self._merge_meta_into_index()
        if (not was_ready or needs_fresh) and not changed:
            self.index_changed.emit()

    async def get_cloud_entries(self, limit: int = 300, offset: int = 0) -> list[MetaEntry]:
        """Remote entries loaded so far, most recently uploaded first."""
        await self._ensure_meta()
        self._ensure_upload_index()
        self._merge_meta_into_index()
        return self._meta.cached_entries(limit, offset)

    async def get_repo_entry_for_asset(self, asset: MediaAsset) -> MetaEntry | None:
        """Remote entry of a device asset, by fingerprint or recorded path."""
        await self._ensure_meta()
        fingerprint = asset.fingerprint
        entry = self._meta.get_entry(fingerprint)
        if entry is not None:
            return entry
        record = self._index.get_asset(fingerprint)
        if record is not None and record.repo_path:
            return self._meta.get_entry(record.repo_path)
        return None

    # === Asset enumeration ===

    async def _ingest_album(
        self,
        album: str | None,
        found: dict[str, MediaAsset],
        target: int | None,
        include_uploaded: bool,
    ) -> bool:
        """Page through an album into found.

        Returns:
            False if listing failed or the pagination guard tripped.
        """
        after: str | None = None
        for _ in range(PAGINATION_GUARD):
            if target is not None and len(found) >= target:
                return True
            try:
                page = await self._media.list_assets(album=album, first=self.settings.page_size, after=after)
            except Exception as e:
                logger.warning(f"Failed to list assets of {album or 'library'}: {e}")
                return False
            if not page.assets:
                return True
            for asset in page.assets:
                if asset.id in found:
                    continue
                if not include_uploaded and self.is_asset_uploaded(asset):
                    continue
                found[asset.id] = asset
                if target is not None and len(found) >= target:
                    return True
            end_cursor = page.end_cursor or page.assets[-1].id
            if not page.has_next_page or not end_cursor or end_cursor == after:
                return True
            after = end_cursor
        logger.warning("Pagination guard tripped; stopping enumeration")
        return False

    async def collect_assets(
        self, max_total: int | None = None, include_uploaded: bool = True
    ) -> list[MediaAsset]:
        """Enumerate assets of the selected albums, newest first.

        With no album selected (and the selection never initialized) the
        whole library is used. An initialized selection that is empty, or
        whose albums all disappeared, yields nothing.
        """
        if not await self._media.ensure_permissions():
            return []
        target = max_total if max_total and max_total > 0 else None
        if not include_uploaded:
            self._ensure_upload_index()
            await self._ensure_meta()

        albums = set(await self._media.list_albums())
        selected = [album for album in self.settings.selected_albums if album in albums]
        if self.settings.selection_initialized and not selected:
            return []

        found: dict[str, MediaAsset] = {}
        for album in selected or [None]:
            if target is not None and len(found) >= target:
                break
            await self._ingest_album(album, found, target, include_uploaded)

        return sorted(found.values(), key=lambda a: a.creation_time or 0, reverse=True)

    async def rescan_library(self) -> int:
        """Refresh last_seen_at of known assets and sweep the ones gone.

        The sweep only runs after the whole library was enumerated.

        Returns:
            Number of local records removed.
        """
        if not await self._media.ensure_permissions():
            self._set_status(last_error=PERMISSION_MESSAGE)
            return 0
        started = now_ms()
        found: dict[str, MediaAsset] = {}
        complete = await self._ingest_album(None, found, None, include_uploaded=True)
        for asset in found.values():
            if self._index.get_asset(asset.fingerprint) is not None:
                self._index.touch_asset(asset.fingerprint, asset_id=asset.id)
        if not complete:
            logger.warning(f"Skipping record sweep after a partial scan ({len(found)} assets seen)")
            self._set_status(last_error=INCOMPLETE_SCAN_MESSAGE)
            return 0
        removed = self._index.delete_assets_not_seen_since(started)
        if removed:
            logger.info(f"Swept {removed} records of assets no longer on the device")
            self.refresh_upload_index()
        return removed

    # === Uploads ===

    async def run_sync_once(self) -> UploadBatchResult | None:
        """Upload every not-yet-uploaded asset of the selected albums."""
        if not await self._media.ensure_permissions():
            self._set_status(last_error=PERMISSION_MESSAGE)
            return None
        assets = await self.collect_assets(include_uploaded=False)
        if not assets:
            self._set_status(last_error=NO_ASSETS_MESSAGE)
            return None
        return await self._queue.enqueue(
            lambda: self._process_upload_batch(assets, allow_blocked=False, force=False, source="auto")
        )

    async def run_sync_for_assets(
        self,
        assets: list[MediaAsset],
        allow_blocked: bool = True,
        force: bool = False,
        source: str = "manual",
    ) -> UploadBatchResult | None:
        """Upload the given assets.

        Args:
            assets: Assets to upload.
            allow_blocked: Upload blocklisted assets too.
            force: Re-upload assets already recorded as uploaded.
            source: Label used in logs.
        """
        if not assets:
            return None
        if not await self._media.ensure_permissions():
            self._set_status(last_error=PERMISSION_MESSAGE)
            return None
        return await self._queue.enqueue(
            lambda: self._process_upload_batch(assets, allow_blocked=allow_blocked, force=force, source=source)
        )

    async def sync_visible_assets(self, assets: list[MediaAsset]) -> UploadBatchResult | None:
        """Upload assets currently shown to the user, honoring the blocklist."""
        return await self.run_sync_for_assets(assets, allow_blocked=False, source="visible")

    def cancel_active_sync(self) -> bool:
        """Request cancellation of the running upload batch.

        Returns:
            True if a batch was running and has now been told to stop.
        """
        token = self._cancel_token
        if token is None or token.is_set():
            return False
        logger.info("Cancelling active sync")
        token.set()
        return True

    async def _try_prepare(self, asset: MediaAsset) -> PreparedAsset | None:
        try:
            return await prepare_asset(asset, self._media)
        except PrepareError as e:
            logger.debug(str(e))
            return None

    @staticmethod
    def _check_cancelled(token: asyncio.Event) -> None:
        if token.is_set():
            raise CancelledException()

    async def _prepare_assets(
        self,
        assets: list[MediaAsset],
        allow_blocked: bool,
        force: bool,
        token: asyncio.Event,
        result: UploadBatchResult,
    ) -> list[PreparedAsset]:
        """Filter and read the batch's assets.

        Raises:
            CancelledException: If the batch is cancelled meanwhile.
        """
        if not force:
            self._ensure_upload_index()

        prepared: list[PreparedAsset] = []
        seen: set[str] = set()
        retryable: list[MediaAsset] = []

        def register(item: PreparedAsset) -> None:
            if item.fingerprint not in seen:
                seen.add(item.fingerprint)
                prepared.append(item)

        for asset in assets:
            self._check_cancelled(token)
            fingerprint = asset.fingerprint
            if not allow_blocked and self.is_blocked(fingerprint):
                result.skipped[asset.id] = "blocked"
                continue
            if not force:
                cached = self._upload_index.get(asset.id) or self._upload_index.get(fingerprint)
                if cached is not None and cached.uploaded:
                    result.skipped[asset.id] = "already uploaded"
                    continue
            item = await self._try_prepare(asset)
            if item is None:
                retryable.append(asset)
            else:
                register(item)

        if retryable:
            for asset in retryable:
                self._check_cancelled(token)
                try:
                    await self._media.request_download(asset)
                except Exception as e:
                    logger.warning(f"Materialization request failed for {asset.id}: {e}")

            await asyncio.sleep(self._materialize_delay)

            for asset in retryable:
                self._check_cancelled(token)
                item = await self._try_prepare(asset)
                if item is None:
                    logger.warning(f"Skipping asset after retry; still no readable file: {asset.id}")
                    result.skipped[asset.id] = "no content after retry"
                else:
                    register(item)

        if result.skipped:
            logger.info(f"Skipped {len(result.skipped)} of {len(assets)} assets")
        return prepared

    async def _process_upload_batch(
        self,
        assets: list[MediaAsset],
        allow_blocked: bool,
        force: bool,
        source: str,
    ) -> UploadBatchResult:
        token = asyncio.Event()
        self._cancel_token = token
        result = UploadBatchResult(requested=len(assets))
        delete_candidates: list[MediaAsset] = []
        processed = 0
        try:
            await self._ensure_meta()
            self._set_status(
                running=True,
                last_batch_type=BatchType.UPLOAD,
                last_batch_total=len(assets),
                last_batch_uploaded=0,
                last_error=None,
                pending_uploads=len(assets),
            )
            logger.info(f"Upload batch ({source}): {len(assets)} assets")

            prepared = await self._prepare_assets(assets, allow_blocked, force, token, result)
            result.prepared = len(prepared)
            if not prepared:
                self._idle_status()
                return result

            if len(prepared) != len(assets):
                self._set_status(last_batch_total=len(prepared), pending_uploads=len(prepared))

            failed = 0
            for item in prepared:
                self._check_cancelled(token)
                processed += 1
                step_result = await self._upload_prepared(item)
                result.results.append(step_result)
                if step_result.success:
                    delete_candidates.append(item.asset)
                    self._set_status(
                        completed_uploads=self._status.completed_uploads + 1,
                        last_batch_uploaded=processed,
                        pending_uploads=max(0, self._status.pending_uploads - 1),
                    )
                else:
                    failed += 1
                    self._set_status(
                        last_error=step_result.error,
                        last_batch_uploaded=processed,
                        pending_uploads=max(0, self._status.pending_uploads - 1),
                    )

            self._index.set_key(LAST_UPLOAD_RUN_KEY, str(now_ms()))
            self._idle_status()
            self._record_completion(BatchType.UPLOAD, len(prepared), failed)
        except CancelledException as e:
            logger.info(f"Upload batch cancelled after {processed} assets")
            result.cancelled = True
            self._idle_status(last_batch_uploaded=processed, last_error=str(e))
        finally:
            if self._cancel_token is token:
                self._cancel_token = None

        await self._auto_delete(delete_candidates)
        return result

    async def _auto_delete(self, assets: list[MediaAsset]) -> None:
        if not self.settings.auto_delete_after_sync or not assets:
            return
        try:
            await self._media.delete_assets(assets)
            logger.info(f"Auto-deleted {len(assets)} uploaded assets")
        except Exception as e:
            logger.warning(f"Failed to auto-delete uploaded assets: {e}")

    async def _upload_prepared(self, item: PreparedAsset) -> StepResult:
        """Run the upload steps of one asset, applying each step's failure policy."""
        ctx = _UploadContext(item=item)
        step: UploadStep | None = None
        for step in UPLOAD_STEPS:
            try:
                await self._step_handlers[step](ctx)
            except Exception as e:
                message = str(e) or type(e).__name__
                if STEP_FAILURE_POLICY[step] is FailurePolicy.CONTINUE:
                    logger.warning(f"{step.name} failed for {item.fingerprint}: {message}")
                    continue
                logger.error(f"Upload of {item.fingerprint} failed at {step.name}: {message}")
                self._record_upload_failure(item, message)
                return StepResult(item.fingerprint, StepOutcome.FAILED, step, message)
        logger.debug(f"Uploaded {item.fingerprint} -> {item.repo_path}")
        return StepResult(item.fingerprint, StepOutcome.OK, step)

    def _record_upload_failure(self, item: PreparedAsset, message: str) -> None:
        self._index.record_failure(item.fingerprint, message)
        record = self._index.get_asset(item.fingerprint)
        if record is not None:
            self._update_index(record)

    async def _step_record_pending(self, ctx: _UploadContext) -> None:
        item = ctx.item
        record = AssetSyncRecord(
            fingerprint=item.fingerprint,
            asset_id=item.asset.id,
            repo_path=item.repo_path,
            uploaded=False,
            file_size=item.file_size,
            created_at=item.creation_time,
            content_hash=item.content_hash,
            last_seen_at=now_ms(),
        )
        self._index.save_asset(record)
        self._update_index(record)

    async def _step_resolve_sha(self, ctx: _UploadContext) -> None:
        ctx.remote_sha = await self._storage.get_file_sha(ctx.item.repo_path)

    async def _step_put_file(self, ctx: _UploadContext) -> None:
        item = ctx.item
        try:
            await self._storage.put_file(
                item.repo_path, item.content, f"Upload {item.fingerprint}", sha=ctx.remote_sha
            )
        except VersionConflictError as e:
            raise UploadError(f"{item.repo_path} changed remotely during upload") from e

    async def _step_mark_uploaded(self, ctx: _UploadContext) -> None:
        item = ctx.item
        self._index.mark_uploaded(item.fingerprint, item.repo_path, item.content_hash)
        record = self._index.get_asset(item.fingerprint)
        if record is not None:
            self._update_index(record)

    async def _step_unblock(self, ctx: _UploadContext) -> None:
        self.unblock(ctx.item.fingerprint)

    async def _step_upsert_meta(self, ctx: _UploadContext) -> None:
        item = ctx.item
        await self._meta.upsert(
            MetaEntry(
                fingerprint=item.fingerprint,
                repo_path=item.repo_path,
                created_at=item.creation_time,
                file_size=item.file_size,
                content_hash=item.content_hash,
                uploaded_at=now_ms(),
                asset_id=item.asset.id,
            )
        )

    # === Deletes ===

    async def _delete_path(self, path: str) -> None:
        """Delete a remote file and forget everything known about it."""
        await self._ensure_meta()
        sha = await self._storage.get_file_sha(path)
        await self._storage.delete_file(path, sha, f"Delete {path}")

        entry = self._meta.get_entry(path)
        if entry is None:
            # The entry may live in a shard outside the preloaded window
            await self._meta.ensure_all_loaded()
            entry = self._meta.get_entry(path)
        if entry is None:
            logger.debug(f"No metadata entry for {path}")
            return

        await self._meta.remove([entry.fingerprint])
        existing = self._index.get_asset(entry.fingerprint)
        self._index.delete_asset(entry.fingerprint)
        self._remove_from_index(entry.fingerprint, existing.asset_id if existing else entry.asset_id)
        self.block(entry.fingerprint)
        logger.info(f"Deleted {path}")

    async def _delete_single(self, path: str) -> None:
        self._set_status(
            running=True,
            is_deleting=True,
            last_batch_type=BatchType.DELETE,
            last_batch_total=1,
            last_batch_uploaded=0,
        )
        try:
            await self._delete_path(path)
            self.cache_invalidated.emit()
            self._record_completion(BatchType.DELETE, 1, 0)
        except Exception as e:
            self._set_status(last_error=str(e))
            self._record_completion(BatchType.DELETE, 1, 1)
            raise
        finally:
            self._idle_status()

    async def delete_repo_file(self, path: str) -> None:
        """Delete one remote file.

        Raises:
            APIError: If the remote delete or metadata update fails.
        """
        await self._queue.enqueue(lambda: self._delete_single(path))

    async def _delete_bulk(self, paths: list[str]) -> BulkDeleteResult:
        result = BulkDeleteResult()
        if not paths:
            return result
        total = len(paths)
        last_error: str | None = None
        self._set_status(
            running=True,
            is_deleting=True,
            last_batch_type=BatchType.DELETE,
            last_batch_total=total,
            last_batch_uploaded=0,
            last_error=None,
        )
        for processed, path in enumerate(paths, start=1):
            try:
                await self._delete_path(path)
                result.deleted.append(path)
            except Exception as e:
                logger.warning(f"Failed to delete {path}: {e}")
                result.failed.append(path)
                last_error = str(e)
            self._set_status(last_batch_uploaded=processed, last_error=last_error)

        if result.deleted:
            self.cache_invalidated.emit()
        self._record_completion(BatchType.DELETE, total, len(result.failed))
        self._idle_status(last_error=last_error)
        return result

    async def delete_repo_files_bulk(self, paths: list[str]) -> BulkDeleteResult:
        """Delete several remote files; one failure does not stop the rest."""
        return await self._queue.enqueue(lambda: self._delete_bulk(paths))

    async def delete_assets(self, assets: list[MediaAsset]) -> BulkDeleteResult:
        """Delete the remote copies of device assets as one batch.

        Assets with no remote copy are skipped.
        """
        if not assets:
            return BulkDeleteResult()

        async def run() -> BulkDeleteResult:
            paths: list[str] = []
            for asset in assets:
                entry = await self.get_repo_entry_for_asset(asset)
                if entry is not None and entry.repo_path:
                    paths.append(entry.repo_path)
            return await self._delete_bulk(list(dict.fromkeys(paths)))

        return await self._queue.enqueue(run)

    # === Downloads ===

    def set_download_directory(self, directory: Path | str | None) -> None:
        """Remember (or forget) the directory downloads are written to."""
        if directory:
            self._index.set_key(DOWNLOAD_DIRECTORY_KEY, str(Path(directory).expanduser()))
        else:
            self._index.delete_key(DOWNLOAD_DIRECTORY_KEY)

    def download_directory(self) -> Path | None:
        return resolve_download_directory(self._index.get_key(DOWNLOAD_DIRECTORY_KEY))

    async def _download(self, paths: list[str], on_progress: ProgressCallback | None) -> list[str]:
        downloaded: list[str] = []
        library_mode = self.settings.download_mode == "library"
        directory: Path | None = None

        if library_mode:
            if not await self._media.ensure_permissions(write=True):
                self._set_status(last_error=PERMISSION_MESSAGE)
                return downloaded
        else:
            directory = self.download_directory()
            if directory is None:
                self._set_status(last_error=DIRECTORY_PERMISSION_MESSAGE)

        total = len(paths)
        self._set_status(
            running=True, last_batch_type=BatchType.DOWNLOAD, last_batch_total=total, last_batch_uploaded=0
        )
        processed = 0
        for path in paths:
            try:
                downloaded.append(await self._download_one(path, directory, library_mode))
            except Exception as e:
                logger.warning(f"Failed to download {path}: {e}")
            finally:
                processed += 1
                self._set_status(last_batch_uploaded=processed)
                if on_progress:
                    on_progress(processed, total)

        self._index.set_key(LAST_DOWNLOAD_RUN_KEY, str(now_ms()))
        self._idle_status()
        self._record_completion(BatchType.DOWNLOAD, total, total - len(downloaded))
        return downloaded

    async def _download_one(self, path: str, directory: Path | None, library_mode: bool) -> str:
        file = await retry_with_backoff(lambda: self._storage.get_file(path))
        if file is None:
            raise DownloadError(f"Remote file not found: {path}")
        timestamp = now_ms()
        base_name = path.rsplit("/", 1)[-1] or f"download-{timestamp}"
        file_name, mime_type = build_download_name(base_name, timestamp)

        if directory is not None:
            try:
                target = write_download(directory, file_name, file.content)
                logger.debug(f"Downloaded {path} ({mime_type}) to {target}")
                return str(target)
            except OSError as e:
                logger.warning(f"Cannot write to {directory}, using app storage: {e}")

        local = write_download(self.settings.downloads_dir, file_name, file.content)
        if library_mode:
            try:
                location = await self._media.save_to_library(local, DOWNLOAD_ALBUM)
                local.unlink(missing_ok=True)
                return location
            except OSError as e:
                logger.warning(f"Cannot import {local} into the media library: {e}")
        return str(local)

    async def download_repo_files(
        self, paths: list[str], on_progress: ProgressCallback | None = None
    ) -> list[str]:
        """Download remote files to the configured destination.

        Args:
            paths: Repository paths.
            on_progress: Called with (processed, total) after every item.

        Returns:
            Locations of the written files (missing or failed paths are left out).
        """
        return await self._queue.enqueue(lambda: self._download(paths, on_progress))

    # === Reconciliation and reset ===

    async def _reconcile(self) -> int:
        self._ensure_upload_index()
        await self._ensure_meta()
        await self._meta.ensure_all_loaded()
        remote = {entry.fingerprint for entry in self._meta.cached_entries()}
        removed = 0
        for record in self._index.list_assets(uploaded=True):
            if record.fingerprint in remote:
                continue
            self._index.delete_asset(record.fingerprint)
            self._remove_from_index(record.fingerprint, record.asset_id)
            removed += 1
        self._merge_meta_into_index()
        if removed:
            logger.info(f"Removed {removed} local records with no remote entry")
        return removed

    async def verify_and_clean_upload_index(self) -> int:
        """Drop local 'uploaded' records whose remote entry is gone.

        Returns:
            Number of removed records.
        """
        return await self._queue.enqueue(self._reconcile)

    async def _clear(self) -> None:
        self._index.reset()
        self._index.set_key(MIGRATION_COMPLETED_KEY, "1")
        self._blocklist = None
        self._upload_index.clear()
        self.index_changed.emit()
        self._meta.invalidate()
        self._meta_ready = False
        await self._cache.purge_repo()
        self.cache_invalidated.emit()

    async def clear_cache(self) -> None:
        """Forget all local state: index, blocklist, metadata and content cache."""
        await self._queue.enqueue(self._clear)

    async def _reset(self) -> None:
        timestamp = datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        try:
            await self._storage.reset_branch(RESET_MESSAGE.format(timestamp=timestamp))
        except Exception as e:
            logger.error(f"Failed to reset repository branch: {e}")
            raise
        await self._clear()

    async def reset_repo_and_caches(self) -> None:
        """Replace the remote branch with an empty commit and clear local state."""
        await self._queue.enqueue(self._reset)
