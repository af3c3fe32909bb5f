"""Local durable index for the sync engine.

This module provides:
- LocalIndex: SQLite-based per-asset sync state, key/value state and blocklist
- AssetSyncRecord: Sync state of one asset

Architecture:
    The index is keyed by asset fingerprint, the identity shared with the
    remote metadata shards and the content cache. Records are created on the
    first upload attempt and removed when the remote file goes away.

    The auto-sync blocklist holds fingerprints the user deleted from the
    remote, so a device re-scan does not immediately re-upload them.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from gitgallery.core.fingerprint import now_ms

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500

# Known key/value keys
MIGRATION_COMPLETED_KEY = "legacy:migrationCompleted"
LAST_MANIFEST_SHA_KEY = "sync:lastManifestSha"
LAST_UPLOAD_RUN_KEY = "sync:lastUploadRun"
LAST_DOWNLOAD_RUN_KEY = "sync:lastDownloadRun"
DOWNLOAD_DIRECTORY_KEY = "downloads:directoryUri"

LEGACY_DATA_TABLES = ("upload_index", "meta_entries", "uploaded_fingerprints")
LEGACY_TABLES = (
    *LEGACY_DATA_TABLES,
    "recently_uploaded",
    "deleted_repo_paths",
    "non_existent_paths",
    "blocked_fingerprints",
)

_COLUMNS = (
    "fingerprint",
    "asset_id",
    "repo_path",
    "uploaded",
    "file_size",
    "created_at",
    "content_hash",
    "preview_hash",
    "last_seen_at",
    "last_uploaded_at",
    "last_error",
)

_UPSERT_SQL = f"""
    INSERT INTO assets ({", ".join(_COLUMNS)})
    VALUES ({", ".join("?" for _ in _COLUMNS)})
    ON CONFLICT(fingerprint) DO UPDATE SET
    {", ".join(f"{col} = excluded.{col}" for col in _COLUMNS[1:])}
"""


@dataclass
class AssetSyncRecord:
    """Sync state of one asset.

    Attributes:
        fingerprint: Cross-store identity.
        asset_id: Device media-library reference.
        repo_path: Remote path the asset was (or will be) uploaded to.
        uploaded: Whether the upload completed.
        file_size: Size in bytes.
        created_at: Capture time (epoch ms).
        content_hash: Hash of the uploaded content.
        preview_hash: Preview path or hash, when known.
        last_seen_at: Last time a scan or upload saw the asset (epoch ms).
        last_uploaded_at: Completion time of the last upload (epoch ms).
        last_error: Message of the last failure.
    """

    fingerprint: str
    asset_id: str | None = None
    repo_path: str | None = None
    uploaded: bool = False
    file_size: int | None = None
    created_at: int | None = None
    content_hash: str | None = None
    preview_hash: str | None = None
    last_seen_at: int | None = None
    last_uploaded_at: int | None = None
    last_error: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> AssetSyncRecord:
        """Create AssetSyncRecord from database row."""
        return cls(
            fingerprint=row["fingerprint"],
            asset_id=row["asset_id"],
            repo_path=row["repo_path"],
            uploaded=row["uploaded"] == 1,
            file_size=row["file_size"],
            created_at=row["created_at"],
            content_hash=row["content_hash"],
            preview_hash=row["preview_hash"],
            last_seen_at=row["last_seen_at"],
            last_uploaded_at=row["last_uploaded_at"],
            last_error=row["last_error"],
        )

    def to_row(self) -> tuple[Any, ...]:
        """Values in column order."""
        return (
            self.fingerprint,
            self.asset_id,
            self.repo_path,
            1 if self.uploaded else 0,
            self.file_size,
            self.created_at,
            self.content_hash,
            self.preview_hash,
            self.last_seen_at,
            self.last_uploaded_at,
            self.last_error,
        )


class LocalIndex:
    """SQLite-based local sync index.

    Safe to share between threads; every statement runs under one lock.
    """

    def __init__(self, db_path: Path | str) -> None:
        """Open (or create) the index database and run pending migrations.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            str(db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")

        self._create_tables()
        self._migrate_legacy()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS assets (
                fingerprint TEXT PRIMARY KEY,
                asset_id TEXT,
                repo_path TEXT,
                uploaded INTEGER NOT NULL DEFAULT 0,
                file_size INTEGER,
                created_at INTEGER,
                content_hash TEXT,
                preview_hash TEXT,
                last_seen_at INTEGER,
                last_uploaded_at INTEGER,
                last_error TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_assets_uploaded ON assets(uploaded);
            CREATE INDEX IF NOT EXISTS idx_assets_last_seen ON assets(last_seen_at);

            -- Key-value sync state
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT
            );

            -- Fingerprints excluded from automatic re-upload
            CREATE TABLE IF NOT EXISTS auto_sync_blocklist (
                fingerprint TEXT PRIMARY KEY,
                blocked_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_auto_sync_blocklist_blocked_at
                ON auto_sync_blocklist(blocked_at);
        """)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    # === Legacy migration ===

    def _migrate_legacy(self) -> None:
        """Fold tables from the previous schema into assets, once.

        Upload-index rows win; meta rows only fill gaps. Any failure rolls
        back and is logged, and the migration is retried on the next open.
        """
        if self.get_key(MIGRATION_COMPLETED_KEY) == "1":
            return

        with self._lock:
            count = self._conn.execute("SELECT COUNT(*) FROM assets").fetchone()[0]
            tables = {
                row["name"]
                for row in self._conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            }

        if count > 0 or not any(table in tables for table in LEGACY_DATA_TABLES):
            self.set_key(MIGRATION_COMPLETED_KEY, "1")
            return

        with self._lock:
            try:
                self._conn.execute("BEGIN")
                migrated = self._fold_legacy_rows(tables)
                self._conn.execute(
                    "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
                    (MIGRATION_COMPLETED_KEY, "1"),
                )
                for table in LEGACY_TABLES:
                    self._conn.execute(f"DROP TABLE IF EXISTS {table}")
                self._conn.execute("COMMIT")
            except Exception as e:
                self._conn.execute("ROLLBACK")
                logger.warning(f"Legacy migration failed, will retry on next start: {e}")
                return
        logger.info(f"Migrated {migrated} legacy asset records")

    def _fold_legacy_rows(self, tables: set[str]) -> int:
        now = now_ms()
        uploaded_set: set[str] = set()
        if "uploaded_fingerprints" in tables:
            for row in self._conn.execute("SELECT fingerprint FROM uploaded_fingerprints"):
                if row["fingerprint"]:
                    uploaded_set.add(row["fingerprint"])

        inserted: set[str] = set()
        if "upload_index" in tables:
            for row in self._conn.execute("SELECT * FROM upload_index").fetchall():
                keys = row.keys()
                fp = (row["fingerprint"] if "fingerprint" in keys else None) or row["asset_id"]
                if not fp:
                    continue
                uploaded = row["uploaded"] == 1 or fp in uploaded_set
                record = AssetSyncRecord(
                    fingerprint=fp,
                    asset_id=row["asset_id"],
                    repo_path=row["repo_path"] if "repo_path" in keys else None,
                    uploaded=uploaded,
                    file_size=row["file_size"] if "file_size" in keys else None,
                    created_at=row["creation_time"] if "creation_time" in keys else None,
                    content_hash=row["content_hash"] if "content_hash" in keys else None,
                    last_seen_at=now,
                    last_uploaded_at=now if row["uploaded"] == 1 else None,
                )
                self._conn.execute(_UPSERT_SQL, record.to_row())
                inserted.add(fp)

        if "meta_entries" in tables:
            rows = self._conn.execute(
                "SELECT fingerprint, repo_path, preview_repo_path, created_at, file_size, content_hash "
                "FROM meta_entries"
            ).fetchall()
            for row in rows:
                fp = row["fingerprint"]
                if not fp:
                    continue
                if fp in inserted:
                    self._conn.execute(
                        """
                        UPDATE assets SET
                            repo_path = COALESCE(repo_path, ?),
                            file_size = COALESCE(file_size, ?),
                            created_at = COALESCE(created_at, ?),
                            content_hash = COALESCE(content_hash, ?),
                            preview_hash = COALESCE(preview_hash, ?)
                        WHERE fingerprint = ?
                        """,
                        (
                            row["repo_path"],
                            row["file_size"],
                            row["created_at"],
                            row["content_hash"],
                            row["preview_repo_path"],
                            fp,
                        ),
                    )
                    continue
                uploaded = fp in uploaded_set
                record = AssetSyncRecord(
                    fingerprint=fp,
                    repo_path=row["repo_path"],
                    uploaded=uploaded,
                    file_size=row["file_size"],
                    created_at=row["created_at"],
                    content_hash=row["content_hash"],
                    preview_hash=row["preview_repo_path"],
                    last_seen_at=now,
                    last_uploaded_at=now if uploaded else None,
                )
                self._conn.execute(_UPSERT_SQL, record.to_row())
                inserted.add(fp)
        return len(inserted)

    # === Asset operations ===

    def get_asset(self, fingerprint: str) -> AssetSyncRecord | None:
        """Get a record by fingerprint.

        Returns:
            AssetSyncRecord if found, None otherwise.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM assets WHERE fingerprint = ?",
                (fingerprint,),
            ).fetchone()
        if row is None:
            return None
        return AssetSyncRecord.from_row(row)

    def list_assets(
        self,
        uploaded: bool | None = None,
        cursor: tuple[int, str] | None = None,
        limit: int | None = None,
    ) -> list[AssetSyncRecord]:
        """List records, most recently seen first.

        Args:
            uploaded: Only uploaded (True) or only pending (False) records.
            cursor: (last_seen_at, fingerprint) of the last row of the previous page.
            limit: Maximum number of rows.

        Returns:
            Records ordered by last_seen_at DESC, fingerprint DESC.
        """
        clauses: list[str] = []
        params: list[Any] = []
        if uploaded is not None:
            clauses.append("uploaded = ?")
            params.append(1 if uploaded else 0)
        if cursor is not None:
            last_seen_at, fingerprint = cursor
            clauses.append("(last_seen_at < ? OR (last_seen_at = ? AND fingerprint < ?))")
            params.extend([last_seen_at, last_seen_at, fingerprint])

        sql = "SELECT * FROM assets"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY last_seen_at DESC, fingerprint DESC"
        if limit and limit > 0:
            sql += " LIMIT ?"
            params.append(limit)

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [AssetSyncRecord.from_row(row) for row in rows]

    def pending_assets(self, limit: int = 100) -> list[AssetSyncRecord]:
        """Records that are not (yet) uploaded."""
        return self.list_assets(uploaded=False, limit=limit)

    def save_asset(self, record: AssetSyncRecord) -> None:
        """Insert or fully replace a record."""
        if record.last_seen_at is None:
            record.last_seen_at = now_ms()
        with self._lock:
            self._conn.execute(_UPSERT_SQL, record.to_row())

    def touch_asset(self, fingerprint: str, **fields: Any) -> AssetSyncRecord:
        """Merge the given fields into a record, creating it if needed.

        Fields left out (or passed as None) keep their stored value.
        last_seen_at is refreshed unless given explicitly.

        Returns:
            The record as stored.
        """
        unknown = set(fields) - set(_COLUMNS[1:])
        if unknown:
            raise TypeError(f"Unknown asset fields: {sorted(unknown)}")

        with self._lock:
            record = self.get_asset(fingerprint) or AssetSyncRecord(fingerprint=fingerprint)
            for name, value in fields.items():
                if value is not None:
                    setattr(record, name, value)
            if fields.get("last_seen_at") is None:
                record.last_seen_at = now_ms()
            self._conn.execute(_UPSERT_SQL, record.to_row())
        return record

    def mark_uploaded(
        self,
        fingerprint: str,
        repo_path: str | None,
        content_hash: str | None = None,
    ) -> None:
        """Mark a record as uploaded and clear its last error."""
        with self._lock:
            self._conn.execute(
                """
                UPDATE assets SET
                    uploaded = 1,
                    repo_path = COALESCE(?, repo_path),
                    content_hash = COALESCE(?, content_hash),
                    last_uploaded_at = ?,
                    last_error = NULL
                WHERE fingerprint = ?
                """,
                (repo_path, content_hash, now_ms(), fingerprint),
            )

    def record_failure(self, fingerprint: str, message: str) -> None:
        """Record an upload failure (message truncated)."""
        with self._lock:
            self._conn.execute(
                "UPDATE assets SET last_error = ?, uploaded = 0 WHERE fingerprint = ?",
                (message[:MAX_ERROR_LENGTH], fingerprint),
            )

    def delete_asset(self, fingerprint: str) -> None:
        """Remove a record."""
        with self._lock:
            self._conn.execute("DELETE FROM assets WHERE fingerprint = ?", (fingerprint,))

    def delete_assets_not_seen_since(self, timestamp: int) -> int:
        """Sweep records not seen since timestamp (epoch ms).

        Returns:
            Number of deleted records.
        """
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM assets WHERE last_seen_at IS NOT NULL AND last_seen_at < ?",
                (timestamp,),
            )
        return cursor.rowcount

    def reset(self) -> None:
        """Wipe every record, key and blocklist entry."""
        with self._lock:
            self._conn.executescript("""
                DELETE FROM assets;
                DELETE FROM kv_store;
                DELETE FROM auto_sync_blocklist;
            """)

    # === Auto-sync blocklist ===

    def add_block(self, fingerprint: str) -> None:
        """Exclude a fingerprint from automatic upload."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO auto_sync_blocklist (fingerprint, blocked_at) VALUES (?, ?)",
                (fingerprint, now_ms()),
            )

    def remove_block(self, fingerprint: str) -> None:
        with self._lock:
            self._conn.execute(
                "DELETE FROM auto_sync_blocklist WHERE fingerprint = ?", (fingerprint,)
            )

    def blocklist(self) -> set[str]:
        """All blocked fingerprints."""
        with self._lock:
            rows = self._conn.execute("SELECT fingerprint FROM auto_sync_blocklist").fetchall()
        return {row["fingerprint"] for row in rows if row["fingerprint"]}

    def clear_blocklist(self) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM auto_sync_blocklist")

    # === Key/value state ===

    def get_key(self, key: str) -> str | None:
        """Get a state value."""
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM kv_store WHERE key = ?",
                (key,),
            ).fetchone()
        return row["value"] if row else None

    def set_key(self, key: str, value: str) -> None:
        """Set a state value."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
                (key, value),
            )

    def delete_key(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
