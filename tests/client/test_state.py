"""Tests for the local sync index."""

import sqlite3
from pathlib import Path

import pytest

from gitgallery.client.state import (
    MAX_ERROR_LENGTH,
    MIGRATION_COMPLETED_KEY,
    AssetSyncRecord,
    LocalIndex,
)


@pytest.fixture
def state(tmp_path: Path) -> LocalIndex:
    """Create a fresh index."""
    return LocalIndex(tmp_path / "index.db")


class TestIndexCreation:
    """Tests for LocalIndex initialization."""

    def test_creates_parent_dirs(self, tmp_path: Path) -> None:
        """Should create parent directories."""
        db_path = tmp_path / "nested" / "dir" / "index.db"
        index = LocalIndex(db_path)

        assert db_path.exists()
        index.close()

    def test_reopens_existing_db(self, tmp_path: Path) -> None:
        """Should reopen existing database with data preserved."""
        db_path = tmp_path / "index.db"
        first = LocalIndex(db_path)
        first.save_asset(AssetSyncRecord(fingerprint="a|1|2", repo_path="p/a.jpg"))
        first.close()

        second = LocalIndex(db_path)
        record = second.get_asset("a|1|2")
        assert record is not None
        assert record.repo_path == "p/a.jpg"
        second.close()

    def test_fresh_db_marks_migration_done(self, state: LocalIndex) -> None:
        assert state.get_key(MIGRATION_COMPLETED_KEY) == "1"

    def test_in_memory(self) -> None:
        index = LocalIndex(":memory:")
        index.set_key("k", "v")
        assert index.get_key("k") == "v"
        index.close()


class TestAssets:
    """Tests for per-asset records."""

    def test_get_missing(self, state: LocalIndex) -> None:
        assert state.get_asset("nope") is None

    def test_save_sets_last_seen(self, state: LocalIndex) -> None:
        """Records saved without last_seen_at get the current time."""
        state.save_asset(AssetSyncRecord(fingerprint="f"))
        record = state.get_asset("f")
        assert record is not None
        assert record.last_seen_at is not None

    def test_save_replaces(self, state: LocalIndex) -> None:
        state.save_asset(AssetSyncRecord(fingerprint="f", asset_id="1", file_size=10))
        state.save_asset(AssetSyncRecord(fingerprint="f", asset_id="2"))

        record = state.get_asset("f")
        assert record is not None
        assert record.asset_id == "2"
        assert record.file_size is None

    def test_touch_merges_fields(self, state: LocalIndex) -> None:
        """None fields keep their stored values."""
        state.save_asset(AssetSyncRecord(fingerprint="f", asset_id="1", file_size=10))
        record = state.touch_asset("f", repo_path="p.jpg", file_size=None)

        assert record.asset_id == "1"
        assert record.file_size == 10
        assert record.repo_path == "p.jpg"

    def test_touch_creates(self, state: LocalIndex) -> None:
        state.touch_asset("new", asset_id="9")
        record = state.get_asset("new")
        assert record is not None
        assert record.asset_id == "9"
        assert record.uploaded is False

    def test_touch_rejects_unknown_fields(self, state: LocalIndex) -> None:
        with pytest.raises(TypeError):
            state.touch_asset("f", colour="red")

    def test_mark_uploaded_clears_error(self, state: LocalIndex) -> None:
        state.save_asset(AssetSyncRecord(fingerprint="f", last_error="boom"))
        state.mark_uploaded("f", "p.jpg", "hash")

        record = state.get_asset("f")
        assert record is not None
        assert record.uploaded is True
        assert record.repo_path == "p.jpg"
        assert record.content_hash == "hash"
        assert record.last_error is None
        assert record.last_uploaded_at is not None

    def test_record_failure_truncates(self, state: LocalIndex) -> None:
        """Failure messages are capped and reset the uploaded flag."""
        state.save_asset(AssetSyncRecord(fingerprint="f", uploaded=True))
        state.record_failure("f", "x" * 2000)

        record = state.get_asset("f")
        assert record is not None
        assert record.uploaded is False
        assert record.last_error is not None
        assert len(record.last_error) == MAX_ERROR_LENGTH

    def test_list_filters_and_orders(self, state: LocalIndex) -> None:
        """Newest last_seen_at first, ties broken by fingerprint descending."""
        state.save_asset(AssetSyncRecord(fingerprint="a", uploaded=True, last_seen_at=100))
        state.save_asset(AssetSyncRecord(fingerprint="b", uploaded=False, last_seen_at=300))
        state.save_asset(AssetSyncRecord(fingerprint="c", uploaded=True, last_seen_at=300))

        assert [r.fingerprint for r in state.list_assets()] == ["c", "b", "a"]
        assert [r.fingerprint for r in state.list_assets(uploaded=True)] == ["c", "a"]
        assert [r.fingerprint for r in state.pending_assets()] == ["b"]

    def test_list_cursor_pagination(self, state: LocalIndex) -> None:
        for i, fp in enumerate(["a", "b", "c", "d"]):
            state.save_asset(AssetSyncRecord(fingerprint=fp, last_seen_at=100 + i))

        first = state.list_assets(limit=2)
        last = first[-1]
        second = state.list_assets(cursor=(last.last_seen_at or 0, last.fingerprint), limit=2)

        assert [r.fingerprint for r in first] == ["d", "c"]
        assert [r.fingerprint for r in second] == ["b", "a"]

    def test_delete_not_seen_since(self, state: LocalIndex) -> None:
        state.save_asset(AssetSyncRecord(fingerprint="old", last_seen_at=100))
        state.save_asset(AssetSyncRecord(fingerprint="new", last_seen_at=500))

        assert state.delete_assets_not_seen_since(200) == 1
        assert state.get_asset("old") is None
        assert state.get_asset("new") is not None

    def test_delete_asset(self, state: LocalIndex) -> None:
        state.save_asset(AssetSyncRecord(fingerprint="f"))
        state.delete_asset("f")
        assert state.get_asset("f") is None


class TestBlocklist:
    """Tests for the auto-sync blocklist."""

    def test_add_and_remove(self, state: LocalIndex) -> None:
        state.add_block("f1")
        state.add_block("f2")
        state.add_block("f1")
        assert state.blocklist() == {"f1", "f2"}

        state.remove_block("f1")
        assert state.blocklist() == {"f2"}

    def test_clear(self, state: LocalIndex) -> None:
        state.add_block("f1")
        state.clear_blocklist()
        assert state.blocklist() == set()


class TestKeyValue:
    """Tests for key/value state."""

    def test_set_get_delete(self, state: LocalIndex) -> None:
        assert state.get_key("missing") is None
        state.set_key("k", "1")
        state.set_key("k", "2")
        assert state.get_key("k") == "2"
        state.delete_key("k")
        assert state.get_key("k") is None

    def test_reset_wipes_everything(self, state: LocalIndex) -> None:
        state.save_asset(AssetSyncRecord(fingerprint="f"))
        state.add_block("f")
        state.set_key("k", "v")

        state.reset()

        assert state.list_assets() == []
        assert state.blocklist() == set()
        assert state.get_key("k") is None


class TestLegacyMigration:
    """Tests for folding the previous schema into assets."""

    def _legacy_db(self, path: Path) -> None:
        conn = sqlite3.connect(path)
        conn.executescript("""
            CREATE TABLE upload_index (
                asset_id TEXT PRIMARY KEY, fingerprint TEXT, repo_path TEXT,
                uploaded INTEGER, file_size INTEGER, creation_time INTEGER, content_hash TEXT
            );
            CREATE TABLE meta_entries (
                fingerprint TEXT PRIMARY KEY, repo_path TEXT, preview_repo_path TEXT,
                created_at INTEGER, file_size INTEGER, content_hash TEXT
            );
            CREATE TABLE uploaded_fingerprints (fingerprint TEXT PRIMARY KEY);
            CREATE TABLE blocked_fingerprints (fingerprint TEXT PRIMARY KEY);

            INSERT INTO upload_index VALUES ('1', 'a|1|1', 'p/a.jpg', 1, 1, 1, NULL);
            INSERT INTO upload_index VALUES ('2', 'b|2|2', 'p/b.jpg', 0, 2, 2, 'hb');
            INSERT INTO meta_entries VALUES ('a|1|1', 'p/a-other.jpg', 'prev/a.jpg', 1, 1, 'ha');
            INSERT INTO meta_entries VALUES ('c|3|3', 'p/c.jpg', NULL, 3, 3, 'hc');
            INSERT INTO uploaded_fingerprints VALUES ('b|2|2');
        """)
        conn.commit()
        conn.close()

    def test_migrates_once(self, tmp_path: Path) -> None:
        """Upload-index rows win; meta rows fill gaps; legacy tables are dropped."""
        db_path = tmp_path / "legacy.db"
        self._legacy_db(db_path)

        index = LocalIndex(db_path)

        a = index.get_asset("a|1|1")
        b = index.get_asset("b|2|2")
        c = index.get_asset("c|3|3")
        assert a is not None and b is not None and c is not None
        assert a.uploaded is True
        assert a.repo_path == "p/a.jpg"
        assert a.content_hash == "ha"
        assert a.preview_hash == "prev/a.jpg"
        assert b.uploaded is True
        assert c.uploaded is False
        assert c.repo_path == "p/c.jpg"
        assert index.get_key(MIGRATION_COMPLETED_KEY) == "1"

        tables = {
            row[0]
            for row in index._conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        assert "upload_index" not in tables
        assert "blocked_fingerprints" not in tables
        index.close()
