"""Tests for mirror_backup.index.cache module.

Validates save/load round trips, primary/backup rotation, fallback on
corruption, the dirty-skip rule, the staleness policy and background saves.
"""

import gzip
import json
import time

import pytest

from mirror_backup.config import NodeType
from mirror_backup.index.cache import CacheStore
from mirror_backup.index.indexer import Indexer
from mirror_backup.index.node import TreeIndex
from mirror_backup.utils.messages import Severity


@pytest.fixture
def store(tmp_dirs, messages):
    return CacheStore(tmp_dirs["destination"], messages, save_retry_delay=0)


@pytest.fixture
def dest_index(tmp_dirs, messages, make_tree):
    make_tree(tmp_dirs["destination"], {
        "a.txt": "aaaa",
        "docs": {"b.txt": "bb", "deep": {"c.txt": "c"}},
    })
    return Indexer(messages).index(tmp_dirs["destination"])


def shape(index):
    return [(parts, n.type, n.length, n.last_change) for parts, n in index.root.walk()]


class TestSaveLoad:
    """Test the basic persistence cycle."""

    def test_round_trip(self, store, dest_index):
        assert store.save(dest_index) is True
        loaded = store.load()

        assert loaded is not None
        assert shape(loaded) == shape(dest_index)
        assert loaded.indexed_files == dest_index.indexed_files
        assert loaded.indexed_size == dest_index.indexed_size
        assert loaded.root_path == str(store.root)

    def test_file_is_gzip_json(self, store, dest_index):
        store.save(dest_index)
        data = json.loads(gzip.decompress(store.primary_path.read_bytes()))
        assert data["format"] == "mirror-backup-index"
        assert data["version"] == 1
        assert data["root"]["t"] == NodeType.DIRECTORY.value

    def test_load_without_cache(self, store, messages):
        assert store.load() is None
        assert any("Cache invalid" in m.text for m in messages.messages)

    def test_save_clears_dirty(self, store, dest_index):
        assert dest_index.dirty is True
        store.save(dest_index)
        assert dest_index.dirty is False

    def test_clean_index_not_saved_again(self, store, dest_index):
        store.save(dest_index)
        mtime = store.primary_path.stat().st_mtime_ns
        assert store.save(dest_index) is False
        assert store.primary_path.stat().st_mtime_ns == mtime
        assert not store.backup_path.exists()

    def test_clean_index_saved_when_primary_missing(self, store, dest_index):
        store.save(dest_index)
        store.primary_path.unlink()
        assert store.save(dest_index) is True
        assert store.primary_path.exists()


class TestRotation:
    """Test primary/backup/new handling."""

    def test_second_save_rotates(self, store, dest_index):
        store.save(dest_index)
        first = store.primary_path.read_bytes()

        dest_index.set_entry(("new.txt",), NodeType.FILE, 1, 1)
        store.save(dest_index)

        assert store.backup_path.read_bytes() == first
        assert store.primary_path.read_bytes() != first
        assert not store.new_path.exists()

    def test_stale_new_file_is_replaced(self, store, dest_index):
        store.new_path.write_bytes(b"leftover")
        store.save(dest_index)
        assert not store.new_path.exists()
        assert store.load() is not None

    def test_corrupt_primary_falls_back_to_backup(self, store, dest_index, messages):
        store.save(dest_index)
        dest_index.set_entry(("new.txt",), NodeType.FILE, 1, 1)
        store.save(dest_index)
        store.primary_path.write_bytes(b"not gzip at all")

        loaded = store.load()
        assert loaded is not None
        assert loaded.find(("new.txt",)) is None
        assert loaded.find(("docs", "deep", "c.txt")) is not None

    def test_both_corrupt_means_reindex(self, store, dest_index):
        store.save(dest_index)
        dest_index.dirty = True
        store.save(dest_index)
        store.primary_path.write_bytes(gzip.compress(b"{broken json"))
        store.backup_path.write_bytes(gzip.compress(json.dumps({"format": "x"}).encode()))
        assert store.load() is None

    def test_save_failure_keeps_previous_cache(self, store, dest_index, messages, monkeypatch):
        store.save(dest_index)
        previous = store.primary_path.read_bytes()
        store.save_attempts = 3
        calls = []

        def failing_rotate(payload):
            calls.append(payload)
            raise PermissionError("locked")

        monkeypatch.setattr(store, "_rotate", failing_rotate)
        dest_index.set_entry(("x",), NodeType.FILE, 1, 1)

        assert store.save(dest_index) is False
        assert len(calls) == 3
        assert dest_index.dirty is True
        assert store.primary_path.read_bytes() == previous
        assert any("failed" in m.text for m in messages.at_least(Severity.ERROR))


class TestStaleness:
    """Test the reuse counter and forced reindexing."""

    def test_counter_incremented_and_persisted(self, store, dest_index):
        store.save(dest_index)

        first = store.load()
        assert first.cache_reuse_count == 1
        assert first.dirty is True
        store.save(first)

        second = store.load()
        assert second.cache_reuse_count == 2

    def test_fourth_load_discarded_with_threshold_three(self, tmp_dirs, messages, dest_index):
        store = CacheStore(tmp_dirs["destination"], messages, reindex_threshold=3)
        store.save(dest_index)

        for expected in (1, 2, 3):
            loaded = store.load()
            assert loaded is not None
            assert loaded.cache_reuse_count == expected
            store.save(loaded)

        assert store.load() is None

    def test_threshold_reached_forces_reindex(self, tmp_dirs, messages, dest_index):
        store = CacheStore(tmp_dirs["destination"], messages, reindex_threshold=10)
        dest_index.cache_reuse_count = 10
        store.save(dest_index)

        assert store.load() is None
        assert any("reindexing" in m.text for m in messages.messages)

    def test_below_threshold_is_used(self, tmp_dirs, messages, dest_index):
        store = CacheStore(tmp_dirs["destination"], messages, reindex_threshold=10)
        dest_index.cache_reuse_count = 9
        store.save(dest_index)

        loaded = store.load()
        assert loaded is not None
        assert loaded.cache_reuse_count == 10

    def test_sizes_recomputed_at_half_threshold(self, tmp_dirs, messages, dest_index):
        store = CacheStore(tmp_dirs["destination"], messages, reindex_threshold=10)
        real_size = dest_index.root.size_recursive
        dest_index.cache_reuse_count = 4
        dest_index.indexed_size = real_size + 12345
        store.save(dest_index)

        loaded = store.load()
        assert loaded.cache_reuse_count == 5
        assert loaded.indexed_size == real_size

    def test_sizes_kept_elsewhere(self, tmp_dirs, messages, dest_index):
        store = CacheStore(tmp_dirs["destination"], messages, reindex_threshold=10)
        dest_index.cache_reuse_count = 2
        dest_index.indexed_size = 777
        store.save(dest_index)

        assert store.load().indexed_size == 777


class TestAutoSave:
    """Test background saves."""

    def test_not_due(self, store, dest_index):
        store.auto_save_interval = 600
        dest_index.last_save_time = time.monotonic()
        assert store.maybe_autosave(dest_index) is False

    def test_due_saves_in_background(self, store, dest_index):
        store.auto_save_interval = 0
        dest_index.last_save_time = time.monotonic() - 5
        assert store.maybe_autosave(dest_index) is True
        store.wait(timeout=10)
        assert store.primary_path.exists()
        assert store.save_in_progress is False

    def test_cancel_stops_scheduling(self, store, dest_index):
        store.auto_save_interval = 0
        dest_index.last_save_time = time.monotonic() - 5
        store.cancel()
        assert store.maybe_autosave(dest_index) is False
        assert not store.primary_path.exists()

    def test_wait_without_thread(self, store):
        store.wait()


class TestTreeIndexRootName:

    def test_root_renamed_to_destination(self, tmp_dirs, messages):
        index = TreeIndex("/somewhere/else")
        index.set_entry(("f",), NodeType.FILE, 1, 1)
        store = CacheStore(tmp_dirs["destination"], messages)
        store.save(index)
        assert store.load().root_path == str(tmp_dirs["destination"])
