"""Tests for mirror_backup.sync.matcher module.

Trees are built in memory under roots that don't exist on disk, so the
delete consistency check only fires where a test creates real files.
"""

import os

import pytest

from mirror_backup.config import NodeType
from mirror_backup.index.ignore import IgnoreFilter
from mirror_backup.index.node import TreeIndex
from mirror_backup.sync.matcher import Matcher
from mirror_backup.sync.progress import SyncProgress, WorkQueues
from mirror_backup.utils.messages import Severity

SRC = os.path.join(os.sep, "nonexistent", "src")
DST = os.path.join(os.sep, "nonexistent", "dst")


def tree(root, entries):
    """Build an index from ``{"a/b.txt": (mtime, length), "dir/": None}``."""
    index = TreeIndex(root)
    for path, value in entries.items():
        parts = tuple(p for p in path.split("/") if p)
        if path.endswith("/"):
            index.set_entry(parts, NodeType.DIRECTORY, 0)
        else:
            mtime, length = value
            index.set_entry(parts, NodeType.FILE, mtime, length)
    return index


@pytest.fixture
def matcher(messages):
    return Matcher(WorkQueues(), SyncProgress(), messages, max_workers=2)


def s(*parts):
    return os.path.join(SRC, *parts)


def d(*parts):
    return os.path.join(DST, *parts)


class TestScenarios:
    """Basic copy/update/delete classification."""

    def test_empty_destination_copies_everything(self, matcher):
        src = tree(SRC, {"a": (1, 1), "b": (1, 2), "c": (1, 3)})
        matcher.match(src, tree(DST, {}))

        assert matcher.queues.copy == {s("a"): d("a"), s("b"): d("b"), s("c"): d("c")}
        assert matcher.queues.update == {}
        assert matcher.queues.delete == []
        assert matcher.progress.files_to_copy == 3
        assert matcher.progress.size_to_copy == 6

    def test_changed_mtime_updates(self, matcher):
        matcher.match(tree(SRC, {"x": (200, 5)}), tree(DST, {"x": (100, 5)}))
        assert matcher.queues.update == {s("x"): d("x")}
        assert matcher.progress.files_to_update == 1
        assert matcher.progress.size_to_update == 5

    def test_changed_length_updates(self, matcher):
        matcher.match(tree(SRC, {"x": (100, 6)}), tree(DST, {"x": (100, 5)}))
        assert list(matcher.queues.update) == [s("x")]

    def test_extra_destination_file_deleted(self, matcher, messages):
        matcher.match(tree(SRC, {}), tree(DST, {"y": (1, 9)}))

        [node] = matcher.queues.delete
        assert node.name == "y"
        assert node.full_path == d("y")
        assert matcher.progress.files_to_delete == 1
        assert matcher.progress.size_to_delete == 9
        assert not messages.at_least(Severity.ERROR)

    def test_identical_is_noop(self, matcher):
        entries = {"a": (1, 1), "dir/b": (2, 2)}
        matcher.match(tree(SRC, entries), tree(DST, entries))
        assert matcher.queues.empty


class TestDirectories:
    """Directory handling."""

    def test_new_directory_queues_itself_and_contents(self, matcher):
        src = tree(SRC, {"new/": None, "new/f": (1, 4), "new/sub/g": (1, 5), "new/empty/": None})
        matcher.match(src, tree(DST, {}))

        assert set(matcher.queues.copy) == {
            s("new"), s("new", "f"), s("new", "sub"), s("new", "sub", "g"), s("new", "empty"),
        }
        assert matcher.progress.directories_to_copy == 3
        assert matcher.progress.files_to_copy == 2
        assert matcher.progress.size_to_copy == 9

    def test_extra_directory_is_one_delete(self, matcher):
        dst = tree(DST, {"old/a": (1, 10), "old/sub/b": (1, 20)})
        matcher.match(tree(SRC, {}), dst)

        [node] = matcher.queues.delete
        assert node.name == "old"
        assert matcher.progress.files_to_delete == 2
        assert matcher.progress.size_to_delete == 30

    def test_nested_levels_matched(self, matcher):
        src = tree(SRC, {"a/b/c/new": (1, 1), "a/b/same": (1, 1)})
        dst = tree(DST, {"a/b/c/old": (1, 1), "a/b/same": (1, 1)})
        matcher.match(src, dst)

        assert list(matcher.queues.copy) == [s("a", "b", "c", "new")]
        assert [n.full_path for n in matcher.queues.delete] == [d("a", "b", "c", "old")]

    def test_wide_tree(self, matcher):
        entries = {f"dir{i}/file{j}": (1, 1) for i in range(20) for j in range(5)}
        src_entries = dict(entries)
        src_entries["dir7/extra"] = (1, 3)
        matcher.match(tree(SRC, src_entries), tree(DST, entries))
        assert list(matcher.queues.copy) == [s("dir7", "extra")]


class TestTypeMismatch:
    """Same name, different kind: delete then copy."""

    def test_file_replaced_by_directory(self, matcher, messages):
        src = tree(SRC, {"x/inner": (1, 2)})
        dst = tree(DST, {"x": (1, 7)})
        matcher.match(src, dst)

        assert [n.full_path for n in matcher.queues.delete] == [d("x")]
        assert set(matcher.queues.copy) == {s("x"), s("x", "inner")}
        assert not messages.at_least(Severity.ERROR)

    def test_directory_replaced_by_file(self, matcher):
        src = tree(SRC, {"x": (1, 7)})
        dst = tree(DST, {"x/inner": (1, 2)})
        matcher.match(src, dst)

        assert [n.full_path for n in matcher.queues.delete] == [d("x")]
        assert matcher.queues.copy == {s("x"): d("x")}


class TestMatchDirectory:
    """Single-level classification."""

    def test_partition(self, matcher):
        src = tree(SRC, {"copy": (1, 1), "upd": (2, 1), "same": (1, 1), "dir/f": (1, 1), "kind": (1, 1)})
        dst = tree(DST, {"del": (1, 1), "upd": (1, 1), "same": (1, 1), "dir/f": (1, 1), "kind/": None})

        result = matcher.match_directory(src.root, dst.root, SRC, DST)

        assert sorted(result.copied) == ["copy", "kind"]
        assert result.updated == ["upd"]
        assert sorted(result.deleted) == ["del"]
        assert result.unchanged == ["same"]
        assert result.recursed == ["dir"]

        classes = [result.copied, result.updated, result.deleted, result.unchanged, result.recursed]
        union = set(src.root.children) | set(dst.root.children)
        assert set().union(*map(set, classes)) == union
        # "kind" is recorded as copied; its delete is queued alongside
        assert sum(len(c) for c in classes) == len(union)
        assert [n.name for n in matcher.queues.delete] == ["del", "kind"]


class TestConsistencyCheck:
    """Deletes of names still present in the live source."""

    def test_conflict_reported_and_deleted(self, tmp_dirs, messages, make_tree):
        make_tree(tmp_dirs["source"], {"ghost.txt": "still here"})
        src = tree(str(tmp_dirs["source"]), {})
        dst = tree(str(tmp_dirs["destination"]), {"ghost.txt": (1, 10)})
        matcher = Matcher(WorkQueues(), SyncProgress(), messages, max_workers=1)
        matcher.match(src, dst)

        errors = messages.at_least(Severity.ERROR)
        assert len(errors) == 1
        assert "Consistency check failed" in errors[0].text
        assert len(matcher.queues.delete) == 1

    def test_conflict_skipped_when_configured(self, tmp_dirs, messages, make_tree):
        make_tree(tmp_dirs["source"], {"ghost.txt": "still here"})
        src = tree(str(tmp_dirs["source"]), {})
        dst = tree(str(tmp_dirs["destination"]), {"ghost.txt": (1, 10)})
        matcher = Matcher(WorkQueues(), SyncProgress(), messages, max_workers=1, skip_on_conflict=True)
        matcher.match(src, dst)

        assert matcher.queues.delete == []
        assert matcher.progress.files_to_delete == 0

    def test_ignored_source_entry_is_no_conflict(self, tmp_dirs, messages, make_tree):
        make_tree(tmp_dirs["source"], {"temp": {"x": "x"}})
        src = tree(str(tmp_dirs["source"]), {})
        dst = tree(str(tmp_dirs["destination"]), {"temp/x": (1, 1)})
        matcher = Matcher(WorkQueues(), SyncProgress(), messages,
                          ignore_filter=IgnoreFilter(["^temp$"]), max_workers=1)
        matcher.match(src, dst)

        assert not messages.at_least(Severity.ERROR)
        assert [n.name for n in matcher.queues.delete] == ["temp"]


class TestSpecialEntries:
    """Sockets, fifos and directory symlinks are never copied."""

    def test_special_only_in_source_is_noop(self, matcher, messages):
        src = tree(SRC, {"a": (1, 1)})
        src.set_entry(("pipe",), NodeType.SPECIAL, 1)
        result = matcher.match_directory(src.root, tree(DST, {}).root, SRC, DST)

        assert result.unchanged == ["pipe"]
        assert list(matcher.queues.copy) == [s("a")]
        assert matcher.progress.files_to_copy == 1
        skipped = [m for m in messages.messages if "special entry" in m.text]
        assert len(skipped) == 1
        assert skipped[0].severity == Severity.VERBOSE

    def test_special_inside_new_directory_is_skipped(self, matcher):
        src = tree(SRC, {"new/f": (1, 4)})
        src.set_entry(("new", "link"), NodeType.SPECIAL, 1)
        matcher.match(src, tree(DST, {}))

        assert set(matcher.queues.copy) == {s("new"), s("new", "f")}
        assert matcher.progress.files_to_copy == 1

    def test_special_replacing_file_deletes_only(self, matcher):
        src = tree(SRC, {})
        src.set_entry(("x",), NodeType.SPECIAL, 1)
        dst = tree(DST, {"x": (1, 5)})
        result = matcher.match_directory(src.root, dst.root, SRC, DST)

        assert result.deleted == ["x"]
        assert [n.full_path for n in matcher.queues.delete] == [d("x")]
        assert matcher.queues.copy == {}

    def test_special_on_both_sides_is_noop(self, matcher):
        src = tree(SRC, {})
        dst = tree(DST, {})
        src.set_entry(("sock",), NodeType.SPECIAL, 1)
        dst.set_entry(("sock",), NodeType.SPECIAL, 2)
        matcher.match(src, dst)
        assert matcher.queues.empty
