"""Merge-diff of a source tree against a destination tree.

Each directory level is compared with a sorted linear merge of both child
lists; every name lands in exactly one of copy, update, delete, recurse or
no-op. Sibling subtrees are matched in parallel.
"""

import logging
import os
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import List, Optional, Set, Tuple

from mirror_backup.config import NodeType, default_worker_count
from mirror_backup.index.ignore import IgnoreFilter
from mirror_backup.index.node import TreeIndex, TreeNode
from mirror_backup.sync.progress import SyncProgress, WorkQueues
from mirror_backup.utils.messages import MessageLog

logger = logging.getLogger(__name__)


@dataclass
class DirectoryPair:
    """A directory present on both sides, waiting to be matched."""
    source: TreeNode
    destination: TreeNode
    source_path: str
    destination_path: str
    parts: Tuple[str, ...] = ()


@dataclass
class LevelResult:
    """Classification of the children of one directory pair."""
    copied: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    subdirectories: List[DirectoryPair] = field(default_factory=list)

    @property
    def recursed(self) -> List[str]:
        return [pair.source.name for pair in self.subdirectories]


class Matcher:
    """Fills the work queues with the difference between two trees.

    Attributes:
        queues: Work queues receiving copy, update and delete items
        progress: Counters credited with the queued work
        ignore_filter: Filter consulted by the delete consistency check
        skip_on_conflict: Don't delete entries that still exist in the source
    """

    def __init__(
        self,
        queues: WorkQueues,
        progress: SyncProgress,
        messages: MessageLog,
        ignore_filter: Optional[IgnoreFilter] = None,
        max_workers: Optional[int] = None,
        skip_on_conflict: bool = False,
    ):
        self.queues = queues
        self.progress = progress
        self.messages = messages
        self.ignore_filter = ignore_filter if ignore_filter else None
        self.max_workers = max_workers or default_worker_count()
        self.skip_on_conflict = skip_on_conflict
        self.current_entity = ""

    def match(self, source_index: TreeIndex, destination_index: TreeIndex) -> None:
        """Match both trees completely; returns once every level is done."""
        root = DirectoryPair(
            source=source_index.root,
            destination=destination_index.root,
            source_path=source_index.root_path,
            destination_path=destination_index.root_path,
        )

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="match") as pool:
            pending: Set[Future] = {pool.submit(self._match_pair, root)}
            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    for pair in future.result().subdirectories:
                        pending.add(pool.submit(self._match_pair, pair))

        logger.debug(
            f"Matched {source_index.root_path} -> {destination_index.root_path}: "
            f"{len(self.queues.copy)} copy, {len(self.queues.update)} update, "
            f"{len(self.queues.delete)} delete"
        )

    def _match_pair(self, pair: DirectoryPair) -> LevelResult:
        return self.match_directory(
            pair.source, pair.destination, pair.source_path, pair.destination_path, pair.parts
        )

    def match_directory(
        self,
        source: TreeNode,
        destination: TreeNode,
        source_path: str,
        destination_path: str,
        parts: Tuple[str, ...] = (),
    ) -> LevelResult:
        """Classify the children of one directory pair and queue the work.

        Directories present on both sides are not descended into; they are
        returned in ``subdirectories`` for the caller to schedule.
        """
        self.current_entity = source_path
        result = LevelResult()

        src_list = source.sorted_children()
        dst_list = destination.sorted_children()
        s_pos = d_pos = 0

        while s_pos < len(src_list) or d_pos < len(dst_list):
            s = src_list[s_pos] if s_pos < len(src_list) else None
            d = dst_list[d_pos] if d_pos < len(dst_list) else None

            if d is None or (s is not None and s.name < d.name):
                s_full = os.path.join(source_path, s.name)
                if s.type == NodeType.SPECIAL:
                    self._skip_special(s_full)
                    result.unchanged.append(s.name)
                else:
                    self._queue_copy(s, s_full, os.path.join(destination_path, s.name))
                    result.copied.append(s.name)
                s_pos += 1
                continue

            if s is None or d.name < s.name:
                self._queue_delete(d, os.path.join(destination_path, d.name),
                                   os.path.join(source_path, d.name), parts + (d.name,))
                result.deleted.append(d.name)
                d_pos += 1
                continue

            s_full = os.path.join(source_path, s.name)
            d_full = os.path.join(destination_path, d.name)
            s_pos += 1
            d_pos += 1

            if s.type != d.type:
                # Delete runs before copy, so the name is free when the copy starts
                self._queue_delete(d, d_full, s_full, parts + (d.name,), check=False)
                if s.type == NodeType.SPECIAL:
                    self._skip_special(s_full)
                    result.deleted.append(s.name)
                else:
                    self._queue_copy(s, s_full, d_full)
                    result.copied.append(s.name)
            elif s.is_dir:
                result.subdirectories.append(
                    DirectoryPair(s, d, s_full, d_full, parts + (s.name,))
                )
            elif s.type == NodeType.FILE and (s.last_change != d.last_change or s.length != d.length):
                if self.queues.add_update(s_full, d_full):
                    self.progress.add(files_to_update=1, size_to_update=s.length)
                result.updated.append(s.name)
            else:
                result.unchanged.append(s.name)

        return result

    def _queue_copy(self, node: TreeNode, source_path: str, destination_path: str) -> None:
        node.full_path = source_path
        if node.is_dir:
            self._add_directory(node, source_path, destination_path)
        elif self.queues.add_copy(source_path, destination_path):
            self.progress.add(files_to_copy=1, size_to_copy=node.length)

    def _add_directory(self, node: TreeNode, source_path: str, destination_path: str) -> None:
        # The directory itself is queued too so empty directories get created
        if self.queues.add_copy(source_path, destination_path):
            self.progress.add(directories_to_copy=1)

        subdirs = []
        for child in node.sorted_children():
            child_src = os.path.join(source_path, child.name)
            child_dst = os.path.join(destination_path, child.name)
            if child.is_dir:
                subdirs.append((child, child_src, child_dst))
            elif child.type == NodeType.SPECIAL:
                self._skip_special(child_src)
            elif self.queues.add_copy(child_src, child_dst):
                self.progress.add(files_to_copy=1, size_to_copy=child.length)

        for child, child_src, child_dst in subdirs:
            self._add_directory(child, child_src, child_dst)

    def _skip_special(self, source_path: str) -> None:
        self.messages.verbose(f"Skipping special entry '{source_path}'")

    def _queue_delete(
        self,
        node: TreeNode,
        destination_path: str,
        source_path: str,
        parts: Tuple[str, ...],
        check: bool = True,
    ) -> None:
        node.full_path = destination_path

        if check and self._still_in_source(source_path, parts):
            self.messages.error(
                f"Consistency check failed. {destination_path} would get deleted, "
                f"but still exists in source"
            )
            if self.skip_on_conflict:
                return

        self.queues.add_delete(node)
        self.progress.add(files_to_delete=node.files_recursive, size_to_delete=node.size_recursive)

    def _still_in_source(self, source_path: str, parts: Tuple[str, ...]) -> bool:
        if not os.path.lexists(source_path):
            return False
        if self.ignore_filter is None:
            return True
        is_dir = os.path.isdir(source_path) and not os.path.islink(source_path)
        return not self.ignore_filter.is_ignored(source_path, parts, is_dir)
