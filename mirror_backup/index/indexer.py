"""Builds a TreeIndex by walking a live directory tree."""

import logging
import os
from pathlib import Path
from typing import List, Optional, Tuple, Union

from mirror_backup.config import ARTIFACT_SUFFIX, NodeType
from mirror_backup.index.ignore import IgnoreFilter
from mirror_backup.index.node import TreeIndex, TreeNode
from mirror_backup.utils.messages import MessageLog

logger = logging.getLogger(__name__)


class Indexer:
    """Recursive directory indexer.

    Filtering is active when an ignore filter with at least one pattern is
    given. Entries that vanish or can't be read while walking are reported
    and skipped; only a failure on the root itself is raised.
    """

    def __init__(self, messages: MessageLog, ignore_filter: Optional[IgnoreFilter] = None):
        self.messages = messages
        self.ignore_filter = ignore_filter if ignore_filter else None

    def index(self, root: Union[str, Path], index: Optional[TreeIndex] = None) -> TreeIndex:
        """Index ``root`` into ``index`` (a fresh TreeIndex if omitted).

        Raises:
            OSError: If the root directory can't be enumerated
        """
        root = str(root)
        if index is None:
            index = TreeIndex(root)
        self._index_directory(index, root, index.root, (), root_level=True)
        logger.debug(
            f"Indexed {root}: {index.indexed_directories} dirs, "
            f"{index.indexed_files} files, {index.indexed_size} bytes"
        )
        return index

    def _index_directory(
        self,
        index: TreeIndex,
        path: str,
        node: TreeNode,
        parts: Tuple[str, ...],
        root_level: bool = False,
    ) -> None:
        index.current_entity = path

        files: List[TreeNode] = []
        dirs: List[TreeNode] = []
        specials: List[TreeNode] = []

        with os.scandir(path) as entries:
            for entry in entries:
                if root_level and entry.name.endswith(ARTIFACT_SUFFIX):
                    continue
                try:
                    child = self._make_node(entry)
                except OSError as e:
                    self.messages.warning(f"Skipping '{entry.path}': {e}")
                    continue

                if self._ignored(entry.path, parts + (entry.name,), child.is_dir):
                    continue

                if child.is_dir:
                    dirs.append(child)
                elif child.type == NodeType.FILE:
                    files.append(child)
                else:
                    specials.append(child)

        for child in files + dirs + specials:
            node.add_child(child)

        non_dirs = files + specials
        index.add_counts(files=len(non_dirs), size=sum(n.length for n in non_dirs))

        for child in dirs:
            child_path = os.path.join(path, child.name)
            try:
                self._index_directory(index, child_path, child, parts + (child.name,))
            except OSError as e:
                # Permission denied or vanished: keep the node, skip its subtree
                self.messages.warning(f"Could not index '{child_path}': {e}")

        index.add_counts(directories=1)

    @staticmethod
    def _make_node(entry: os.DirEntry) -> TreeNode:
        if entry.is_dir(follow_symlinks=False):
            st = entry.stat(follow_symlinks=False)
            return TreeNode(entry.name, NodeType.DIRECTORY, 0, int(st.st_mtime))
        if entry.is_file():
            st = entry.stat()
            return TreeNode(entry.name, NodeType.FILE, st.st_size, int(st.st_mtime))
        st = entry.stat(follow_symlinks=False)
        return TreeNode(entry.name, NodeType.SPECIAL, 0, int(st.st_mtime))

    def _ignored(self, full_path: str, parts: Tuple[str, ...], is_dir: bool) -> bool:
        if self.ignore_filter is None:
            return False
        if self.ignore_filter.is_ignored(full_path, parts, is_dir):
            self.messages.verbose(f"Ignored: {full_path}")
            return True
        return False
