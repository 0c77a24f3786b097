"""Tree model: one node per filesystem entry plus the indexed snapshot.

A TreeIndex owns a tree of TreeNode objects. Each node belongs to exactly one
parent; children are kept in a dict keyed by name so names stay unique and
lookups are O(1). Structural changes and counter updates go through the
index so they happen under its lock.
"""

import threading
import time
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from mirror_backup.config import NodeType

INDEX_FORMAT = "mirror-backup-index"
INDEX_VERSION = 1

_COUNTERS = ("indexed_directories", "indexed_files", "indexed_size", "cache_reuse_count")


class NodeNotFoundError(KeyError):
    """Raised when a child lookup by name fails."""


class CacheFormatError(ValueError):
    """Raised when serialized index data doesn't match the expected schema."""


@dataclass(eq=False)
class TreeNode:
    """A file, directory or special entry and its subtree.

    Attributes:
        name: Entry name, unique among siblings (the root holds the root path)
        type: Directory, file or special entry
        length: Size in bytes (0 for directories)
        last_change: Modification time in whole seconds since the epoch
        children: Child nodes by name
        full_path: Resolved path, set while matching and executing only
    """
    name: str
    type: NodeType = NodeType.FILE
    length: int = 0
    last_change: int = 0
    children: Dict[str, "TreeNode"] = field(default_factory=dict, repr=False)
    full_path: Optional[str] = field(default=None, repr=False)

    @property
    def is_dir(self) -> bool:
        return self.type == NodeType.DIRECTORY

    @property
    def size_recursive(self) -> int:
        """Bytes held by this entry and everything below it."""
        if self.is_dir:
            return sum(child.size_recursive for child in self.children.values())
        return self.length

    @property
    def files_recursive(self) -> int:
        """Number of non-directory entries in this subtree (1 for a file)."""
        if self.is_dir:
            return sum(child.files_recursive for child in self.children.values())
        return 1

    def child(self, name: str) -> "TreeNode":
        try:
            return self.children[name]
        except KeyError:
            raise NodeNotFoundError(f"{self.name!r} has no child named {name!r}") from None

    def sorted_children(self) -> List["TreeNode"]:
        """Children ordered by name (ordinal, case sensitive)."""
        return sorted(self.children.values(), key=lambda node: node.name)

    def add_child(self, node: "TreeNode") -> "TreeNode":
        self.children[node.name] = node
        return node

    def walk(self, prefix: Tuple[str, ...] = ()) -> Iterator[Tuple[Tuple[str, ...], "TreeNode"]]:
        """Yield ``(relative_parts, node)`` for every node below this one."""
        for child in self.sorted_children():
            parts = prefix + (child.name,)
            yield parts, child
            if child.is_dir:
                yield from child.walk(parts)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "n": self.name,
            "t": self.type.value,
            "l": self.length,
            "m": self.last_change,
        }
        if self.is_dir:
            data["c"] = [child.to_dict() for child in self.children.values()]
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "TreeNode":
        """Rebuild a node and its subtree, validating every field.

        Raises:
            CacheFormatError: On a missing, mistyped or duplicate entry
        """
        if not isinstance(data, dict):
            raise CacheFormatError(f"node must be an object, got {type(data).__name__}")
        try:
            name, type_value, length, last_change = data["n"], data["t"], data["l"], data["m"]
        except KeyError as e:
            raise CacheFormatError(f"node is missing field {e}") from None

        if not isinstance(name, str) or not name:
            raise CacheFormatError(f"invalid node name: {name!r}")
        if not isinstance(length, int) or not isinstance(last_change, int) or length < 0:
            raise CacheFormatError(f"invalid length/last change on {name!r}")
        try:
            node_type = NodeType(type_value)
        except ValueError:
            raise CacheFormatError(f"unknown node type {type_value!r} on {name!r}") from None

        node = cls(name=name, type=node_type, length=length, last_change=last_change)
        children = data.get("c", [])
        if not isinstance(children, list):
            raise CacheFormatError(f"children of {name!r} must be a list")
        if children and not node.is_dir:
            raise CacheFormatError(f"non-directory {name!r} has children")
        for child_data in children:
            child = cls.from_dict(child_data)
            if child.name in node.children:
                raise CacheFormatError(f"duplicate child {child.name!r} in {name!r}")
            node.add_child(child)
        return node

    def __str__(self) -> str:
        return self.name


class TreeIndex:
    """Indexed snapshot of a root path plus aggregate statistics.

    Counters are accumulated while indexing and adjusted by the executor;
    they are never reconciled against the tree except by the cache store's
    periodic size correction.
    """

    def __init__(self, root_path: Union[str, PurePath]):
        self.root = TreeNode(name=str(root_path), type=NodeType.DIRECTORY)
        self.indexed_directories = 0
        self.indexed_files = 0
        self.indexed_size = 0
        self.cache_reuse_count = 0
        self.current_entity = ""
        self.dirty = False
        self.last_save_time = time.monotonic()
        self.lock = threading.RLock()

    @property
    def root_path(self) -> str:
        return self.root.name

    def relative_parts(self, path: Union[str, PurePath]) -> Tuple[str, ...]:
        """Split ``path`` into components relative to the root.

        Raises:
            ValueError: If the path is not below the root
        """
        return PurePath(path).relative_to(self.root_path).parts

    def add_counts(self, directories: int = 0, files: int = 0, size: int = 0) -> None:
        with self.lock:
            self.indexed_directories += directories
            self.indexed_files += files
            self.indexed_size += size
            self.dirty = True

    def find(self, parts: Sequence[str]) -> Optional[TreeNode]:
        with self.lock:
            node = self.root
            for part in parts:
                node = node.children.get(part)
                if node is None:
                    return None
            return node

    def set_entry(
        self,
        parts: Sequence[str],
        node_type: NodeType,
        last_change: int,
        length: int = 0,
    ) -> bool:
        """Create or update the node at ``parts``.

        Missing intermediate nodes are created as directories; an
        intermediate non-directory is replaced by a directory.

        Returns:
            True if the leaf node did not exist before
        """
        if not parts:
            return False

        with self.lock:
            self.dirty = True
            node = self.root
            for part in parts[:-1]:
                nxt = node.children.get(part)
                if nxt is None or not nxt.is_dir:
                    nxt = node.add_child(TreeNode(name=part, type=NodeType.DIRECTORY))
                node = nxt

            leaf = node.children.get(parts[-1])
            created = leaf is None
            if created:
                leaf = node.add_child(TreeNode(name=parts[-1], type=node_type))
            elif leaf.type != node_type:
                leaf.type = node_type
                leaf.children = {}

            leaf.last_change = int(last_change)
            leaf.length = 0 if node_type == NodeType.DIRECTORY else int(length)
            return created

    def remove_entry(self, parts: Sequence[str]) -> Optional[TreeNode]:
        """Prune the node at ``parts``; returns it, or None if absent."""
        if not parts:
            return None

        with self.lock:
            parent = self.find(parts[:-1])
            if parent is None:
                return None
            removed = parent.children.pop(parts[-1], None)
            if removed is not None:
                self.dirty = True
            return removed

    def to_dict(self) -> Dict[str, Any]:
        """Versioned, JSON-ready snapshot of the tree and its counters."""
        with self.lock:
            data: Dict[str, Any] = {"format": INDEX_FORMAT, "version": INDEX_VERSION}
            for key in _COUNTERS:
                data[key] = getattr(self, key)
            data["root"] = self.root.to_dict()
            return data

    @classmethod
    def from_dict(cls, data: Any, root_path: Union[str, PurePath]) -> "TreeIndex":
        """Rebuild an index; the stored root name is replaced by ``root_path``.

        Raises:
            CacheFormatError: If the data is not a valid index snapshot
        """
        if not isinstance(data, dict) or data.get("format") != INDEX_FORMAT:
            raise CacheFormatError("not a mirror backup index")
        if data.get("version") != INDEX_VERSION:
            raise CacheFormatError(f"unsupported index version {data.get('version')!r}")

        index = cls(root_path)
        for key in _COUNTERS:
            value = data.get(key)
            if not isinstance(value, int) or value < 0:
                raise CacheFormatError(f"invalid {key}: {value!r}")
            setattr(index, key, value)

        root = TreeNode.from_dict(data.get("root"))
        if not root.is_dir:
            raise CacheFormatError("root node is not a directory")
        root.name = index.root.name
        index.root = root
        return index
