"""Index module for Mirror Backup.

This module provides:
- TreeNode / TreeIndex: In-memory snapshot of a directory tree
- IgnoreFilter: Pattern based exclusion of entries
- Indexer: Builds a TreeIndex from the live filesystem
- CacheStore: Persists the destination index between runs
"""

from mirror_backup.index.cache import CacheStore
from mirror_backup.index.ignore import IgnoreFilter
from mirror_backup.index.indexer import Indexer
from mirror_backup.index.node import CacheFormatError, NodeNotFoundError, TreeIndex, TreeNode

__all__ = [
    "CacheStore",
    "CacheFormatError",
    "IgnoreFilter",
    "Indexer",
    "NodeNotFoundError",
    "TreeIndex",
    "TreeNode",
]
