"""Mirror Backup - one-way directory tree backup.

Makes a destination tree mirror a source tree with the fewest copy, update
and delete operations. The destination's index is cached inside the
destination itself, so repeated runs only scan the source.

Key Features:
    - Parallel scanning, matching and execution on worker threads
    - Crash-safe cache rotation (primary / backup / new)
    - Periodic forced reindexing to catch changes the cache can't see
    - Content digests for files whose size didn't change
    - Exclusive run lock per destination
    - Ignore patterns (substring, ``^root-entry$``, ``^root-entry``, ``name$``)

Quick Start:
    from mirror_backup import BackupEngine, BackupConfig

    engine = BackupEngine(BackupConfig(
        source="/home/user/Documents",
        destination="/mnt/backup/Documents",
        ignore_patterns=["^tmp$", ".cache"],
    ))
    engine.run()
    for message in engine.messages.messages:
        print(message)

Classes:
    BackupEngine: Runs one backup
    BackupConfig: Settings of one backup
    EngineState: Pipeline states (INIT ... DONE)
"""

__version__ = "1.0.0"

from .config import (
    BackupConfig,
    EngineState,
    NodeType,
    load_batch_config,
)
from .index import CacheStore, IgnoreFilter, Indexer, TreeIndex, TreeNode
from .sync import BackupEngine, LockError, RunLock, SyncProgress
from .utils.messages import MessageLog, Severity

__all__ = [
    "__version__",
    # Main classes
    "BackupEngine",
    "BackupConfig",
    "load_batch_config",
    # Enums
    "EngineState",
    "NodeType",
    "Severity",
    # Components
    "CacheStore",
    "IgnoreFilter",
    "Indexer",
    "TreeIndex",
    "TreeNode",
    "RunLock",
    "LockError",
    "SyncProgress",
    "MessageLog",
]
