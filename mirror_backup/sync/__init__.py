"""Synchronization module for Mirror Backup.

This module provides:
- Matcher: Diffs a source tree against a destination tree into work queues
- Executor: Applies the delete, copy and update queues
- RunLock: One run per destination at a time
- BackupEngine: The complete scan -> match -> execute pipeline

Order of execution: delete first (frees names), copy second, update last.
"""

from mirror_backup.sync.engine import BackupEngine
from mirror_backup.sync.executor import Executor
from mirror_backup.sync.lock import LockError, RunLock
from mirror_backup.sync.matcher import Matcher
from mirror_backup.sync.progress import SyncProgress, WorkQueues

__all__ = [
    "BackupEngine",
    "Executor",
    "LockError",
    "RunLock",
    "Matcher",
    "SyncProgress",
    "WorkQueues",
]
