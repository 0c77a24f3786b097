"""Utility modules for Mirror Backup.

This package provides:
- hashing: File content digests (sha256, xxhash, ...)
- logging: Configured logging with JSON/text output support
- messages: Severity-tagged message log shared by the engine
- formatting: Human readable sizes
"""

from mirror_backup.utils.formatting import format_size
from mirror_backup.utils.hashing import fast_hash_file, files_differ
from mirror_backup.utils.logging import configure_root_logger
from mirror_backup.utils.messages import Message, MessageLog, Severity

__all__ = [
    "format_size",
    "fast_hash_file",
    "files_differ",
    "configure_root_logger",
    "Message",
    "MessageLog",
    "Severity",
]
