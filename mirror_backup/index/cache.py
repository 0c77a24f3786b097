"""Persisted destination index with atomic rotation and a staleness policy.

The cache lets a run skip re-scanning an unchanged destination. Three files
live in the destination root:

    _mirror_cache.mbc       primary
    _mirror_cache_bak.mbc   previous primary
    _mirror_cache_new.mbc   transient, only during a save

A save writes "new", deletes the backup, renames primary -> backup and
new -> primary, so at least one readable cache survives a crash at any point.
A load tries primary, then backup, and otherwise returns None (full reindex).

Because the cache can't see every change (mtime granularity, edits made
outside the engine), it is trusted only ``reindex_threshold`` times in a row.
"""

import gzip
import json
import logging
import os
import threading
import time
import zlib
from pathlib import Path
from typing import Optional, Union

from mirror_backup.config import (
    CACHE_BACKUP_NAME,
    CACHE_NEW_NAME,
    CACHE_PRIMARY_NAME,
    DEFAULT_AUTO_SAVE_INTERVAL,
    DEFAULT_REINDEX_THRESHOLD,
)
from mirror_backup.index.node import CacheFormatError, TreeIndex
from mirror_backup.utils.formatting import format_size
from mirror_backup.utils.messages import MessageLog

logger = logging.getLogger(__name__)


class CacheStore:
    """Loads and saves the destination index of one destination root.

    Attributes:
        root: Destination root holding the cache files
        reindex_threshold: Consecutive reuses allowed before a full reindex
        auto_save_interval: Seconds between background saves
        save_attempts: Attempts per save before giving up
        save_retry_delay: Seconds to wait between attempts
    """

    def __init__(
        self,
        root: Union[str, Path],
        messages: MessageLog,
        reindex_threshold: int = DEFAULT_REINDEX_THRESHOLD,
        auto_save_interval: float = DEFAULT_AUTO_SAVE_INTERVAL,
        save_attempts: int = 10,
        save_retry_delay: float = 1.0,
    ):
        self.root = Path(root)
        self.messages = messages
        self.reindex_threshold = reindex_threshold
        self.auto_save_interval = auto_save_interval
        self.save_attempts = save_attempts
        self.save_retry_delay = save_retry_delay

        self._save_lock = threading.Lock()
        self._guard = threading.Lock()
        self._save_in_progress = False
        self._save_thread: Optional[threading.Thread] = None
        self._cancelled = False

    @property
    def primary_path(self) -> Path:
        return self.root / CACHE_PRIMARY_NAME

    @property
    def backup_path(self) -> Path:
        return self.root / CACHE_BACKUP_NAME

    @property
    def new_path(self) -> Path:
        return self.root / CACHE_NEW_NAME

    # -- load ---------------------------------------------------------------

    def read(self, path: Path) -> TreeIndex:
        """Read and decode one cache file.

        Raises:
            OSError: If the file can't be read
            CacheFormatError: If the content is not a valid index
        """
        raw = path.read_bytes()
        try:
            text = gzip.decompress(raw).decode("utf-8")
        except (OSError, EOFError, zlib.error, UnicodeDecodeError) as e:
            raise CacheFormatError(f"{path.name}: not a compressed index ({e})") from e
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise CacheFormatError(f"{path.name}: invalid JSON ({e})") from e
        return TreeIndex.from_dict(data, self.root)

    def load(self) -> Optional[TreeIndex]:
        """Load the cached index, applying the staleness policy.

        Returns:
            The index, or None when no usable cache exists or the cache has
            been reused ``reindex_threshold`` times already
        """
        index = None
        for path in (self.primary_path, self.backup_path):
            if not path.exists():
                continue
            try:
                index = self.read(path)
                break
            except (OSError, CacheFormatError) as e:
                self.messages.info(f"Cache reading failed for '{path}': {e}")

        if index is None:
            self.messages.info("Cache invalid. Indexing destination directory.")
            return None

        if index.cache_reuse_count >= self.reindex_threshold:
            self.messages.info(
                f"Used cache {index.cache_reuse_count}/{self.reindex_threshold} times, reindexing..."
            )
            return None

        index.cache_reuse_count += 1
        index.current_entity = f"Used cache {index.cache_reuse_count}/{self.reindex_threshold} times"
        if index.cache_reuse_count == self.reindex_threshold // 2:
            index.current_entity += ", updating cached sizes"
            index.indexed_size = index.root.size_recursive

        # The incremented counter has to reach disk even if nothing else changes
        index.dirty = True

        remaining = self.reindex_threshold - index.cache_reuse_count
        self.messages.info(
            f"Used cache {index.cache_reuse_count}/{self.reindex_threshold} times. "
            f"{remaining} runs until reindexing."
        )
        self.messages.info(f"File count: {index.indexed_files}")
        self.messages.info(f"File sizes: {index.indexed_size} ({format_size(index.indexed_size)})")
        return index

    # -- save ---------------------------------------------------------------

    def save(self, index: TreeIndex) -> bool:
        """Persist ``index`` with primary/backup rotation.

        Returns:
            True if a new primary was written, False if the save was skipped
            or every attempt failed
        """
        with self._save_lock:
            index.last_save_time = time.monotonic()

            with index.lock:
                if not index.dirty and self.primary_path.exists():
                    return False
                payload = gzip.compress(json.dumps(index.to_dict()).encode("utf-8"))
                index.dirty = False

            for attempt in range(1, self.save_attempts + 1):
                try:
                    self._rotate(payload)
                    logger.debug(f"Saved cache {self.primary_path} ({len(payload)} bytes)")
                    return True
                except OSError as e:
                    logger.debug(f"Cache save attempt {attempt}/{self.save_attempts} failed: {e}")
                    if attempt < self.save_attempts:
                        time.sleep(self.save_retry_delay)

            with index.lock:
                index.dirty = True
            self.messages.error(
                f"Saving cache to '{self.primary_path}' failed after {self.save_attempts} attempts"
            )
            return False

    def _rotate(self, payload: bytes) -> None:
        if self.new_path.exists():
            self.new_path.unlink()
        self.new_path.write_bytes(payload)

        if self.backup_path.exists():
            self.backup_path.unlink()
        if self.primary_path.exists():
            os.replace(self.primary_path, self.backup_path)
        os.replace(self.new_path, self.primary_path)

    # -- background saves ---------------------------------------------------

    def maybe_autosave(self, index: TreeIndex) -> bool:
        """Start a background save if the auto-save interval has elapsed.

        At most one background save runs at a time.

        Returns:
            True if a background save was started
        """
        if time.monotonic() - index.last_save_time <= self.auto_save_interval:
            return False

        with self._guard:
            if self._cancelled or self._save_in_progress:
                return False
            self._save_in_progress = True
            self._save_thread = threading.Thread(
                target=self._background_save,
                args=(index,),
                name="cache-autosave",
                daemon=True,
            )
            self._save_thread.start()
            return True

    def _background_save(self, index: TreeIndex) -> None:
        try:
            self.save(index)
        except Exception as e:
            self.messages.error(f"Background cache save failed: {e}")
        finally:
            with self._guard:
                self._save_in_progress = False

    @property
    def save_in_progress(self) -> bool:
        with self._guard:
            return self._save_in_progress

    def wait(self, timeout: Optional[float] = None) -> None:
        """Join a running background save, if any."""
        thread = self._save_thread
        if thread is not None:
            thread.join(timeout)

    def cancel(self) -> None:
        """Stop scheduling background saves (a running one finishes)."""
        with self._guard:
            self._cancelled = True
