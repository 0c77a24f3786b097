"""Run coordinator: one complete backup of a source tree into a destination.

Pipeline: lock -> scan (source and destination in parallel) -> match ->
delete -> copy -> update -> save cache -> finish -> unlock. The cache save,
summary and unlock run even when a phase fails.
"""

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional

from mirror_backup.config import BackupConfig, EngineState
from mirror_backup.index.cache import CacheStore
from mirror_backup.index.ignore import IgnoreFilter
from mirror_backup.index.indexer import Indexer
from mirror_backup.index.node import TreeIndex
from mirror_backup.sync.executor import Executor
from mirror_backup.sync.lock import LockError, RunLock
from mirror_backup.sync.matcher import Matcher
from mirror_backup.sync.progress import SyncProgress, WorkQueues
from mirror_backup.utils.formatting import format_size
from mirror_backup.utils.messages import MessageLog

logger = logging.getLogger(__name__)


class BackupEngine:
    """Mirrors ``config.source`` into ``config.destination``.

    Attributes:
        config: Settings of this run
        messages: Message log shared by every component
        progress: Pipeline state and counters
        queues: Work found by the matcher
        source_index: Tree of the source (filled during SCAN)
        destination_index: Tree of the destination (cached or scanned)
    """

    def __init__(
        self,
        config: BackupConfig,
        sink: Optional[Callable[[str], None]] = None,
        messages: Optional[MessageLog] = None,
    ):
        self.config = config
        self.messages = messages or MessageLog(sink=sink)
        self.source_root = os.path.abspath(config.source)
        self.destination_root = os.path.abspath(config.destination)

        self.progress = SyncProgress()
        self.queues = WorkQueues()
        self.ignore_filter = IgnoreFilter(config.ignore_patterns)
        self.source_index = TreeIndex(self.source_root)
        self.destination_index = TreeIndex(self.destination_root)

        self.cache_store = CacheStore(
            self.destination_root,
            self.messages,
            reindex_threshold=config.reindex_threshold,
            auto_save_interval=config.auto_save_interval,
        )
        self.lock = RunLock(self.destination_root)
        self.matcher = Matcher(
            self.queues,
            self.progress,
            self.messages,
            ignore_filter=self.ignore_filter,
            max_workers=config.workers,
            skip_on_conflict=config.skip_on_conflict,
        )
        self.executor: Optional[Executor] = None
        self.error: Optional[BaseException] = None
        self._destination_ready = False

    @property
    def title(self) -> str:
        return self.config.title or str(self.config.source)

    @property
    def state(self) -> EngineState:
        return self.progress.state

    @property
    def current_entity(self) -> str:
        """What the engine is working on, for progress displays."""
        if self.state == EngineState.SCAN:
            return self.source_index.current_entity
        if self.state == EngineState.MATCH:
            return self.matcher.current_entity
        return ""

    # -- pipeline -----------------------------------------------------------

    def run(self) -> bool:
        """Execute the whole pipeline.

        Returns:
            False if the destination could not be locked or a phase failed,
            True otherwise
        """
        try:
            Path(self.destination_root).mkdir(parents=True, exist_ok=True)
            self.lock.acquire()
        except (LockError, OSError) as e:
            self.messages.critical(f"Could not lock destination '{self.destination_root}': {e}")
            return False

        self.messages.info(f"Starting backup '{self.title}': {self.source_root} -> {self.destination_root}")
        try:
            self.build_tree()
            self.match()
            self.delete()
            self.copy()
            self.update()
        except Exception as e:
            self.error = e
            self.messages.error(f"Backup '{self.title}' aborted during {self.state.value}: {e}")
            logger.debug("Pipeline failure", exc_info=True)
        finally:
            self.cache_store.cancel()
            self.cache_store.wait()
            self.save_cache()
            self.finish()
            self.lock.release()

        return self.error is None

    def build_tree(self) -> None:
        """Index the source while the destination is loaded from cache or scanned."""
        self.progress.advance(EngineState.SCAN)

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="scan") as pool:
            source_future = pool.submit(self._scan_source)
            destination_future = pool.submit(self._scan_destination)
            self.destination_index = destination_future.result()
            self.source_index = source_future.result()

        self.executor = Executor(
            self.config,
            self.destination_index,
            self.queues,
            self.progress,
            self.messages,
            cache_store=self.cache_store,
        )

    def _scan_source(self) -> TreeIndex:
        indexer = Indexer(self.messages, ignore_filter=self.ignore_filter)
        return indexer.index(self.source_root, self.source_index)

    def _scan_destination(self) -> TreeIndex:
        index = self.cache_store.load()
        if index is None:
            index = TreeIndex(self.destination_root)
            self.destination_index = index
            start = time.monotonic()
            Indexer(self.messages).index(self.destination_root, index)
            self.messages.info(f"Indexing finished, took {time.monotonic() - start:.2f} seconds.")
            index.dirty = True
        else:
            self.destination_index = index

        self._destination_ready = True
        self.cache_store.save(index)
        return index

    def match(self) -> None:
        self.progress.advance(EngineState.MATCH)
        self.matcher.match(self.source_index, self.destination_index)

    def delete(self) -> None:
        self.progress.advance(EngineState.DELETE)
        self._require_executor().delete_all()

    def copy(self) -> None:
        self.progress.advance(EngineState.COPY)
        self._require_executor().copy_all()

    def update(self) -> None:
        self.progress.advance(EngineState.UPDATE)
        self._require_executor().update_all()

    def _require_executor(self) -> Executor:
        if self.executor is None:
            raise RuntimeError("build_tree() must run before the execution phases")
        return self.executor

    # -- wrap-up ------------------------------------------------------------

    def save_cache(self) -> bool:
        """Persist the destination index if it was fully loaded or scanned."""
        if not self._destination_ready:
            logger.debug("Destination index incomplete, not saving cache")
            return False
        return self.cache_store.save(self.destination_index)

    def finish(self) -> None:
        """Emit the run summary and mark the run done."""
        p = self.progress
        src, dst = self.source_index, self.destination_index
        self.messages.info(f"Title:               {self.title}")
        self.messages.info(f"  Source size:       {src.indexed_files} ({format_size(src.indexed_size)})")
        self.messages.info(f"  Destination size:  {dst.indexed_files} ({format_size(dst.indexed_size)})")
        self.messages.info(f"  Copied:            {p.files_copied} ({format_size(p.size_copied)})")
        self.messages.info(f"  Updated:           {p.files_updated} ({format_size(p.size_updated)})")
        self.messages.info(f"  Deleted:           {p.files_deleted} ({format_size(p.size_deleted)})")
        p.advance(EngineState.DONE)
