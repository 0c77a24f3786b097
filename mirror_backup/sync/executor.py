"""Applies queued work to the destination filesystem and its tree.

Phases run one at a time (delete, copy, update). Each phase drains its queue
on a bounded thread pool; leaving the pool context is the phase barrier.
Every item is removed from its queue once handled, successfully or not.
"""

import errno
import logging
import os
import shutil
import stat
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import PurePath
from typing import Callable, Iterable, Optional, Tuple, TypeVar

from mirror_backup.config import BackupConfig, NodeType
from mirror_backup.index.cache import CacheStore
from mirror_backup.index.node import TreeIndex, TreeNode
from mirror_backup.sync.progress import SyncProgress, WorkQueues
from mirror_backup.utils.hashing import files_differ
from mirror_backup.utils.messages import MessageLog

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _make_writable(path: str) -> None:
    """Clear read-only bits on ``path``, its parent and, for directories, below it.

    Removing an entry needs write access to the directory holding it.
    """
    targets = [os.path.dirname(os.path.abspath(path)), path]
    if os.path.isdir(path) and not os.path.islink(path):
        for dirpath, dirnames, filenames in os.walk(path):
            targets.extend(os.path.join(dirpath, name) for name in dirnames + filenames)
    for target in targets:
        if os.path.islink(target):
            continue
        mode = os.stat(target).st_mode
        os.chmod(target, mode | stat.S_IWRITE | (stat.S_IXUSR if stat.S_ISDIR(mode) else 0))


def _remove_path(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.unlink(path)


class Executor:
    """Runs the delete, copy and update phases of a backup.

    Attributes:
        config: Backup settings (worker count, digest, verification)
        index: Destination tree, kept in step with the filesystem
        cache_store: Receives auto-save requests while copying, if given
    """

    delete_attempts = 5
    delete_retry_delay = 0.01
    metadata_attempts = 10
    metadata_retry_delay = 0.01

    def __init__(
        self,
        config: BackupConfig,
        destination_index: TreeIndex,
        queues: WorkQueues,
        progress: SyncProgress,
        messages: MessageLog,
        cache_store: Optional[CacheStore] = None,
    ):
        self.config = config
        self.index = destination_index
        self.queues = queues
        self.progress = progress
        self.messages = messages
        self.cache_store = cache_store
        self.root = os.path.normpath(os.path.abspath(destination_index.root_path))

    # -- phases -------------------------------------------------------------

    def _run_phase(self, name: str, items: Iterable[T], handler: Callable[[T], bool]) -> int:
        items = list(items)
        if not items:
            return 0

        succeeded = 0
        with ThreadPoolExecutor(max_workers=self.config.workers, thread_name_prefix=name) as pool:
            futures = [pool.submit(handler, item) for item in items]
            for future in as_completed(futures):
                if future.result():
                    succeeded += 1

        logger.info(f"{name}: {succeeded}/{len(items)} items done")
        return succeeded

    def delete_all(self) -> int:
        """Remove every queued destination entry. Returns the success count."""
        return self._run_phase("delete", self.queues.delete_items(), self.delete)

    def copy_all(self) -> int:
        """Copy every queued source entry. Returns the success count."""
        return self._run_phase("copy", self.queues.copy_items(), lambda item: self.copy(*item))

    def update_all(self) -> int:
        """Refresh every queued changed file. Returns the success count."""
        return self._run_phase("update", self.queues.update_items(), lambda item: self.update(*item))

    # -- delete -------------------------------------------------------------

    def is_safe_to_delete(self, path: str) -> bool:
        """True if ``path`` lies lexically inside the destination root."""
        target = os.path.normpath(os.path.abspath(path))
        if target == self.root:
            return False
        try:
            return os.path.commonpath([self.root, target]) == self.root
        except ValueError:
            return False

    def delete(self, node: TreeNode) -> bool:
        path = node.full_path
        try:
            if not path or not self.is_safe_to_delete(path):
                self.messages.critical(f"Refusing to delete '{path}': not inside '{self.root}'")
                return False

            for attempt in range(1, self.delete_attempts + 1):
                try:
                    self._delete_path(path)
                    break
                except OSError as e:
                    if attempt == self.delete_attempts:
                        self.messages.error(f"Deleting '{path}' failed: {e}")
                        return False
                    time.sleep(self.delete_retry_delay)

            self._forget(self._parts(path))
            self.progress.add(files_deleted=node.files_recursive, size_deleted=node.size_recursive)
            self.messages.verbose(f"Deleted {path}")
            return True
        finally:
            self.queues.remove_delete(node)

    def _delete_path(self, path: str) -> None:
        try:
            _remove_path(path)
        except FileNotFoundError:
            pass
        except PermissionError:
            _make_writable(path)
            raise

    # -- copy ---------------------------------------------------------------

    def copy(self, source: str, destination: str) -> bool:
        try:
            if os.path.isdir(source) and not os.path.islink(source):
                ok = self._create_directory(source, destination)
                if ok:
                    self.progress.add(directories_copied=1)
                return ok
            if not os.path.lexists(source):
                self.messages.warning(f"Source vanished before copying: '{source}'")
                return False
            if not os.path.isfile(source):
                self.messages.warning(f"Skipping special entry '{source}'")
                return False

            length = self._transfer(source, destination)
            self.progress.add(files_copied=1, size_copied=length)
            self.messages.verbose(f"Copied {source} -> {destination}")
            return True
        except OSError as e:
            self._report_failure("Copying", source, destination, e)
            return False
        finally:
            self.queues.remove_copy(source)
            self._maybe_autosave()

    def _create_directory(self, source: str, destination: str) -> bool:
        if os.path.lexists(destination) and not os.path.isdir(destination):
            self.messages.error(f"Cannot create directory '{destination}': a file has this name")
            return False
        self._ensure_directory(destination)
        self._restore_metadata(source, destination)
        created = self.index.set_entry(
            self._parts(destination), NodeType.DIRECTORY, int(os.stat(source).st_mtime)
        )
        if created:
            self.index.add_counts(directories=1)
        return True

    def _ensure_directory(self, path: str) -> None:
        """Create ``path`` and its parents, replacing files that block it."""
        current = self.root
        for part in self._parts(path):
            current = os.path.join(current, part)
            if os.path.isdir(current):
                continue
            if os.path.lexists(current):
                self.messages.warning(f"Replacing file '{current}' by a directory")
                os.unlink(current)
                self._forget(self._parts(current))
            try:
                os.mkdir(current)
            except FileExistsError:
                if not os.path.isdir(current):
                    raise
                continue
            created = self.index.set_entry(
                self._parts(current), NodeType.DIRECTORY, int(os.stat(current).st_mtime)
            )
            if created:
                self.index.add_counts(directories=1)

    def _transfer(self, source: str, destination: str) -> int:
        """Copy one file over whatever is at ``destination``; returns its length."""
        parts = self._parts(destination)

        if os.path.lexists(destination):
            try:
                _remove_path(destination)
            except PermissionError:
                _make_writable(destination)
                _remove_path(destination)
            self._forget(parts)

        self._ensure_directory(os.path.dirname(destination))
        shutil.copyfile(source, destination)
        self._restore_metadata(source, destination)

        st = os.stat(source)
        length = os.path.getsize(destination)
        created = self.index.set_entry(parts, NodeType.FILE, int(st.st_mtime), length)
        self.index.add_counts(files=1 if created else 0, size=length)

        if self.config.verify_copies and files_differ(source, destination, algorithm="xxhash"):
            self.messages.error(f"Verification failed: '{destination}' differs from '{source}'")
        return length

    def _restore_metadata(self, source: str, destination: str) -> bool:
        """Copy timestamps and mode bits, plus the parent directory's times.

        Directories only get their times; their mode bits are left alone so
        a read-only source directory can still be filled.
        """
        def restore() -> None:
            if os.path.isdir(destination):
                st = os.stat(source)
                os.utime(destination, ns=(st.st_atime_ns, st.st_mtime_ns))
            else:
                shutil.copystat(source, destination)
            st = os.stat(os.path.dirname(source))
            os.utime(os.path.dirname(destination), ns=(st.st_atime_ns, st.st_mtime_ns))

        for attempt in range(1, self.metadata_attempts + 1):
            try:
                restore()
                return True
            except OSError as e:
                if attempt == self.metadata_attempts:
                    self.messages.warning(f"Could not restore attributes of '{destination}': {e}")
                    return False
                time.sleep(self.metadata_retry_delay)
        return False

    # -- update -------------------------------------------------------------

    def update(self, source: str, destination: str) -> bool:
        try:
            if not os.path.isfile(source):
                self.messages.warning(f"Source vanished before updating: '{source}'")
                return False

            src_size = os.path.getsize(source)
            if not os.path.isfile(destination) or os.path.getsize(destination) != src_size:
                self._transfer(source, destination)
            else:
                try:
                    differ = files_differ(source, destination, algorithm=self.config.digest_algorithm)
                except OSError as e:
                    self.messages.error(f"Comparing '{source}' with '{destination}' failed: {e}")
                    return False

                if differ:
                    self._transfer(source, destination)
                else:
                    self._refresh_metadata(source, destination, src_size)

            self.progress.add(files_updated=1, size_updated=src_size)
            self.messages.verbose(f"Updated {destination}")
            return True
        except OSError as e:
            self._report_failure("Updating", source, destination, e)
            return False
        finally:
            self.queues.remove_update(source)
            self._maybe_autosave()

    def _refresh_metadata(self, source: str, destination: str, length: int) -> None:
        self._restore_metadata(source, destination)
        parts = self._parts(destination)
        previous = self.index.find(parts)
        old_length = previous.length if previous is not None else 0
        created = self.index.set_entry(parts, NodeType.FILE, int(os.stat(source).st_mtime), length)
        self.index.add_counts(files=1 if created else 0, size=length - old_length)

    # -- helpers ------------------------------------------------------------

    def _forget(self, parts: Tuple[str, ...]) -> None:
        """Prune ``parts`` from the tree and take its totals off the counters."""
        removed = self.index.remove_entry(parts)
        if removed is None:
            return
        directories = sum(1 for _, n in removed.walk() if n.is_dir) + (1 if removed.is_dir else 0)
        self.index.add_counts(
            directories=-directories,
            files=-removed.files_recursive,
            size=-removed.size_recursive,
        )

    def _parts(self, path: str) -> Tuple[str, ...]:
        return PurePath(os.path.normpath(os.path.abspath(path))).relative_to(self.root).parts

    def _report_failure(self, action: str, source: str, destination: str, error: OSError) -> None:
        if isinstance(error, FileNotFoundError) and not os.path.lexists(source):
            self.messages.warning(f"Source vanished while {action.lower()} '{source}'")
        elif error.errno == errno.EBUSY:
            self.messages.warning(f"{action} '{source}' failed, file is busy: {error}")
        else:
            self.messages.error(f"{action} '{source}' to '{destination}' failed: {error}")

    def _maybe_autosave(self) -> None:
        if self.cache_store is not None:
            self.cache_store.maybe_autosave(self.index)
