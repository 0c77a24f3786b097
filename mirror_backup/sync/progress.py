"""Work queues and progress counters shared by the matcher and executor."""

import threading
import time
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Tuple

from mirror_backup.config import EngineState
from mirror_backup.index.node import TreeNode


class WorkQueues:
    """The three pending-work collections filled by the matcher.

    ``copy`` and ``update`` map a source path to its destination path;
    ``delete`` holds destination nodes annotated with ``full_path``, keyed by
    node identity so removal is O(1). Each collection has its own lock and
    items are removed once handled.
    """

    def __init__(self):
        self.copy: Dict[str, str] = {}
        self.update: Dict[str, str] = {}
        self._delete: Dict[int, TreeNode] = {}
        self.copy_lock = threading.Lock()
        self.update_lock = threading.Lock()
        self.delete_lock = threading.Lock()

    def add_copy(self, source: str, destination: str) -> bool:
        """Queue a copy; returns False if the source was already queued."""
        with self.copy_lock:
            if source in self.copy:
                return False
            self.copy[source] = destination
            return True

    def add_update(self, source: str, destination: str) -> bool:
        with self.update_lock:
            if source in self.update:
                return False
            self.update[source] = destination
            return True

    def add_delete(self, node: TreeNode) -> None:
        with self.delete_lock:
            self._delete[id(node)] = node

    def remove_copy(self, source: str) -> None:
        with self.copy_lock:
            self.copy.pop(source, None)

    def remove_update(self, source: str) -> None:
        with self.update_lock:
            self.update.pop(source, None)

    def remove_delete(self, node: TreeNode) -> None:
        with self.delete_lock:
            self._delete.pop(id(node), None)

    def copy_items(self) -> List[Tuple[str, str]]:
        with self.copy_lock:
            return list(self.copy.items())

    def update_items(self) -> List[Tuple[str, str]]:
        with self.update_lock:
            return list(self.update.items())

    def delete_items(self) -> List[TreeNode]:
        with self.delete_lock:
            return list(self._delete.values())

    @property
    def delete(self) -> List[TreeNode]:
        """Queued delete nodes in insertion order."""
        return self.delete_items()

    @property
    def empty(self) -> bool:
        with self.copy_lock, self.update_lock, self.delete_lock:
            return not (self.copy or self.update or self._delete)


@dataclass
class SyncProgress:
    """Pipeline state plus queued and completed work of one run."""

    state: EngineState = EngineState.INIT

    # Queued by the matcher
    files_to_copy: int = 0
    size_to_copy: int = 0
    directories_to_copy: int = 0
    files_to_update: int = 0
    size_to_update: int = 0
    files_to_delete: int = 0
    size_to_delete: int = 0

    # Completed by the executor
    files_copied: int = 0
    size_copied: int = 0
    directories_copied: int = 0
    files_updated: int = 0
    size_updated: int = 0
    files_deleted: int = 0
    size_deleted: int = 0

    # Timing
    started_at: float = 0.0
    completed_at: float = 0.0

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add(self, **deltas: int) -> None:
        """Add to one or more counters atomically.

        Raises:
            AttributeError: If a name is not a counter
        """
        with self._lock:
            for name, delta in deltas.items():
                if name not in _COUNTER_NAMES:
                    raise AttributeError(f"SyncProgress has no counter {name!r}")
                setattr(self, name, getattr(self, name) + delta)

    def advance(self, state: EngineState) -> None:
        """Move the pipeline to ``state``.

        Raises:
            ValueError: If ``state`` lies before the current state
        """
        with self._lock:
            if state.order < self.state.order:
                raise ValueError(f"Cannot go back from {self.state.value} to {state.value}")
            if self.state == EngineState.INIT and state != EngineState.INIT:
                self.started_at = time.time()
            if state == EngineState.DONE and self.state != EngineState.DONE:
                self.completed_at = time.time()
            self.state = state

    @staticmethod
    def _ratio(done: int, total: int) -> float:
        if total <= 0:
            return 0.0
        return min(1.0, done / total)

    def _fraction(self, prefix: str) -> float:
        with self._lock:
            state = self.state
            if state == EngineState.DONE:
                return 1.0
            if state == EngineState.DELETE:
                return self._ratio(
                    getattr(self, f"{prefix}_deleted"),
                    getattr(self, f"{prefix}_to_delete"),
                )
            if state in (EngineState.COPY, EngineState.UPDATE):
                done = getattr(self, f"{prefix}_copied") + getattr(self, f"{prefix}_updated")
                total = getattr(self, f"{prefix}_to_copy") + getattr(self, f"{prefix}_to_update")
                return self._ratio(done, total)
            return 0.0

    @property
    def size_fraction(self) -> float:
        """Byte-weighted progress of the current phase in [0, 1]."""
        return self._fraction("size")

    @property
    def files_fraction(self) -> float:
        """Item-count progress of the current phase in [0, 1]."""
        return self._fraction("files")

    @property
    def duration_ms(self) -> float:
        if not self.started_at:
            return 0.0
        end = self.completed_at or time.time()
        return (end - self.started_at) * 1000

    def to_dict(self) -> Dict[str, Any]:
        """Convert progress to dictionary."""
        with self._lock:
            data: Dict[str, Any] = {"state": self.state.value}
            for name in _COUNTER_NAMES:
                data[name] = getattr(self, name)
        data["duration_ms"] = self.duration_ms
        data["size_fraction"] = self.size_fraction
        data["files_fraction"] = self.files_fraction
        return data


_COUNTER_NAMES = tuple(
    f.name for f in fields(SyncProgress)
    if f.type in (int, "int")
)
