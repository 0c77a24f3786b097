"""Exclusive run lock: one backup run per destination at a time.

The lock is a marker file created with ``O_CREAT | O_EXCL`` in the
destination root. It records the owning pid. A marker whose owner is still
running means the destination is locked; a marker left by a crashed run (dead
owner, unreadable content) is removed first. On Windows an open marker can't
be deleted, so a live run is detected by the failed removal instead.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from mirror_backup.config import LOCK_MARKER_NAME

logger = logging.getLogger(__name__)


class LockError(RuntimeError):
    """Raised when the run lock can't be acquired."""


def _process_alive(pid: int) -> bool:
    if os.name == "nt":
        # os.kill terminates the target here; the undeletable open marker
        # already keeps a second run out
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class RunLock:
    """Marker-file lock on a destination root.

    Usage:
        with RunLock(destination):
            ...
    """

    def __init__(self, destination: Union[str, Path]):
        self.destination = Path(destination)
        self.path = self.destination / LOCK_MARKER_NAME
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            LockError: If a stray marker can't be removed or the exclusive
                create fails
        """
        if self.held:
            return

        owner = self.owner_pid()
        if owner is not None and _process_alive(owner):
            raise LockError(f"Destination '{self.destination}' is locked by running process {owner}")

        try:
            if self.path.exists():
                self.path.unlink()
                logger.warning(f"Removed stray lock marker {self.path}")
        except OSError as e:
            raise LockError(f"Could not remove stale lock '{self.path}': {e}") from e

        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_RDWR, 0o644)
        except OSError as e:
            raise LockError(f"Could not create lock '{self.path}': {e}") from e

        marker = {
            "pid": os.getpid(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "destination": str(self.destination),
        }
        try:
            os.write(fd, json.dumps(marker, indent=2).encode("utf-8"))
        except OSError as e:
            # The marker's existence is the lock; its content is informational
            logger.debug(f"Could not write lock details: {e}")
        self._fd = fd
        logger.debug(f"Acquired run lock {self.path}")

    def owner_pid(self) -> Optional[int]:
        """Pid recorded in an existing marker, or None if there is none to read."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError, OSError):
            return None
        pid = data.get("pid") if isinstance(data, dict) else None
        if isinstance(pid, int) and not isinstance(pid, bool) and pid > 0:
            return pid
        return None

    def release(self) -> None:
        """Drop the lock; removal failures are logged, not raised."""
        if self._fd is None:
            return
        try:
            os.close(self._fd)
        except OSError as e:
            logger.debug(f"Closing lock handle failed: {e}")
        self._fd = None

        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove lock '{self.path}': {e}")
        logger.debug(f"Released run lock {self.path}")

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
