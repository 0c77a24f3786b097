"""Append-only, severity-tagged message log shared by all engine components.

Every message is stored for the UI layer, forwarded to a standard logger and,
if configured, written to a log-line sink (``"[ERROR] text"``).
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, List, Optional


class Severity(IntEnum):
    """Message severities, ordered so they can be compared."""
    VERBOSE = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50


_LOG_LEVELS = {
    Severity.VERBOSE: logging.DEBUG,
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


@dataclass(frozen=True)
class Message:
    """One entry of the message log."""
    severity: Severity
    text: str
    timestamp: float = field(default_factory=time.time)

    def __str__(self) -> str:
        return f"[{self.severity.name}] {self.text}"


class MessageLog:
    """Thread-safe message list.

    Attributes:
        sink: Optional callable receiving every formatted line
        logger: Logger the messages are mirrored to
    """

    def __init__(
        self,
        sink: Optional[Callable[[str], None]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.sink = sink
        self.logger = logger or logging.getLogger("mirror_backup")
        self._messages: List[Message] = []
        self._lock = threading.Lock()

    def add(self, severity: Severity, text: str) -> Message:
        message = Message(severity, text)
        with self._lock:
            self._messages.append(message)
            if self.sink is not None:
                self.sink(str(message))
        self.logger.log(_LOG_LEVELS[severity], text)
        return message

    def verbose(self, text: str) -> Message:
        return self.add(Severity.VERBOSE, text)

    def info(self, text: str) -> Message:
        return self.add(Severity.INFO, text)

    def warning(self, text: str) -> Message:
        return self.add(Severity.WARNING, text)

    def error(self, text: str) -> Message:
        return self.add(Severity.ERROR, text)

    def critical(self, text: str) -> Message:
        return self.add(Severity.CRITICAL, text)

    @property
    def messages(self) -> List[Message]:
        """Snapshot of all messages in insertion order."""
        with self._lock:
            return list(self._messages)

    def at_least(self, severity: Severity) -> List[Message]:
        """Messages with the given severity or worse."""
        return [m for m in self.messages if m.severity >= severity]

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)
