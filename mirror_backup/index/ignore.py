"""Ignore patterns for indexing and the delete consistency check.

Patterns are case sensitive and come in four forms:

    ``text``     literal substring of the full path
    ``^name$``   the root-level entry called ``name``
    ``^name``    the root-level entry called ``name`` and everything below it
    ``name$``    any entry whose own name is ``name``, at any depth

Directories are tested against their full path plus a trailing separator, so
``/build/`` matches a directory called ``build`` wherever it sits.
"""

import os
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple


@dataclass(frozen=True)
class _Pattern:
    text: str
    anchored_start: bool
    anchored_end: bool

    @classmethod
    def parse(cls, raw: str) -> "_Pattern":
        start = raw.startswith("^")
        end = raw.endswith("$") and len(raw) > (1 if start else 0)
        text = raw[1 if start else 0:len(raw) - (1 if end else 0)]
        return cls(text, start, end)

    def matches(self, full_path: str, parts: Sequence[str]) -> bool:
        if not parts:
            return False
        if self.anchored_start and self.anchored_end:
            return len(parts) == 1 and parts[0] == self.text
        if self.anchored_start:
            return parts[0] == self.text
        if self.anchored_end:
            return parts[-1] == self.text
        return self.text in full_path


class IgnoreFilter:
    """Decides whether an entry is excluded from the mirror.

    Attributes:
        patterns: The raw pattern strings, in configuration order
    """

    def __init__(self, patterns: Iterable[str] = ()):
        self.patterns: List[str] = [p for p in patterns if p]
        self._compiled: Tuple[_Pattern, ...] = tuple(
            _Pattern.parse(p) for p in self.patterns
        )

    def __bool__(self) -> bool:
        return bool(self._compiled)

    def is_ignored(self, full_path: str, parts: Sequence[str], is_dir: bool = False) -> bool:
        """Check an entry.

        Args:
            full_path: Absolute (or root-prefixed) path of the entry
            parts: Path components relative to the indexed root
            is_dir: Whether the entry is a directory

        Returns:
            True if any pattern matches
        """
        if is_dir:
            full_path = full_path.rstrip(os.sep) + os.sep
        return any(p.matches(full_path, parts) for p in self._compiled)
