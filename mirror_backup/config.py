"""Configuration dataclasses for Mirror Backup."""

import json
import math
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

# Every file the engine keeps in a destination root ends with this suffix.
# The indexer skips such names at the root level.
ARTIFACT_SUFFIX = ".mbc"
CACHE_PRIMARY_NAME = "_mirror_cache" + ARTIFACT_SUFFIX
CACHE_BACKUP_NAME = "_mirror_cache_bak" + ARTIFACT_SUFFIX
CACHE_NEW_NAME = "_mirror_cache_new" + ARTIFACT_SUFFIX
LOCK_MARKER_NAME = "_mirror_lock" + ARTIFACT_SUFFIX

DEFAULT_REINDEX_THRESHOLD = 10
DEFAULT_AUTO_SAVE_INTERVAL = 600


class EngineState(Enum):
    """Pipeline state of a backup run. Values only ever move forward."""
    INIT = "init"
    SCAN = "scan"
    MATCH = "match"
    DELETE = "delete"
    COPY = "copy"
    UPDATE = "update"
    DONE = "done"

    @property
    def order(self) -> int:
        return _STATE_ORDER.index(self)


_STATE_ORDER = list(EngineState)


class NodeType(Enum):
    """Kind of filesystem entry held by a tree node."""
    DIRECTORY = 0
    FILE = 1
    SPECIAL = 2     # sockets, fifos, symlinks to directories, ...


def default_worker_count() -> int:
    """Worker pool size: roughly 75% of the available processors."""
    return max(1, math.ceil((os.cpu_count() or 1) * 0.75))


def split_ignore_list(value: Union[str, List[str], None]) -> List[str]:
    """Turn a ``;`` or ``,`` separated ignore string into a pattern list."""
    if value is None:
        return []
    if isinstance(value, str):
        value = value.replace(";", ",").split(",")
    return [p.strip() for p in value if p and p.strip()]


@dataclass
class BackupConfig:
    """Configuration for a single backup run.

    Attributes:
        source: Tree to mirror from
        destination: Tree to mirror into (holds cache and lock files)
        title: Display name used in messages and summaries
        ignore_patterns: Ignore patterns applied to the source tree
        reindex_threshold: Cache reuses allowed before a full reindex
        auto_save_interval: Seconds between background cache saves
        max_workers: Worker pool size (None picks default_worker_count())
        digest_algorithm: Content digest used by the update phase
        verify_copies: Compare fast digests after every file copy
        skip_on_conflict: Skip deletes whose name still exists in the source
    """
    source: Path
    destination: Path
    title: str = ""
    ignore_patterns: List[str] = field(default_factory=list)
    reindex_threshold: int = DEFAULT_REINDEX_THRESHOLD
    auto_save_interval: float = DEFAULT_AUTO_SAVE_INTERVAL
    max_workers: Optional[int] = None
    digest_algorithm: str = "sha256"
    verify_copies: bool = False
    skip_on_conflict: bool = False

    def __post_init__(self):
        """Ensure paths are Path objects and validate limits."""
        if isinstance(self.source, str):
            self.source = Path(self.source)
        if isinstance(self.destination, str):
            self.destination = Path(self.destination)
        if isinstance(self.ignore_patterns, str):
            self.ignore_patterns = split_ignore_list(self.ignore_patterns)
        if self.reindex_threshold < 1:
            raise ValueError(f"reindex_threshold must be >= 1, got {self.reindex_threshold}")
        if self.auto_save_interval < 0:
            raise ValueError(f"auto_save_interval must be >= 0, got {self.auto_save_interval}")
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")

    @property
    def workers(self) -> int:
        return self.max_workers or default_worker_count()


def load_batch_config(path: Union[str, Path]) -> List[BackupConfig]:
    """Load a batch of backup runs from a JSON file.

    Expected layout::

        {"backups": [{"title": "Docs", "source": "...", "destination": "...",
                      "ignore": "^tmp$;.cache", "reindex": 10, "auto_save": 600}]}

    Args:
        path: JSON config file

    Returns:
        One BackupConfig per entry, in file order

    Raises:
        OSError: If the file can't be read
        ValueError: If the JSON is malformed or an entry is incomplete
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    if not isinstance(data, dict) or not isinstance(data.get("backups"), list):
        raise ValueError(f"{path}: expected an object with a 'backups' list")

    configs = []
    for pos, entry in enumerate(data["backups"]):
        if not isinstance(entry, dict):
            raise ValueError(f"{path}: backup #{pos + 1} is not an object")
        try:
            configs.append(BackupConfig(
                source=Path(entry["source"]),
                destination=Path(entry["destination"]),
                title=entry.get("title", ""),
                ignore_patterns=split_ignore_list(entry.get("ignore")),
                reindex_threshold=int(entry.get("reindex", DEFAULT_REINDEX_THRESHOLD)),
                auto_save_interval=float(entry.get("auto_save", DEFAULT_AUTO_SAVE_INTERVAL)),
                max_workers=entry.get("workers"),
                digest_algorithm=entry.get("digest", "sha256"),
                verify_copies=bool(entry.get("verify", False)),
                skip_on_conflict=bool(entry.get("skip_on_conflict", False)),
            ))
        except KeyError as e:
            raise ValueError(f"{path}: backup #{pos + 1} is missing {e}") from e

    return configs


def write_example_config(path: Union[str, Path]) -> Path:
    """Write an example batch config file and return its path."""
    path = Path(path)
    example = {
        "backups": [
            {
                "title": "Documents",
                "source": "/home/user/Documents",
                "destination": "/mnt/backup/Documents",
                "ignore": "^tmp$;.cache;Thumbs.db$",
                "reindex": DEFAULT_REINDEX_THRESHOLD,
                "auto_save": DEFAULT_AUTO_SAVE_INTERVAL,
            }
        ]
    }
    path.write_text(json.dumps(example, indent=2), encoding="utf-8")
    return path
