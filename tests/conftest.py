"""Shared pytest fixtures for Mirror Backup tests.

Provides temp source/destination trees, config objects and small helpers
for building directory trees from dicts.
"""

import os
from pathlib import Path

import pytest

from mirror_backup.config import BackupConfig
from mirror_backup.utils.messages import MessageLog


def _make_tree(root: Path, layout: dict) -> Path:
    """Create files and directories below ``root``.

    ``layout`` maps names to str/bytes (file content) or dicts (directories).
    """
    root.mkdir(parents=True, exist_ok=True)
    for name, content in layout.items():
        path = root / name
        if isinstance(content, dict):
            _make_tree(path, content)
        elif isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content)
    return root


def _set_mtime(path: Path, mtime: int) -> None:
    os.utime(path, (mtime, mtime))


def _listing(root: Path) -> dict:
    """Relative path -> file content (None for directories), cache files excluded."""
    result = {}
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root).as_posix()
        if path.parent == root and path.name.endswith(".mbc"):
            continue
        result[rel] = None if path.is_dir() else path.read_bytes()
    return result


@pytest.fixture
def tmp_dirs(tmp_path):
    """Create temporary source and destination directories."""
    source = tmp_path / "source"
    destination = tmp_path / "destination"
    source.mkdir()
    destination.mkdir()
    return {"source": source, "destination": destination, "root": tmp_path}


@pytest.fixture
def populated_source(tmp_dirs):
    """Source tree with files at several depths and an empty directory."""
    _make_tree(tmp_dirs["source"], {
        "file1.txt": "hello world",
        "data.bin": b"\x00\x01\x02\x03" * 100,
        "subdir": {
            "nested.txt": "nested content",
            "deeper": {"leaf.txt": "leaf"},
        },
        "empty": {},
    })
    return tmp_dirs


@pytest.fixture
def messages():
    return MessageLog()


@pytest.fixture
def backup_config(tmp_dirs):
    """BackupConfig over the temp directories with a small worker pool."""
    return BackupConfig(
        source=tmp_dirs["source"],
        destination=tmp_dirs["destination"],
        title="test",
        max_workers=2,
    )


@pytest.fixture
def make_tree():
    return _make_tree


@pytest.fixture
def set_mtime():
    return _set_mtime


@pytest.fixture
def listing():
    return _listing
