"""File content digests.

The update phase compares files of equal length with a cryptographic digest
(sha256 by default). Post-copy verification uses xxhash, where speed matters
more than collision resistance.
"""

import hashlib
from pathlib import Path
from typing import Union

import xxhash

# Buffer size for file reading (64KB is good for most filesystems)
BUFFER_SIZE = 65536

ALGORITHMS = ("xxhash", "md5", "sha1", "sha256")


def _new_hasher(algorithm: str):
    if algorithm in ("auto", "xxhash"):
        return xxhash.xxh64()
    if algorithm in ("md5", "sha1", "sha256"):
        return hashlib.new(algorithm)
    raise ValueError(f"Unknown algorithm: {algorithm}")


def fast_hash_file(file_path: Union[str, Path], algorithm: str = "auto") -> str:
    """Compute the digest of a file.

    Args:
        file_path: Path to the file to hash
        algorithm: Hash algorithm ("auto", "xxhash", "md5", "sha1", "sha256").
                   "auto" uses xxhash.

    Returns:
        Hex digest of the file content

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If the path is not a file or the algorithm is unknown
        OSError: If the file can't be read
    """
    file_path = Path(file_path)
    hasher = _new_hasher(algorithm)

    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")

    if not file_path.is_file():
        raise ValueError(f"Not a file: {file_path}")

    # Read and hash in chunks
    with open(file_path, "rb") as f:
        while True:
            data = f.read(BUFFER_SIZE)
            if not data:
                break
            hasher.update(data)

    return hasher.hexdigest()


def files_differ(
    first: Union[str, Path],
    second: Union[str, Path],
    algorithm: str = "sha256"
) -> bool:
    """Return True if the two files have different content.

    Each side is hashed independently. Read errors propagate to the caller.
    """
    return fast_hash_file(first, algorithm) != fast_hash_file(second, algorithm)
