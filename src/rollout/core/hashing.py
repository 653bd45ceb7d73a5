"""
Checksums for content-addressed artifacts.

Release artifacts are identified by the SHA-256 of their bytes. The same
helpers are used when publishing (to record the checksum) and when
fetching (to verify integrity), so both sides always agree on the
algorithm and encoding (lower-case hex).

Examples:
    >>> sha256_bytes(b"hello")[:12]
    '2cf24dba5fb0'
    >>> compute_hash("web", 42) == compute_hash("web", 42)
    True
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any, BinaryIO

CHUNK_SIZE = 1024 * 1024


def sha256_bytes(data: bytes) -> str:
    """Hex SHA-256 of an in-memory payload."""
    return hashlib.sha256(data).hexdigest()


def sha256_stream(stream: BinaryIO) -> str:
    """Hex SHA-256 of a binary stream, read in 1 MiB chunks."""
    digest = hashlib.sha256()
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        digest.update(chunk)
    return digest.hexdigest()


def sha256_file(path: str | Path) -> str:
    """Hex SHA-256 of a file on disk."""
    with open(path, "rb") as fh:
        return sha256_stream(fh)


def compute_hash(*values: Any, length: int = 32) -> str:
    """
    Compute a deterministic hash from values.

    Values are joined with ``|`` after ``str()`` conversion, so the result
    depends on order: ``compute_hash("a", "b") != compute_hash("b", "a")``.

    Args:
        *values: Values to hash (converted to strings)
        length: Hex digest length (default 32 = 128 bits)
    """
    content = "|".join(str(v) for v in values)
    return hashlib.sha256(content.encode()).hexdigest()[:length]
