"""Content hashing used to detect change in deployed files."""

from __future__ import annotations

import hashlib
from pathlib import Path

BINARY_SNIFF_BYTES = 8192


def compute_file_hash(data: bytes) -> str:
    """SHA-256 of raw bytes, lower-case hex."""
    return hashlib.sha256(data).hexdigest()


def hash_file(path: str | Path) -> str:
    return compute_file_hash(Path(path).read_bytes())


def is_binary(data: bytes) -> bool:
    """Treat content as binary when a null byte appears in its first 8 KiB."""
    return b"\x00" in data[:BINARY_SNIFF_BYTES]
