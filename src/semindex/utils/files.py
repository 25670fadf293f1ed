"""Utility helpers for working with files and content digests."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path


def canonical_path(path: Path | str) -> Path:
    """Absolute, symlink-free form of ``path`` used as a stable key."""
    return Path(os.path.realpath(Path(path).expanduser()))


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def prefix_bounds(root: Path) -> tuple[str, str]:
    """Half-open string range covering every path strictly below ``root``.

    ``low <= str(path) < high`` holds exactly for descendants of ``root``, which
    lets SQLite use the primary-key index instead of a ``LIKE`` scan.
    """
    base = str(root).rstrip(os.sep)
    return base + os.sep, base + chr(ord(os.sep) + 1)
