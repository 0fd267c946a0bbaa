"""Content hashing helpers shared by checkpoints and the execution log."""
from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any


def hash_file(path: Path) -> str:
    """Compute SHA256 hex digest of file contents.

    Raises:
        FileNotFoundError: If file doesn't exist.
    """
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def hash_bytes(data: bytes) -> str:
    """Compute SHA256 hex digest of bytes."""
    return hashlib.sha256(data).hexdigest()


def hash_str(data: str) -> str:
    """Compute SHA256 hex digest of UTF-8 string."""
    return hash_bytes(data.encode("utf-8"))


def hash_path_or_none(path: Path) -> str | None:
    """Hash a file, or None when it does not exist."""
    if not path.is_file():
        return None
    return hash_file(path)


def canonical_json(obj: Any) -> str:
    """Produce canonical JSON encoding (sorted keys, no whitespace)."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


def sha256_json(obj: Any) -> str:
    return hash_str(canonical_json(obj))


__all__ = [
    "hash_file",
    "hash_bytes",
    "hash_str",
    "hash_path_or_none",
    "canonical_json",
    "sha256_json",
]
