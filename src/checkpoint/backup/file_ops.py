"""File helpers shared by the archival, retention and health modules."""

import filecmp
import hashlib
import json
import os
from pathlib import Path


def file_sha256(path) -> str | None:
    """Return hex SHA-256 digest of a file, or None if unreadable."""
    h = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                h.update(chunk)
        return h.hexdigest()
    except OSError:
        return None


def files_identical(a, b, use_hash: bool = False) -> bool:
    """Exact content comparison: sizes first, then SHA-256 or bytes."""
    try:
        if os.path.getsize(a) != os.path.getsize(b):
            return False
    except OSError:
        return False
    if use_hash:
        ha = file_sha256(a)
        return ha is not None and ha == file_sha256(b)
    try:
        return filecmp.cmp(a, b, shallow=False)
    except OSError:
        return False


def atomic_write_text(path, text: str):
    """Write via a temp file in the same directory, then rename over.

    Readers see either the old file or the complete new one.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.parent / f".{path.name}.tmp.{os.getpid()}"
    try:
        with open(tmp, "w") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


def atomic_write_json(path, data: dict):
    atomic_write_text(path, json.dumps(data, indent=2))
