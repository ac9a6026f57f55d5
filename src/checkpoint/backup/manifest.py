"""Backup manifest: expected state before the copy phase, checked after it.

The manifest records the size of every file about to be backed up. Once the
copy phase ends, every entry is re-stat'ed in the snapshot tree; a missing
file or a size difference is a verification failure with an error code and
a suggested fix. A persisted copy is kept for audit tooling::

    {
      "version": 1,
      "timestamp": "2026-10-19T14:30:00Z",
      "project": "myproject",
      "files": [{"path": "src/app.py", "size": 1234}, ...]
    }
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from checkpoint.backup.error_codes import FileFailure
from checkpoint.backup.file_ops import atomic_write_json

logger = logging.getLogger(__name__)

MANIFEST_VERSION = 1


class BackupManifest:
    """Map of relative path -> expected size in bytes."""

    def __init__(self, entries: dict[str, int] | None = None):
        self._entries = dict(entries or {})

    @classmethod
    def capture(cls, project_dir, rel_paths) -> "BackupManifest":
        """Stat every path up front. Paths that vanish are left out."""
        root = Path(project_dir)
        entries = {}
        for rel in rel_paths:
            try:
                entries[rel] = os.stat(root / rel).st_size
            except OSError:
                logger.debug("Not in manifest (unreadable): %s", rel)
        return cls(entries)

    @property
    def entries(self) -> dict[str, int]:
        return dict(self._entries)

    def __len__(self):
        return len(self._entries)

    def __contains__(self, rel_path):
        return rel_path in self._entries

    def verify(self, files_dir, fallback_dir=None, skip=()) -> list[FileFailure]:
        """Check each entry against the snapshot tree.

        ``fallback_dir`` is consulted when the primary copy is missing (the
        file went to the secondary destination). Paths in ``skip`` already
        failed and are not reported twice.
        """
        failures = []
        primary = Path(files_dir)
        secondary = Path(fallback_dir) if fallback_dir else None

        for rel, expected in sorted(self._entries.items()):
            if rel in skip:
                continue
            target = primary / rel
            if not target.is_file() and secondary is not None:
                target = secondary / rel
            try:
                actual = os.stat(target).st_size
            except OSError:
                failures.append(FileFailure.from_reason(
                    rel, "file_missing", "File missing from backup",
                ))
                logger.error("Verification failed: %s missing from backup", rel)
                continue
            if actual != expected:
                failures.append(FileFailure.from_reason(
                    rel, "size_mismatch", f"Size: expected {expected}, got {actual}",
                ))
                logger.error("Verification failed: %s size mismatch expected=%d actual=%d",
                             rel, expected, actual)
        return failures

    def to_dict(self, project_name: str) -> dict:
        return {
            "version": MANIFEST_VERSION,
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "project": project_name,
            "files": [{"path": p, "size": s} for p, s in sorted(self._entries.items())],
        }

    def persist(self, path, project_name: str):
        atomic_write_json(path, self.to_dict(project_name))
        logger.debug("Manifest saved: %s", path)

    @classmethod
    def load(cls, path) -> "BackupManifest":
        data = json.loads(Path(path).read_text())
        return cls({item["path"]: item["size"] for item in data.get("files", [])})
