"""Heartbeat file: the backup daemon's liveness signal.

Written atomically (temp file + rename) after every cycle outcome so the
watchdog never reads a partial document::

    {
      "timestamp": 1760884200,
      "status": "healthy",
      "project": "myproject",
      "last_backup": 1760884200,
      "last_backup_files": 3,
      "error": null,
      "pid": 4242
    }
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path

from checkpoint.backup.file_ops import atomic_write_json

logger = logging.getLogger(__name__)

STATUS_HEALTHY = "healthy"
STATUS_SYNCING = "syncing"
STATUS_ERROR = "error"
STATUS_STOPPED = "stopped"

VALID_STATUSES = {STATUS_HEALTHY, STATUS_SYNCING, STATUS_ERROR, STATUS_STOPPED}


@dataclass
class Heartbeat:
    timestamp: int
    status: str
    project: str | None = None
    last_backup: int | None = None
    last_backup_files: int | None = None
    error: str | None = None
    pid: int | None = None
    # Multi-project sync progress, only present while syncing several projects
    sync: dict = field(default_factory=dict)

    def age(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.timestamp

    def to_dict(self) -> dict:
        data = {
            "timestamp": self.timestamp,
            "status": self.status,
            "project": self.project,
            "last_backup": self.last_backup,
            "last_backup_files": self.last_backup_files,
            "error": self.error,
            "pid": self.pid,
        }
        if self.sync:
            data.update(self.sync)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Heartbeat":
        known = {"timestamp", "status", "project", "last_backup",
                 "last_backup_files", "error", "pid"}
        return cls(
            timestamp=int(data.get("timestamp") or 0),
            status=data.get("status", "unknown"),
            project=data.get("project"),
            last_backup=data.get("last_backup"),
            last_backup_files=data.get("last_backup_files"),
            error=data.get("error"),
            pid=data.get("pid"),
            sync={k: v for k, v in data.items() if k not in known},
        )


class HeartbeatWriter:
    """Writes heartbeats for one project. Fields not passed are carried over."""

    def __init__(self, path, project: str, pid: int | None = None, clock=time.time):
        self.path = Path(path)
        self.project = project
        self.pid = pid if pid is not None else os.getpid()
        self._clock = clock

    def write(self, status: str, error: str | None = None,
              last_backup: int | None = None, last_backup_files: int | None = None,
              sync_progress: dict | None = None) -> Heartbeat:
        if status not in VALID_STATUSES:
            raise ValueError(f"Invalid heartbeat status: {status}")

        previous = read_heartbeat(self.path)
        if previous is not None and previous.project == self.project:
            if last_backup is None:
                last_backup = previous.last_backup
            if last_backup_files is None:
                last_backup_files = previous.last_backup_files

        beat = Heartbeat(
            timestamp=int(self._clock()),
            status=status,
            project=self.project,
            last_backup=last_backup,
            last_backup_files=last_backup_files,
            error=error,
            pid=self.pid,
            sync=dict(sync_progress or {}),
        )
        atomic_write_json(self.path, beat.to_dict())
        logger.debug("Heartbeat %s written for %s", status, self.project)
        return beat


def read_heartbeat(path) -> Heartbeat | None:
    """Parse the heartbeat file. Missing or unparsable files give None."""
    try:
        data = json.loads(Path(path).read_text())
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    return Heartbeat.from_dict(data)
