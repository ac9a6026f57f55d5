"""Debounced project watcher using watchdog.

Every relevant change under the project directory restarts a quiet-period
timer; the backup trigger fires once the project has been quiet for
``debounce_seconds``. Editor swap files, VCS metadata, dependency and build
directories never restart the timer.
"""

import logging
import os
import re
import threading
import time
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from checkpoint.config import BackupConfig
from checkpoint.health.heartbeat import STATUS_STOPPED, HeartbeatWriter

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDES = [
    r"(^|/)\.git(/|$)",
    r"(^|/)\.hg(/|$)",
    r"(^|/)\.svn(/|$)",
    r"(^|/)node_modules(/|$)",
    r"(^|/)vendor/",
    r"(^|/)\.venv(/|$)",
    r"(^|/)venv/",
    r"(^|/)__pycache__(/|$)",
    r"(^|/)bower_components(/|$)",
    r"(^|/)dist/",
    r"(^|/)build/",
    r"(^|/)\.next/",
    r"(^|/)\.nuxt/",
    r"(^|/)\.parcel-cache(/|$)",
    r"(^|/)coverage/",
    r"(^|/)\.idea(/|$)",
    r"\.swp$",
    r"\.swo$",
    r"(^|/)4913$",
    r"(^|/)\.#",
    r"(^|/)\.DS_Store$",
    r"(^|/)backups/",
    r"(^|/)\.cache(/|$)",
    r"(^|/)\.planning/",
    r"(^|/)\.terraform(/|$)",
    r"\.pyc$",
]


class Debouncer:
    """Calls ``callback`` once after ``delay`` seconds without a ``poke``."""

    def __init__(self, delay: float, callback):
        self.delay = delay
        self.callback = callback
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()
        self.fire_count = 0

    def poke(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self):
        with self._lock:
            self._timer = None
            self.fire_count += 1
        try:
            self.callback()
        except Exception:
            logger.exception("Backup trigger failed")

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def cancel(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class BackupTriggerHandler(FileSystemEventHandler):
    """Watchdog handler that feeds the debouncer with relevant changes."""

    def __init__(self, project_dir, debouncer: Debouncer, extra_excludes=None):
        super().__init__()
        self.project_dir = Path(project_dir).resolve()
        self.debouncer = debouncer
        self._excludes = [re.compile(p) for p in DEFAULT_EXCLUDES + list(extra_excludes or [])]

    def _relative(self, path: str) -> str:
        try:
            return Path(path).resolve().relative_to(self.project_dir).as_posix()
        except ValueError:
            return path.replace(os.sep, "/")

    def is_excluded(self, path: str) -> bool:
        rel = self._relative(path)
        return any(rx.search(rel) for rx in self._excludes)

    def on_any_event(self, event):
        if event.event_type in ("opened", "closed", "closed_no_write"):
            return
        if event.is_directory and event.event_type == "modified":
            return
        paths = [event.src_path]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(dest)
        if all(self.is_excluded(p) for p in paths):
            return
        logger.debug("%s: %s", event.event_type.upper(), event.src_path)
        self.debouncer.poke()


class ProjectWatcher:
    """Watches one project directory and triggers debounced backups."""

    def __init__(self, config: BackupConfig, trigger):
        self.config = config
        self.debouncer = Debouncer(config.debounce_seconds, trigger)
        self.handler = BackupTriggerHandler(
            config.project_dir, self.debouncer, config.watcher_excludes,
        )
        self.observer = Observer()
        self._running = False

    def start(self):
        project_dir = self.config.project_dir
        if not project_dir.is_dir():
            raise FileNotFoundError(f"Project directory not found: {project_dir}")
        self.observer.schedule(self.handler, str(project_dir), recursive=True)
        self.observer.start()
        self._running = True
        logger.info("Watching %s (debounce %ss)", project_dir, self.config.debounce_seconds)

    def stop(self):
        if self._running:
            self.debouncer.cancel()
            self.observer.stop()
            self.observer.join()
            self._running = False
            HeartbeatWriter(self.config.heartbeat_path, self.config.project_name).write(
                STATUS_STOPPED)
            logger.info("Project watcher stopped.")

    def run(self, stop_event: threading.Event | None = None):
        """Start watching and block until interrupted."""
        self.start()
        try:
            while self._running and not (stop_event and stop_event.is_set()):
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()
