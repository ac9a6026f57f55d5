"""Watchdog: polls the backup heartbeat and restarts stuck daemons.

Per tick:
    no daemons registered         -> no_daemons
    heartbeat healthy / syncing   -> healthy, failure counter reset
    heartbeat missing / stale     -> warning, counter + 1; at the limit every
                                     daemon is restarted and the counter reset
    heartbeat error               -> error, counter reset, no restart
    anything else                 -> unknown

Files under the state root, all written atomically::

    watchdog.status      {"status", "daemon_count", "last_check", "pid", ...}
    watchdog.heartbeat   the watchdog's own liveness
    watchdog.pid
"""

import logging
import os
import threading
import time
from dataclasses import dataclass

from checkpoint.backup.file_ops import atomic_write_json, atomic_write_text
from checkpoint.config import BackupConfig
from checkpoint.health.daemon_manager import DaemonManager
from checkpoint.health.heartbeat import STATUS_ERROR, STATUS_HEALTHY, STATUS_SYNCING, read_heartbeat
from checkpoint.health.notifier import SEVERITY_CRITICAL, SEVERITY_WARNING, Notifier

logger = logging.getLogger(__name__)

STATE_HEALTHY = "healthy"
STATE_WARNING = "warning"
STATE_ERROR = "error"
STATE_NO_DAEMONS = "no_daemons"
STATE_UNKNOWN = "unknown"
STATE_STOPPED = "stopped"

HEARTBEAT_MISSING = "missing"
HEARTBEAT_STALE = "stale"

STATUS_FILENAME = "watchdog.status"
SELF_HEARTBEAT_FILENAME = "watchdog.heartbeat"
PID_FILENAME = "watchdog.pid"


@dataclass
class WatchdogState:
    consecutive_failures: int = 0
    last_check: float | None = None
    last_status: str = STATE_UNKNOWN
    restart_count: int = 0


class Watchdog:
    """Heartbeat poller with restart-on-stale.

    Parameters
    ----------
    config:
        Supplies the heartbeat path, thresholds and state root.
    daemon_manager:
        Init-system backend used to list and restart daemons.
    notifier:
        Rate-limited notifier for restarts and errors.
    """

    def __init__(self, config: BackupConfig, daemon_manager: DaemonManager,
                 notifier: Notifier, clock=time.time, pid: int | None = None):
        self.config = config
        self.daemon_manager = daemon_manager
        self.notifier = notifier
        self._clock = clock
        self.pid = pid if pid is not None else os.getpid()
        self.state = WatchdogState()
        self.state_root = config.state_root

    @property
    def status_path(self):
        return self.state_root / STATUS_FILENAME

    @property
    def self_heartbeat_path(self):
        return self.state_root / SELF_HEARTBEAT_FILENAME

    @property
    def pid_path(self):
        return self.state_root / PID_FILENAME

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def heartbeat_status(self, now: float) -> str:
        beat = read_heartbeat(self.config.heartbeat_path)
        if beat is None:
            return HEARTBEAT_MISSING
        if beat.age(now) > self.config.stale_threshold:
            return HEARTBEAT_STALE
        return beat.status

    def tick(self) -> str:
        """Run one check. Returns the new watchdog state."""
        now = self._clock()
        self.state.last_check = now
        daemons = self.daemon_manager.list_daemons()

        if not daemons:
            state = STATE_NO_DAEMONS
        else:
            hb_status = self.heartbeat_status(now)
            if hb_status in (STATUS_HEALTHY, STATUS_SYNCING):
                if self.state.consecutive_failures:
                    logger.info("Heartbeat recovered after %d failed check(s)",
                                self.state.consecutive_failures)
                if self.state.last_status in (STATE_WARNING, STATE_ERROR):
                    # A fresh incident after recovery is reported straight away
                    self.notifier.reset("backup_stale")
                    self.notifier.reset("backup_error")
                self.state.consecutive_failures = 0
                state = STATE_HEALTHY
            elif hb_status in (HEARTBEAT_STALE, HEARTBEAT_MISSING):
                self.state.consecutive_failures += 1
                logger.warning("Heartbeat %s (%d/%d)", hb_status,
                               self.state.consecutive_failures,
                               self.config.max_consecutive_failures)
                state = STATE_WARNING
                if self.state.consecutive_failures >= self.config.max_consecutive_failures:
                    self._restart_all(daemons)
                    self.state.consecutive_failures = 0
            elif hb_status == STATUS_ERROR:
                self.state.consecutive_failures = 0
                state = STATE_ERROR
                self._notify_error()
            else:
                state = STATE_UNKNOWN

        self.state.last_status = state
        self.write_status(state, len(daemons))
        self.write_self_heartbeat()
        return state

    def _restart_all(self, daemons: list[str]):
        logger.warning("Restarting %d daemon(s) after %d stale checks",
                       len(daemons), self.state.consecutive_failures)
        failed = [name for name in daemons if not self.daemon_manager.restart(name)]
        self.state.restart_count += 1

        if failed:
            logger.error("Daemon restart failed: %s", ", ".join(failed))
            self.notifier.send(
                "daemon_restart", SEVERITY_CRITICAL,
                "Checkpoint: restart failed",
                f"Could not restart {', '.join(failed)}. Backups may not be running.",
            )
        else:
            self.notifier.send(
                "backup_stale", SEVERITY_WARNING,
                "Checkpoint: backup daemon restarted",
                f"No heartbeat for {self.config.stale_threshold}s, restarted "
                f"{len(daemons)} daemon(s).",
            )

    def _notify_error(self):
        beat = read_heartbeat(self.config.heartbeat_path)
        detail = beat.error if beat and beat.error else "Backup reported an error"
        self.notifier.send(
            "backup_error", SEVERITY_CRITICAL,
            "Checkpoint: backup error", detail,
        )

    # ------------------------------------------------------------------
    # State files
    # ------------------------------------------------------------------

    def write_status(self, status: str, daemon_count: int = 0):
        atomic_write_json(self.status_path, {
            "status": status,
            "daemon_count": daemon_count,
            "last_check": int(self.state.last_check or self._clock()),
            "pid": self.pid,
            "consecutive_failures": self.state.consecutive_failures,
            "restart_count": self.state.restart_count,
        })

    def write_self_heartbeat(self):
        atomic_write_json(self.self_heartbeat_path, {
            "timestamp": int(self._clock()),
            "pid": self.pid,
            "status": "running",
        })

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self, stop_event: threading.Event | None = None):
        """Poll every ``check_interval`` seconds until ``stop_event`` is set."""
        stop_event = stop_event or threading.Event()
        atomic_write_text(self.pid_path, f"{self.pid}\n")
        logger.info("Watchdog started (pid=%d, interval=%ds, threshold=%ds)",
                    self.pid, self.config.check_interval, self.config.stale_threshold)
        try:
            while not stop_event.is_set():
                try:
                    self.tick()
                except OSError as exc:
                    logger.error("Watchdog check failed: %s", exc)
                stop_event.wait(self.config.check_interval)
        finally:
            self.shutdown()

    def shutdown(self):
        self.state.last_status = STATE_STOPPED
        self.write_status(STATE_STOPPED)
        for path in (self.pid_path, self.self_heartbeat_path):
            if path.exists():
                path.unlink()
        logger.info("Watchdog stopped")
