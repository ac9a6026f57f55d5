"""Service control for the backup daemons, one backend per init system.

    launchd  (macOS)   com.checkpoint.<name>         ~/Library/LaunchAgents
    systemd  (Linux)   checkpoint-<name>.service     systemctl --user
    cron     fallback  "... # checkpoint:<name>"     crontab entry + pid file

Every command goes through an injectable ``runner`` so the backends can be
driven without a real init system.
"""

import logging
import os
import platform
import re
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path

import psutil

from checkpoint.config import DEFAULT_STATE_ROOT

logger = logging.getLogger(__name__)

INIT_LAUNCHD = "launchd"
INIT_SYSTEMD = "systemd"
INIT_CRON = "cron"

DAEMON_RUNNING = "running"
DAEMON_STOPPED = "stopped"
DAEMON_NOT_INSTALLED = "not_installed"

COMMAND_TIMEOUT = 30

LAUNCHD_PREFIX = "com.checkpoint."
SYSTEMD_PREFIX = "checkpoint-"
CRON_MARKER = "# checkpoint:"


def run_command(cmd: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, capture_output=True, text=True, timeout=COMMAND_TIMEOUT)


def launchd_label(name: str) -> str:
    return f"{LAUNCHD_PREFIX}{name}"


def systemd_unit(name: str) -> str:
    return f"{SYSTEMD_PREFIX}{name}.service"


def cron_tag(name: str) -> str:
    return f"{CRON_MARKER}{name}"


class DaemonManager(ABC):
    """Common interface over the init-system backends."""

    init_system = ""

    def __init__(self, runner=run_command):
        self._runner = runner

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess | None:
        try:
            proc = self._runner(cmd)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.error("%s failed: %s", " ".join(cmd), exc)
            return None
        if proc.returncode != 0:
            logger.debug("%s exited %d: %s", " ".join(cmd), proc.returncode,
                         (proc.stderr or "").strip())
        return proc

    def _ok(self, cmd: list[str]) -> bool:
        proc = self._run(cmd)
        return proc is not None and proc.returncode == 0

    @abstractmethod
    def list_daemons(self) -> list[str]:
        """Names of installed checkpoint daemons."""

    @abstractmethod
    def start(self, name: str) -> bool: ...

    @abstractmethod
    def stop(self, name: str) -> bool: ...

    @abstractmethod
    def status(self, name: str) -> str: ...

    def restart(self, name: str) -> bool:
        self.stop(name)
        return self.start(name)


class LaunchdManager(DaemonManager):
    init_system = INIT_LAUNCHD

    def __init__(self, runner=run_command, agents_dir=None):
        super().__init__(runner)
        self.agents_dir = Path(agents_dir or Path.home() / "Library" / "LaunchAgents")

    def _plist(self, name: str) -> Path:
        return self.agents_dir / f"{launchd_label(name)}.plist"

    def list_daemons(self) -> list[str]:
        proc = self._run(["launchctl", "list"])
        if proc is None or proc.returncode != 0:
            return []
        names = []
        for line in proc.stdout.splitlines():
            label = line.split()[-1] if line.split() else ""
            if label.startswith(LAUNCHD_PREFIX):
                names.append(label[len(LAUNCHD_PREFIX):])
        return sorted(names)

    def start(self, name: str) -> bool:
        return self._ok(["launchctl", "load", "-w", str(self._plist(name))])

    def stop(self, name: str) -> bool:
        return self._ok(["launchctl", "unload", str(self._plist(name))])

    def status(self, name: str) -> str:
        proc = self._run(["launchctl", "list", launchd_label(name)])
        if proc is None or proc.returncode != 0:
            return DAEMON_NOT_INSTALLED
        m = re.search(r'"PID"\s*=\s*(\d+)', proc.stdout)
        return DAEMON_RUNNING if m else DAEMON_STOPPED


class SystemdManager(DaemonManager):
    init_system = INIT_SYSTEMD

    def __init__(self, runner=run_command, unit_dir=None):
        super().__init__(runner)
        self.unit_dir = Path(unit_dir or Path.home() / ".config" / "systemd" / "user")

    def _has_timer(self, name: str) -> bool:
        return (self.unit_dir / f"{SYSTEMD_PREFIX}{name}.timer").exists()

    def _units(self, name: str) -> list[str]:
        units = [systemd_unit(name)]
        if self._has_timer(name):
            units.insert(0, f"{SYSTEMD_PREFIX}{name}.timer")
        return units

    def list_daemons(self) -> list[str]:
        proc = self._run(["systemctl", "--user", "list-units", "--type=service",
                          "--all", "--no-legend", "--plain"])
        if proc is None or proc.returncode != 0:
            return []
        names = []
        for line in proc.stdout.splitlines():
            parts = line.split()
            if not parts:
                continue
            unit = parts[0]
            if unit.startswith(SYSTEMD_PREFIX) and unit.endswith(".service"):
                names.append(unit[len(SYSTEMD_PREFIX):-len(".service")])
        return sorted(names)

    def start(self, name: str) -> bool:
        return all(self._ok(["systemctl", "--user", "start", u]) for u in self._units(name))

    def stop(self, name: str) -> bool:
        return all(self._ok(["systemctl", "--user", "stop", u]) for u in self._units(name))

    def restart(self, name: str) -> bool:
        unit = self._units(name)[0]
        return self._ok(["systemctl", "--user", "restart", unit])

    def status(self, name: str) -> str:
        proc = self._run(["systemctl", "--user", "is-active", systemd_unit(name)])
        if proc is None:
            return DAEMON_NOT_INSTALLED
        state = proc.stdout.strip()
        if state == "active":
            return DAEMON_RUNNING
        if state in ("inactive", "failed", "activating", "deactivating"):
            return DAEMON_STOPPED
        return DAEMON_NOT_INSTALLED


class CronManager(DaemonManager):
    """Cron schedules the runs itself; control is limited to the running pid."""

    init_system = INIT_CRON

    def __init__(self, runner=run_command, state_root=None):
        super().__init__(runner)
        self.state_root = Path(state_root or DEFAULT_STATE_ROOT)

    def _pid_file(self, name: str) -> Path:
        return self.state_root / f"{name}.pid"

    def _read_pid(self, name: str) -> int | None:
        try:
            return int(self._pid_file(name).read_text().strip())
        except (OSError, ValueError):
            return None

    def _crontab(self) -> list[str]:
        proc = self._run(["crontab", "-l"])
        if proc is None or proc.returncode != 0:
            return []
        return proc.stdout.splitlines()

    def list_daemons(self) -> list[str]:
        names = []
        for line in self._crontab():
            idx = line.rfind(CRON_MARKER)
            if idx != -1:
                names.append(line[idx + len(CRON_MARKER):].strip())
        return sorted(names)

    def start(self, name: str) -> bool:
        # Nothing to launch: the next cron tick starts it
        return name in self.list_daemons()

    def stop(self, name: str) -> bool:
        pid = self._read_pid(name)
        if pid is not None:
            try:
                proc = psutil.Process(pid)
                proc.terminate()
                logger.info("Terminated %s (pid=%d)", name, pid)
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied as exc:
                logger.error("Cannot terminate %s (pid=%d): %s", name, pid, exc)
                return False
        pid_file = self._pid_file(name)
        if pid_file.exists():
            pid_file.unlink()
        return True

    def restart(self, name: str) -> bool:
        # Terminating the stuck run is the restart; cron launches the next one
        if name not in self.list_daemons():
            logger.error("Cannot restart %s: no crontab entry", name)
            return False
        return self.stop(name)

    def status(self, name: str) -> str:
        if name not in self.list_daemons():
            return DAEMON_NOT_INSTALLED
        pid = self._read_pid(name)
        if pid is not None and psutil.pid_exists(pid):
            return DAEMON_RUNNING
        return DAEMON_STOPPED


def detect_init_system() -> str:
    if platform.system() == "Darwin":
        return INIT_LAUNCHD
    if os.path.isdir("/run/systemd/system"):
        return INIT_SYSTEMD
    try:
        if "systemd" in os.readlink("/proc/1/exe"):
            return INIT_SYSTEMD
    except OSError:
        pass
    return INIT_CRON


def get_daemon_manager(init_system: str | None = None, runner=run_command,
                       state_root=None) -> DaemonManager:
    init_system = init_system or detect_init_system()
    logger.debug("Using %s daemon manager", init_system)
    if init_system == INIT_LAUNCHD:
        return LaunchdManager(runner)
    if init_system == INIT_SYSTEMD:
        return SystemdManager(runner)
    return CronManager(runner, state_root=state_root)
