"""Cross-process backup lock.

One lock directory per project under the lock root::

    locks/
    +-- myproject.lock/
    |   +-- pid          (decimal pid of the holder)

``os.mkdir`` is the mutex: it either creates the directory or fails because
it exists, atomically, on every local filesystem. The holder pid is written
to a temp file first and renamed into the directory so readers never see a
half-written pid.

Contention is an expected outcome (another trigger is already backing up),
not an error. A lock whose holder is dead is stale and is reclaimed, with
exactly one retry.
"""

import logging
import os
import shutil
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import psutil

logger = logging.getLogger(__name__)

PID_FILENAME = "pid"
LOCK_SUFFIX = ".lock"

# Window between mkdir and the pid rename in another process
SETTLE_DELAY = 0.1


class LockContention(Exception):
    """Another live process holds the project lock."""

    def __init__(self, project_name: str, holder_pid: int | None):
        self.project_name = project_name
        self.holder_pid = holder_pid
        super().__init__(
            f"Backup lock for {project_name} held by pid {holder_pid}"
        )


@dataclass
class LockHandle:
    project_name: str
    lock_path: Path
    holder_pid: int
    released: bool = False


def pid_alive(pid: int) -> bool:
    """True if ``pid`` is a running, non-zombie process."""
    if pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        # Exists but owned by someone else
        return True


class LockManager:
    """Per-project mutual exclusion across independent OS processes.

    Parameters
    ----------
    lock_root:
        Directory holding the ``<project>.lock`` directories.
    pid:
        Pid recorded as holder. Defaults to the current process.
    is_alive:
        Liveness check for recorded pids. Defaults to ``pid_alive``.
    """

    def __init__(self, lock_root, pid: int | None = None, is_alive=pid_alive,
                 settle_delay: float = SETTLE_DELAY):
        self.lock_root = Path(lock_root)
        self.pid = pid if pid is not None else os.getpid()
        self._is_alive = is_alive
        self.settle_delay = settle_delay

    def lock_path(self, project_name: str) -> Path:
        return self.lock_root / f"{project_name}{LOCK_SUFFIX}"

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    def acquire(self, project_name: str) -> LockHandle | None:
        """Try to take the project lock.

        Returns a LockHandle on success or None when another live process
        holds it.
        """
        lock_dir = self.lock_path(project_name)
        self.lock_root.mkdir(parents=True, exist_ok=True)

        if self._try_create(lock_dir):
            logger.info("Acquired backup lock for %s (pid %d)", project_name, self.pid)
            return self._handle(project_name, lock_dir)

        holder = self._read_pid(lock_dir)
        if holder is None:
            # mkdir done, pid rename not yet visible
            time.sleep(self.settle_delay)
            holder = self._read_pid(lock_dir)

        if holder is not None and self._is_alive(holder):
            logger.info(
                "Another backup is running for %s (pid %d), skipping",
                project_name, holder,
            )
            return None

        if holder is None:
            logger.warning("Removing incomplete lock directory %s", lock_dir)
        else:
            logger.warning("Removing stale lock for %s, pid %d not running",
                           project_name, holder)
        shutil.rmtree(lock_dir, ignore_errors=True)

        if self._try_create(lock_dir):
            logger.info("Acquired backup lock for %s after cleanup (pid %d)",
                        project_name, self.pid)
            return self._handle(project_name, lock_dir)

        logger.info("Another backup started simultaneously for %s, skipping",
                    project_name)
        return None

    def release(self, handle: LockHandle | None):
        """Remove the lock directory. Safe to call more than once."""
        if handle is None or handle.released:
            return
        handle.released = True
        recorded = self._read_pid(handle.lock_path)
        if recorded is not None and recorded != handle.holder_pid:
            # Reclaimed as stale by someone else; it is theirs now
            logger.warning("Lock %s now held by pid %d, leaving it",
                           handle.lock_path, recorded)
            return
        shutil.rmtree(handle.lock_path, ignore_errors=True)
        logger.info("Released backup lock for %s", handle.project_name)

    @contextmanager
    def hold(self, project_name: str):
        """Scoped acquisition; raises LockContention if already held."""
        handle = self.acquire(project_name)
        if handle is None:
            raise LockContention(project_name, self.holder_pid(project_name))
        try:
            yield handle
        finally:
            self.release(handle)

    def holder_pid(self, project_name: str) -> int | None:
        """Pid of the live lock holder, or None."""
        pid = self._read_pid(self.lock_path(project_name))
        if pid is not None and self._is_alive(pid):
            return pid
        return None

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _handle(self, project_name: str, lock_dir: Path) -> LockHandle:
        return LockHandle(project_name=project_name, lock_path=lock_dir,
                          holder_pid=self.pid)

    def _try_create(self, lock_dir: Path) -> bool:
        fd, temp_pid_file = tempfile.mkstemp(prefix=".pid.", dir=str(self.lock_root))
        with os.fdopen(fd, "w") as f:
            f.write(f"{self.pid}\n")

        try:
            os.mkdir(lock_dir)
        except FileExistsError:
            os.unlink(temp_pid_file)
            return False

        try:
            os.replace(temp_pid_file, lock_dir / PID_FILENAME)
        except OSError as exc:
            logger.error("Could not record lock owner in %s: %s", lock_dir, exc)
            if os.path.exists(temp_pid_file):
                os.unlink(temp_pid_file)
            shutil.rmtree(lock_dir, ignore_errors=True)
            return False
        return True

    @staticmethod
    def _read_pid(lock_dir: Path) -> int | None:
        try:
            text = (lock_dir / PID_FILENAME).read_text().strip()
        except OSError:
            return None
        try:
            return int(text)
        except ValueError:
            return None
