"""One backup cycle, start to finish.

    heartbeat syncing -> lock + pid file -> interval gate ->
    change detection -> archival + verification -> manifest -> retention ->
    run history -> last-backup time -> final heartbeat -> unlock

Exit codes: 0 success, 1 partial, 2 failure, 3 another run holds the lock.
"""

import logging
import signal
import sqlite3
import threading
import time
from contextlib import contextmanager
from enum import IntEnum

from checkpoint.backup.archival_engine import (
    OUTCOME_FAILURE,
    OUTCOME_PARTIAL,
    OUTCOME_SUCCESS,
    ArchivalEngine,
)
from checkpoint.backup.change_detector import ChangeDetector, select_detector
from checkpoint.backup.file_ops import atomic_write_text
from checkpoint.backup.run_history import RunHistory
from checkpoint.config import BackupConfig
from checkpoint.health.heartbeat import (
    STATUS_ERROR,
    STATUS_HEALTHY,
    STATUS_SYNCING,
    HeartbeatWriter,
)
from checkpoint.health.notifier import SEVERITY_CRITICAL, SEVERITY_WARNING, Notifier
from checkpoint.lock.lock_manager import LockContention, LockManager
from checkpoint.retention.cleanup_engine import execute_cleanup

logger = logging.getLogger(__name__)

LAST_BACKUP_FILENAME = "last-backup-time"
CLEANUP_COUNTER_FILENAME = "cleanup-counter"
HISTORY_FILENAME = "history.db"


class ExitCode(IntEnum):
    SUCCESS = 0
    PARTIAL = 1
    FAILURE = 2
    LOCK_CONTENTION = 3


_OUTCOME_EXIT = {
    OUTCOME_SUCCESS: ExitCode.SUCCESS,
    OUTCOME_PARTIAL: ExitCode.PARTIAL,
    OUTCOME_FAILURE: ExitCode.FAILURE,
}


@contextmanager
def exit_on_signals():
    """Turn SIGTERM/SIGINT into SystemExit so ``finally`` blocks run."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handle_signal(signum, frame):
        logger.warning("Received signal %s, stopping backup", signum)
        raise SystemExit(128 + signum)

    previous = {
        sig: signal.signal(sig, handle_signal)
        for sig in (signal.SIGTERM, signal.SIGINT)
    }
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


@contextmanager
def daemon_pid_file(config: BackupConfig, pid: int):
    """Record the running backup's pid where the cron backend looks for it."""
    path = config.daemon_pid_path
    atomic_write_text(path, f"{pid}\n")
    try:
        yield path
    finally:
        if _read_int(path) == pid:
            try:
                path.unlink()
            except OSError as exc:
                logger.debug("Could not remove %s: %s", path, exc)


def _read_int(path) -> int | None:
    try:
        return int(path.read_text().strip())
    except (OSError, ValueError):
        return None


def _snapshot_empty(config: BackupConfig) -> bool:
    files_dir = config.files_dir
    return not files_dir.is_dir() or not any(files_dir.iterdir())


def run_backup_cycle(
    config: BackupConfig,
    lock_manager: LockManager | None = None,
    detector: ChangeDetector | None = None,
    engine: ArchivalEngine | None = None,
    notifier: Notifier | None = None,
    force: bool = False,
    clock=time.time,
    sync_progress: dict | None = None,
) -> ExitCode:
    """Run one cycle for ``config``'s project and return its exit code.

    ``sync_progress`` is merged into the syncing heartbeats when this run is
    one of several (see ``run_all_projects``).
    """
    heartbeat =HeartbeatWriter(config.heartbeat_path, config.project_name, clock=clock)
    notifier = notifier or Notifier(cooldowns=config.notify_cooldowns,
                                    state_dir=config.project_state_dir, clock=clock)
    heartbeat.write(STATUS_SYNCING, sync_progress=sync_progress)

    if not config.project_dir.is_dir():
        msg = f"Project directory not found: {config.project_dir}"
        logger.error(msg)
        heartbeat.write(STATUS_ERROR, error=msg)
        return ExitCode.FAILURE

    if config.drive_marker is not None and not config.drive_marker.exists():
        msg = f"Backup drive not connected (missing {config.drive_marker})"
        logger.error(msg)
        heartbeat.write(STATUS_ERROR, error=msg)
        notifier.send("drive_missing", SEVERITY_WARNING, "Checkpoint: backup drive missing", msg)
        return ExitCode.FAILURE

    lock_manager = lock_manager or LockManager(config.lock_root)
    try:
        with exit_on_signals(), lock_manager.hold(config.project_name), \
                daemon_pid_file(config, lock_manager.pid):
            return _run_locked(config, heartbeat, notifier, detector, engine, force, clock)
    except LockContention as exc:
        logger.info("Skipping backup: %s", exc)
        heartbeat.write(STATUS_SYNCING, sync_progress=sync_progress)
        return ExitCode.LOCK_CONTENTION
    except Exception as exc:
        logger.exception("Backup cycle crashed")
        heartbeat.write(STATUS_ERROR, error=f"Backup crashed: {exc}")
        raise


def run_all_projects(configs: list[BackupConfig], force: bool = False,
                     detector_for=None, notifier: Notifier | None = None) -> ExitCode:
    """Back up several projects in turn.

    Each project's syncing heartbeat carries the overall progress. Returns
    SUCCESS when nothing failed, PARTIAL when some projects were backed up
    and others failed, FAILURE when none were. Lock contention counts as
    skipped.
    """
    counts = {"backed_up": 0, "failed": 0, "skipped": 0}
    total = len(configs)

    for index, config in enumerate(configs, start=1):
        progress = {
            "syncing_project_index": index,
            "syncing_total_projects": total,
            "syncing_current_project": config.project_name,
        }
        progress.update({f"syncing_{key}": value for key, value in counts.items()})
        logger.info("[%d/%d] Backing up %s", index, total, config.project_name)

        detector = detector_for(config) if detector_for else None
        try:
            code = run_backup_cycle(config, detector=detector, notifier=notifier,
                                    force=force, sync_progress=progress)
        except Exception:
            logger.error("Backup of %s crashed, continuing with the next project",
                         config.project_name)
            code = ExitCode.FAILURE

        if code == ExitCode.LOCK_CONTENTION:
            counts["skipped"] += 1
        elif code == ExitCode.SUCCESS:
            counts["backed_up"] += 1
        else:
            counts["failed"] += 1

    logger.info("All projects: %d backed up, %d failed, %d skipped",
                counts["backed_up"], counts["failed"], counts["skipped"])
    if not counts["failed"]:
        return ExitCode.SUCCESS
    return ExitCode.PARTIAL if counts["backed_up"] else ExitCode.FAILURE


def _run_locked(config, heartbeat, notifier, detector, engine, force, clock) -> ExitCode:
    started = clock()
    state_dir = config.project_state_dir
    last_backup_file = state_dir / LAST_BACKUP_FILENAME

    last = _read_int(last_backup_file)
    if not force and last is not None and started - last < config.backup_interval:
        logger.info("Last backup %ds ago, interval %ds: nothing to do",
                    started - last, config.backup_interval)
        heartbeat.write(STATUS_HEALTHY)
        return ExitCode.SUCCESS

    first_backup = _snapshot_empty(config)
    if first_backup:
        logger.info("No snapshot yet for %s, backing up all files", config.project_name)

    detector = detector or select_detector(config)
    change_set = detector.detect(config.project_dir, full=first_backup)

    engine = engine or ArchivalEngine(config)
    result, manifest = engine.run(change_set)

    if config.persist_manifest and len(manifest):
        try:
            manifest.persist(config.manifest_path, config.project_name)
        except OSError as exc:
            logger.warning("Could not save manifest: %s", exc)

    pruned = _run_cleanup(config, state_dir)
    exit_code = _OUTCOME_EXIT[result.outcome]
    files_written = len(result.written) + len(result.written_secondary)

    _record_history(config, result, exit_code, pruned, clock() - started)

    if result.outcome != OUTCOME_FAILURE:
        atomic_write_text(last_backup_file, f"{int(started)}\n")

    for failure in result.failures:
        logger.error(failure.format())

    if result.outcome == OUTCOME_SUCCESS:
        heartbeat.write(STATUS_HEALTHY, last_backup=int(started),
                        last_backup_files=files_written)
    elif result.outcome == OUTCOME_PARTIAL:
        msg = f"Partial backup: {result.failed_count} file(s) failed"
        heartbeat.write(STATUS_ERROR, error=msg, last_backup=int(started),
                        last_backup_files=files_written)
        notifier.send("backup_partial", SEVERITY_WARNING, "Checkpoint: partial backup", msg)
    else:
        msg = "Backup failed completely"
        heartbeat.write(STATUS_ERROR, error=msg)
        notifier.send("backup_failed", SEVERITY_CRITICAL, "Checkpoint: backup failed",
                      f"{msg}: {result.failed_count} file(s) could not be backed up")

    logger.info("Backup of %s finished: %s (%d written, %d archived, %d failed, %d pruned)",
                config.project_name, result.outcome, files_written,
                result.archived_count, result.failed_count, pruned)
    return exit_code


def _run_cleanup(config: BackupConfig, state_dir) -> int:
    """Single-pass retention every run; tiered pass every N cycles."""
    counter_file = state_dir / CLEANUP_COUNTER_FILENAME
    count = (_read_int(counter_file) or 0) + 1
    run_tiered = config.tiered_retention and count >= config.cleanup_interval
    if run_tiered:
        count = 0
    atomic_write_text(counter_file, f"{count}\n")

    try:
        cleanup = execute_cleanup(config, run_tiered=run_tiered)
    except OSError as exc:
        logger.error("Retention cleanup failed: %s", exc)
        return 0
    return cleanup.deleted_count


def _record_history(config, result, exit_code, pruned, duration):
    try:
        history = RunHistory(str(config.project_state_dir / HISTORY_FILENAME))
    except (sqlite3.Error, OSError) as exc:
        logger.warning("Run history unavailable: %s", exc)
        return
    try:
        history.record_run(
            project=config.project_name,
            outcome=result.outcome,
            exit_code=exit_code,
            succeeded=result.succeeded_count,
            failed=result.failed_count,
            archived=result.archived_count,
            pruned=pruned,
            duration_seconds=round(duration, 3),
            failures=result.failures,
        )
    except sqlite3.Error as exc:
        logger.warning("Could not record run history: %s", exc)
    finally:
        history.close()
