"""Incremental archival of changed project files.

Backup tree layout::

    backup_dir/
    +-- files/                          current snapshot, mirrors the project
    |   +-- src/app.py
    +-- archived/                       superseded versions, never overwritten
    |   +-- src/app.py.20261019_143000_4242
    +-- databases/
    +-- .checkpoint-manifest.json

An update always moves the current snapshot into ``archived/`` before the new
content is copied in, so a crash between the two steps leaves the previous
version in the archive and the next run simply treats the file as new.
Copies go to a temp name beside the destination and are renamed over it;
a half-written file is never visible as the snapshot.
"""

import logging
import os
import re
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

from checkpoint.backup.error_codes import (
    NON_RETRYABLE,
    FileFailure,
    classify_os_error,
)
from checkpoint.backup.file_ops import files_identical
from checkpoint.backup.manifest import BackupManifest
from checkpoint.config import BackupConfig

logger = logging.getLogger(__name__)

ARCHIVE_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

# <relPath>.<YYYYMMDD_HHMMSS>[_<pid>][<encryption suffix>]
_ARCHIVE_NAME_RE = re.compile(
    r"^(?P<rel>.+)\.(?P<ts>\d{8}_\d{6})(?:_(?P<pid>\d+))?(?P<ext>\.[A-Za-z0-9]+)?$"
)

OUTCOME_SUCCESS = "success"
OUTCOME_PARTIAL = "partial"
OUTCOME_FAILURE = "failure"


def archive_timestamp(now: datetime | None = None, utc: bool = False) -> str:
    if now is None:
        now = datetime.now(timezone.utc) if utc else datetime.now()
    return now.strftime(ARCHIVE_TIMESTAMP_FORMAT)


def archive_name(rel_path: str, timestamp: str, pid: int | None = None) -> str:
    """``src/app.py`` -> ``src/app.py.20261019_143000_4242``"""
    if pid is None:
        return f"{rel_path}.{timestamp}"
    return f"{rel_path}.{timestamp}_{pid}"


def parse_archive_name(name: str) -> tuple[str, str, int | None] | None:
    """Split an archived relative path into (original, timestamp, pid).

    Returns None when the name does not follow the archive convention.
    """
    m = _ARCHIVE_NAME_RE.match(name)
    if not m:
        return None
    pid = int(m.group("pid")) if m.group("pid") else None
    return m.group("rel"), m.group("ts"), pid


@dataclass(frozen=True)
class ArchivedVersion:
    original_rel_path: str
    timestamp: str
    pid: int | None
    size_bytes: int
    path: Path

    @property
    def archived_at(self) -> datetime:
        return datetime.strptime(self.timestamp, ARCHIVE_TIMESTAMP_FORMAT)

    @classmethod
    def from_path(cls, archived_root, path) -> "ArchivedVersion | None":
        path = Path(path)
        rel = path.relative_to(archived_root).as_posix()
        parsed = parse_archive_name(rel)
        if parsed is None:
            return None
        original, ts, pid = parsed
        try:
            size = path.stat().st_size
        except OSError:
            size = 0
        return cls(original_rel_path=original, timestamp=ts, pid=pid,
                   size_bytes=size, path=path)


class CopyFailure(Exception):
    """A copy that failed after its retry budget (or a non-retryable error)."""

    def __init__(self, reason: str, attempts: int, message: str):
        self.reason = reason
        self.attempts = attempts
        super().__init__(message)


@dataclass
class RunResult:
    """What one archival pass did."""
    eligible_count: int = 0
    written: list[str] = field(default_factory=list)
    written_secondary: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    archived: list[ArchivedVersion] = field(default_factory=list)
    skipped_symlinks: list[str] = field(default_factory=list)
    skipped_large: list[str] = field(default_factory=list)
    skipped_missing: list[str] = field(default_factory=list)
    failures: list[FileFailure] = field(default_factory=list)

    @property
    def failed_paths(self) -> set[str]:
        return {f.path for f in self.failures}

    @property
    def failed_count(self) -> int:
        return len(self.failed_paths)

    @property
    def succeeded_count(self) -> int:
        return self.eligible_count - self.failed_count

    @property
    def archived_count(self) -> int:
        return len(self.archived)

    @property
    def outcome(self) -> str:
        if self.failed_count == 0:
            return OUTCOME_SUCCESS
        if self.succeeded_count == 0:
            return OUTCOME_FAILURE
        return OUTCOME_PARTIAL


class ArchivalEngine:
    """Copies a ChangeSet into the snapshot tree, archiving what it replaces.

    ``copy_func`` and ``sleep`` are injectable so retry and crash behaviour
    can be exercised without real faults.
    """

    def __init__(self, config: BackupConfig, copy_func=shutil.copy2,
                 sleep=time.sleep, pid: int | None = None,
                 now: datetime | None = None):
        self.config = config
        self._copy = copy_func
        self._sleep = sleep
        self.pid = pid if pid is not None else os.getpid()
        self._now = now

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def run(self, change_set: list[str]) -> tuple[RunResult, BackupManifest]:
        result = RunResult()
        started = self._start_time()
        eligible = self._eligible(change_set, result)
        result.eligible_count = len(eligible)

        # Expected sizes are fixed before anything is copied
        manifest = BackupManifest.capture(self.config.project_dir, eligible)

        for rel in eligible:
            self._backup_one(rel, started, result)

        result.failures.extend(manifest.verify(
            self.config.files_dir,
            fallback_dir=self.config.secondary_files_dir,
            skip=result.failed_paths,
        ))

        logger.info(
            "Archival pass: %d eligible, %d written, %d archived, %d unchanged, %d failed",
            result.eligible_count, len(result.written) + len(result.written_secondary),
            result.archived_count, len(result.unchanged), result.failed_count,
        )
        return result, manifest

    # ------------------------------------------------------------------
    # Per-file
    # ------------------------------------------------------------------

    def _eligible(self, change_set, result: RunResult) -> list[str]:
        eligible = []
        limit = self.config.max_file_size
        for rel in change_set:
            src = self.config.project_dir / rel
            if src.is_symlink():
                logger.debug("Skipping symlink: %s", rel)
                result.skipped_symlinks.append(rel)
                continue
            if not src.is_file():
                logger.debug("Skipping missing or non-regular file: %s", rel)
                result.skipped_missing.append(rel)
                continue
            if limit > 0 and not self.config.backup_large_files:
                try:
                    size = src.stat().st_size
                except OSError:
                    size = 0
                if size > limit:
                    logger.info("Skipping large file (%d bytes): %s", size, rel)
                    result.skipped_large.append(rel)
                    continue
            eligible.append(rel)
        return eligible

    def _backup_one(self, rel: str, started: datetime, result: RunResult):
        src = self.config.project_dir / rel
        dest = self.config.files_dir / rel

        if dest.exists():
            if files_identical(src, dest, self.config.use_hash_compare):
                result.unchanged.append(rel)
                return
            try:
                version = self._archive(dest, self.config.archived_dir, rel, started)
            except OSError as exc:
                reason = classify_os_error(exc)
                logger.error("Could not archive previous version of %s: %s", rel, exc)
                result.failures.append(FileFailure.from_reason(
                    rel, reason, f"Could not archive previous version: {exc}",
                ))
                return
            result.archived.append(version)

        try:
            self._copy_with_retry(src, dest)
        except CopyFailure as primary_exc:
            if self.config.secondary_dir is None:
                logger.error("Failed to back up %s: %s", rel, primary_exc)
                result.failures.append(FileFailure.from_reason(
                    rel, primary_exc.reason, str(primary_exc), primary_exc.attempts,
                ))
                return
            logger.warning("Primary copy failed for %s, trying secondary: %s",
                           rel, primary_exc)
            try:
                self._write_secondary(src, rel, started)
            except (CopyFailure, OSError) as exc:
                reason = exc.reason if isinstance(exc, CopyFailure) else classify_os_error(exc)
                logger.error("Failed to back up %s to either destination: %s", rel, exc)
                result.failures.append(FileFailure.from_reason(
                    rel, reason, f"primary: {primary_exc}; secondary: {exc}",
                    primary_exc.attempts,
                ))
                return
            result.written_secondary.append(rel)
            return

        result.written.append(rel)
        if self.config.secondary_dir is not None:
            try:
                self._write_secondary(src, rel, started)
            except (CopyFailure, OSError) as exc:
                logger.warning("Mirror to secondary failed for %s: %s", rel, exc)

    def _write_secondary(self, src: Path, rel: str, started: datetime):
        dest = self.config.secondary_files_dir / rel
        if dest.exists():
            if files_identical(src, dest, self.config.use_hash_compare):
                return
            self._archive(dest, self.config.secondary_archived_dir, rel, started)
        self._copy_with_retry(src, dest)

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def _archive(self, current: Path, archived_root: Path, rel: str,
                 started: datetime) -> ArchivedVersion:
        """Move ``current`` to a fresh archive name. Existing names are never reused."""
        stamp = started
        while True:
            ts = stamp.strftime(ARCHIVE_TIMESTAMP_FORMAT)
            target = archived_root / archive_name(rel, ts, self.pid)
            if not os.path.lexists(target):
                break
            stamp += timedelta(seconds=1)

        size = current.stat().st_size
        target.parent.mkdir(parents=True, exist_ok=True)
        os.replace(current, target)
        logger.debug("Archived %s -> %s", rel, target.name)
        return ArchivedVersion(original_rel_path=rel, timestamp=ts, pid=self.pid,
                               size_bytes=size, path=target)

    def _copy_with_retry(self, src: Path, dest: Path):
        attempts = max(1, self.config.copy_attempts)
        delay = self.config.copy_retry_delay
        for attempt in range(1, attempts + 1):
            try:
                self._copy_atomic(src, dest)
                if attempt > 1:
                    logger.info("Copy of %s succeeded on attempt %d", src.name, attempt)
                return
            except OSError as exc:
                reason = classify_os_error(exc)
                if reason in NON_RETRYABLE:
                    raise CopyFailure(reason, attempt, f"{reason}: {exc}") from exc
                if attempt == attempts:
                    raise CopyFailure(
                        reason, attempt, f"failed after {attempt} attempts: {exc}",
                    ) from exc
                logger.warning("Copy attempt %d/%d failed for %s: %s, retrying in %.1fs",
                               attempt, attempts, src, exc, delay)
                self._sleep(delay)
                delay *= 2

    def _copy_atomic(self, src: Path, dest: Path):
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.parent / f".{dest.name}.partial.{self.pid}"
        try:
            self._copy(str(src), str(tmp))
            os.replace(tmp, dest)
        finally:
            if os.path.lexists(tmp):
                os.unlink(tmp)

    def _start_time(self) -> datetime:
        if self._now is not None:
            return self._now
        if self.config.use_utc_timestamps:
            return datetime.now(timezone.utc)
        return datetime.now()
