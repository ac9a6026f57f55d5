"""Retention and cleanup for the backup tree.

``plan()`` walks the backup directory once, classifies every entry and
evaluates all policies in memory. ``plan_legacy()`` produces the same plan
with a separate traversal per concern and is kept as the reference the
single pass is checked against.

Categories::

    databases/**/*.db.gz   database   (one history)
    archived/**            files      (history per original relative path)

Archived versions are aged by the timestamp in their name, which is when
they were superseded; everything else by mtime.

Reasons: ``expired`` (time-based or outside the tiered policy),
``duplicate`` (same SHA-256 as an older database snapshot) and ``orphaned``
(archived version of a file no longer in the project).
"""

import fnmatch
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from checkpoint.backup.archival_engine import parse_archive_name, ARCHIVE_TIMESTAMP_FORMAT
from checkpoint.backup.file_ops import file_sha256
from checkpoint.config import BackupConfig
from checkpoint.retention.tiered_policy import TieredPolicy

logger = logging.getLogger(__name__)

CATEGORY_DATABASE = "database"
CATEGORY_FILES = "files"

REASON_EXPIRED = "expired"
REASON_DUPLICATE = "duplicate"
REASON_ORPHANED = "orphaned"

DATABASE_SUFFIX = ".db.gz"
AUDIT_LOG_NAME = "audit.log"
DATABASE_HISTORY_KEY = "<database>"


@dataclass(frozen=True)
class RetentionPolicy:
    """Time-based retention for one category.

    ``time_based_days`` of None or 0 disables time-based expiry.
    """
    category: str
    time_based_days: int | None
    never_delete: bool = False
    protected_patterns: tuple[str, ...] = ()

    def protects(self, rel_path: str) -> bool:
        if self.never_delete:
            return True
        name = rel_path.rsplit("/", 1)[-1]
        return any(fnmatch.fnmatch(rel_path, p) or fnmatch.fnmatch(name, p)
                   for p in self.protected_patterns)


@dataclass(frozen=True)
class PruneCandidate:
    path: Path
    size_bytes: int
    reason: str
    category: str


@dataclass
class CleanupPlan:
    expired_db: list[PruneCandidate] = field(default_factory=list)
    expired_files: list[PruneCandidate] = field(default_factory=list)
    duplicates: list[PruneCandidate] = field(default_factory=list)
    orphaned: list[PruneCandidate] = field(default_factory=list)
    empty_dirs: list[Path] = field(default_factory=list)

    @property
    def candidates(self) -> list[PruneCandidate]:
        return self.expired_db + self.expired_files + self.duplicates + self.orphaned

    @property
    def total_bytes(self) -> int:
        return sum(c.size_bytes for c in self.candidates)

    def summary(self) -> dict:
        return {
            "expired_db": len(self.expired_db),
            "expired_files": len(self.expired_files),
            "duplicates": len(self.duplicates),
            "orphaned": len(self.orphaned),
            "empty_dirs": len(self.empty_dirs),
            "total_bytes": self.total_bytes,
        }


@dataclass
class CleanupFailure:
    path: Path
    error: str


@dataclass
class CleanupResult:
    deleted_count: int = 0
    bytes_freed: int = 0
    dirs_removed: int = 0
    failures: list[CleanupFailure] = field(default_factory=list)
    dry_run: bool = False


@dataclass
class _Entry:
    path: Path
    rel: str            # relative to the category root
    category: str
    size: int
    mtime: float
    logical: str        # history key
    archived_at: float | None = None

    @property
    def history_time(self) -> float:
        return self.archived_at if self.archived_at is not None else self.mtime


class CleanupEngine:
    """Plans and executes pruning of one project's backup tree."""

    def __init__(self, backup_dir, policies: dict[str, RetentionPolicy],
                 project_dir=None, detect_duplicates: bool = False,
                 detect_orphans: bool = False, tiered: TieredPolicy | None = None,
                 now=time.time, utc_names: bool = False):
        self.backup_dir = Path(backup_dir)
        self.database_dir = self.backup_dir / "databases"
        self.archived_dir = self.backup_dir / "archived"
        self.policies = policies
        self.project_dir = Path(project_dir) if project_dir else None
        self.detect_duplicates = detect_duplicates
        self.detect_orphans = detect_orphans and self.project_dir is not None
        self.tiered = tiered
        self._now = now
        self.utc_names = utc_names

    # ------------------------------------------------------------------
    # Entry classification
    # ------------------------------------------------------------------

    def _make_entry(self, path: Path, category: str) -> _Entry | None:
        try:
            st = os.lstat(path)
        except OSError:
            return None
        if category == CATEGORY_DATABASE:
            rel = path.relative_to(self.database_dir).as_posix()
            return _Entry(path, rel, category, st.st_size, st.st_mtime,
                          DATABASE_HISTORY_KEY)

        rel = path.relative_to(self.archived_dir).as_posix()
        parsed = parse_archive_name(rel)
        if parsed is None:
            return _Entry(path, rel, category, st.st_size, st.st_mtime, rel)
        original, ts, _pid = parsed
        archived = datetime.strptime(ts, ARCHIVE_TIMESTAMP_FORMAT)
        if self.utc_names:
            archived = archived.replace(tzinfo=timezone.utc)
        archived_at = archived.timestamp()
        return _Entry(path, original, category, st.st_size, st.st_mtime,
                      original, archived_at)

    def _category_of(self, path: Path) -> str | None:
        if path.name == AUDIT_LOG_NAME:
            return None
        try:
            path.relative_to(self.archived_dir)
            return CATEGORY_FILES
        except ValueError:
            pass
        try:
            path.relative_to(self.database_dir)
        except ValueError:
            return None
        return CATEGORY_DATABASE if path.name.endswith(DATABASE_SUFFIX) else None

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(self) -> CleanupPlan:
        """Single traversal: collect everything, then evaluate in memory."""
        db_entries: list[_Entry] = []
        file_entries: list[_Entry] = []
        dir_files: dict[Path, list[Path]] = {}

        if self.backup_dir.is_dir():
            for dirpath, _dirnames, filenames in os.walk(self.backup_dir):
                here = Path(dirpath)
                dir_files[here] = [here / name for name in filenames]
                for name in filenames:
                    path = here / name
                    if os.path.islink(path):
                        continue
                    category = self._category_of(path)
                    if category is None:
                        continue
                    entry = self._make_entry(path, category)
                    if entry is None:
                        continue
                    if category == CATEGORY_DATABASE:
                        db_entries.append(entry)
                    else:
                        file_entries.append(entry)

        return self._evaluate(db_entries, file_entries, dir_files)

    def plan_legacy(self) -> CleanupPlan:
        """One traversal per concern. Same result as ``plan``."""
        plan = CleanupPlan()
        claimed: set[Path] = set()

        plan.expired_db = self._claim(
            self._expired(self._collect(CATEGORY_DATABASE)), claimed)
        plan.expired_files = self._claim(
            self._expired(self._collect(CATEGORY_FILES)), claimed)
        if self.tiered is not None:
            plan.expired_db += self._claim(
                self._tiered(self._collect(CATEGORY_DATABASE)), claimed)
            plan.expired_files += self._claim(
                self._tiered(self._collect(CATEGORY_FILES)), claimed)
        if self.detect_duplicates:
            plan.duplicates = self._claim(
                self._duplicates(self._collect(CATEGORY_DATABASE)), claimed)
        if self.detect_orphans:
            plan.orphaned = self._claim(
                self._orphans(self._collect(CATEGORY_FILES)), claimed)

        dir_files = {}
        if self.backup_dir.is_dir():
            for dirpath, _dirnames, filenames in os.walk(self.backup_dir):
                dir_files[Path(dirpath)] = [Path(dirpath) / n for n in filenames]
        plan.empty_dirs = self._empty_dirs(dir_files, claimed)
        return plan

    def _collect(self, category: str) -> list[_Entry]:
        root = self.database_dir if category == CATEGORY_DATABASE else self.archived_dir
        if not root.is_dir():
            return []
        pattern = f"*{DATABASE_SUFFIX}" if category == CATEGORY_DATABASE else "*"
        entries = []
        for path in root.rglob(pattern):
            if path.is_symlink() or not path.is_file():
                continue
            if self._category_of(path) != category:
                continue
            entry = self._make_entry(path, category)
            if entry is not None:
                entries.append(entry)
        return entries

    def _evaluate(self, db_entries, file_entries, dir_files) -> CleanupPlan:
        plan = CleanupPlan()
        claimed: set[Path] = set()

        plan.expired_db = self._claim(self._expired(db_entries), claimed)
        plan.expired_files = self._claim(self._expired(file_entries), claimed)
        if self.tiered is not None:
            plan.expired_db += self._claim(self._tiered(db_entries), claimed)
            plan.expired_files += self._claim(self._tiered(file_entries), claimed)
        if self.detect_duplicates:
            plan.duplicates = self._claim(self._duplicates(db_entries), claimed)
        if self.detect_orphans:
            plan.orphaned = self._claim(self._orphans(file_entries), claimed)
        plan.empty_dirs = self._empty_dirs(dir_files, claimed)
        return plan

    @staticmethod
    def _claim(candidates: list[PruneCandidate], claimed: set[Path]) -> list[PruneCandidate]:
        """Drop candidates already claimed by an earlier reason."""
        fresh = []
        for c in sorted(candidates, key=lambda c: str(c.path)):
            if c.path in claimed:
                continue
            claimed.add(c.path)
            fresh.append(c)
        return fresh

    def _protected(self, entry: _Entry) -> bool:
        policy = self.policies.get(entry.category)
        return policy is not None and policy.protects(entry.rel)

    @staticmethod
    def _candidate(entry: _Entry, reason: str) -> PruneCandidate:
        return PruneCandidate(path=entry.path, size_bytes=entry.size,
                              reason=reason, category=entry.category)

    # ------------------------------------------------------------------
    # Reasons
    # ------------------------------------------------------------------

    def _expired(self, entries: list[_Entry]) -> list[PruneCandidate]:
        out = []
        now = self._now()
        for e in entries:
            policy = self.policies.get(e.category)
            if policy is None or not policy.time_based_days or self._protected(e):
                continue
            if e.history_time < now - policy.time_based_days * 86400:
                out.append(self._candidate(e, REASON_EXPIRED))
        return out

    def _tiered(self, entries: list[_Entry]) -> list[PruneCandidate]:
        histories: dict[str, list[_Entry]] = {}
        for e in entries:
            if not self._protected(e):
                histories.setdefault(e.logical, []).append(e)
        now = self._now()
        out = []
        for history in histories.values():
            pairs = [(e, e.history_time) for e in history]
            out.extend(self._candidate(e, REASON_EXPIRED)
                       for e in self.tiered.prune_candidates(pairs, now))
        return out

    def _duplicates(self, entries: list[_Entry]) -> list[PruneCandidate]:
        by_size: dict[int, list[_Entry]] = {}
        for e in entries:
            by_size.setdefault(e.size, []).append(e)

        out = []
        for group in by_size.values():
            if len(group) < 2:
                continue
            by_hash: dict[str, list[_Entry]] = {}
            for e in group:
                digest = file_sha256(e.path)
                if digest is not None:
                    by_hash.setdefault(digest, []).append(e)
            for same in by_hash.values():
                same.sort(key=lambda e: (e.mtime, str(e.path)))
                out.extend(self._candidate(e, REASON_DUPLICATE)
                           for e in same[1:] if not self._protected(e))
        return out

    def _orphans(self, entries: list[_Entry]) -> list[PruneCandidate]:
        out = []
        for e in entries:
            if e.archived_at is None or self._protected(e):
                continue
            if not (self.project_dir / e.logical).exists():
                out.append(self._candidate(e, REASON_ORPHANED))
        return out

    def _empty_dirs(self, dir_files: dict[Path, list[Path]],
                    removed: set[Path]) -> list[Path]:
        """Directories under the category roots left with no files."""
        roots = (self.archived_dir, self.database_dir)
        survivors: set[Path] = set()
        candidates = []
        for d, files in dir_files.items():
            if d in roots or not any(self._is_under(d, r) for r in roots):
                continue
            candidates.append(d)
            if any(f not in removed for f in files):
                survivors.add(d)

        def has_survivor(d: Path) -> bool:
            return any(s == d or self._is_under(s, d) for s in survivors)

        result = [d for d in candidates if not has_survivor(d)]
        result.sort(key=lambda p: len(p.parts), reverse=True)
        return result

    @staticmethod
    def _is_under(path: Path, root: Path) -> bool:
        try:
            path.relative_to(root)
            return True
        except ValueError:
            return False

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, plan: CleanupPlan, dry_run: bool = False) -> CleanupResult:
        result = CleanupResult(dry_run=dry_run)
        deleted: list[PruneCandidate] = []

        for c in plan.candidates:
            if dry_run:
                logger.info("[dry-run] Would delete %s (%s, %d bytes)",
                            c.path, c.reason, c.size_bytes)
                result.deleted_count += 1
                result.bytes_freed += c.size_bytes
                continue
            try:
                os.unlink(c.path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Could not delete %s: %s", c.path, exc)
                result.failures.append(CleanupFailure(c.path, str(exc)))
                continue
            deleted.append(c)
            result.deleted_count += 1
            result.bytes_freed += c.size_bytes

        # Deepest first so parents are empty by the time they are reached
        for d in sorted(plan.empty_dirs, key=lambda p: len(p.parts), reverse=True):
            if dry_run:
                result.dirs_removed += 1
                continue
            try:
                os.rmdir(d)
                result.dirs_removed += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.debug("Leaving directory %s: %s", d, exc)

        if not dry_run and (deleted or result.failures or result.dirs_removed):
            self._audit(deleted, result)

        logger.info(
            "Cleanup%s: %d file(s), %d bytes, %d dir(s), %d failure(s)",
            " (dry run)" if dry_run else "", result.deleted_count,
            result.bytes_freed, result.dirs_removed, len(result.failures),
        )
        return result

    def _audit(self, deleted: list[PruneCandidate], result: CleanupResult):
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        lines = [f"[{stamp}] DELETE {c.reason} {c.category} {c.path} ({c.size_bytes} bytes)"
                 for c in deleted]
        lines.extend(f"[{stamp}] FAILED {f.path}: {f.error}" for f in result.failures)
        lines.append(
            f"[{stamp}] CLEANUP deleted={result.deleted_count} "
            f"bytes={result.bytes_freed} dirs={result.dirs_removed} "
            f"failures={len(result.failures)}"
        )
        try:
            with open(self.backup_dir / AUDIT_LOG_NAME, "a") as f:
                f.write("\n".join(lines) + "\n")
        except OSError as exc:
            logger.warning("Could not write audit log: %s", exc)


# ----------------------------------------------------------------------
# Config-driven entry points
# ----------------------------------------------------------------------

def engine_for(config: BackupConfig, run_tiered: bool = True, now=time.time) -> CleanupEngine:
    """Build the engine for a project.

    In tiered mode the tiered policy replaces time-based expiry; when
    ``run_tiered`` is False only duplicates, orphans and empty directories
    are handled on this pass.
    """
    tiered_mode = config.tiered_retention
    policies = {
        CATEGORY_DATABASE: RetentionPolicy(
            CATEGORY_DATABASE,
            None if tiered_mode else config.db_retention_days,
            never_delete=config.db_never_delete,
            protected_patterns=config.protected_patterns,
        ),
        CATEGORY_FILES: RetentionPolicy(
            CATEGORY_FILES,
            None if tiered_mode else config.file_retention_days,
            never_delete=config.files_never_delete,
            protected_patterns=config.protected_patterns,
        ),
    }
    tiered = None
    if tiered_mode and run_tiered:
        tiered = TieredPolicy(versions_per_tier=config.versions_per_tier)
    return CleanupEngine(
        config.backup_dir,
        policies,
        project_dir=config.project_dir,
        detect_duplicates=config.detect_duplicates,
        detect_orphans=config.detect_orphans,
        tiered=tiered,
        now=now,
        utc_names=config.use_utc_timestamps,
    )


def plan_cleanup(config: BackupConfig, run_tiered: bool = True) -> CleanupPlan:
    return engine_for(config, run_tiered).plan()


def execute_cleanup(config: BackupConfig, dry_run: bool = False,
                    run_tiered: bool = True) -> CleanupResult:
    engine = engine_for(config, run_tiered)
    return engine.execute(engine.plan(), dry_run=dry_run)
