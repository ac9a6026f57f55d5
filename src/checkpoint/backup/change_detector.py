"""Change detection: which project files need a backup this run.

Two strategies, picked once per process by ``select_detector``:

    GitChangeDetector      modified + staged + untracked-but-not-ignored
    MtimeFallbackDetector  files modified within the backup interval

Both add the always-include classes (env files, credentials, IDE settings,
local notes, local databases) which are usually gitignored but still worth
keeping, then return a deduplicated, sorted list of relative paths.
"""

import fnmatch
import logging
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from checkpoint.config import BackupConfig, PROJECT_CONFIG_NAME

logger = logging.getLogger(__name__)

# Never descended into by the filesystem scans
EXCLUDED_DIRS = {
    "backups", ".git", "node_modules", ".venv", "__pycache__",
    "dist", "build", ".next",
}
EXCLUDED_FILES = {".DS_Store"}

GIT_TIMEOUT = 60


@dataclass(frozen=True)
class IncludeClass:
    """A class of files backed up regardless of change status.

    ``patterns`` without a slash match the basename; patterns with a slash
    match the relative path at any depth. ``paths`` are exact relative paths.
    """
    name: str
    patterns: tuple[str, ...] = ()
    paths: tuple[str, ...] = ()
    max_depth: int = 3
    exclude_names: tuple[str, ...] = ()

    def matches(self, rel_path: str) -> bool:
        name = rel_path.rsplit("/", 1)[-1]
        if name in self.exclude_names:
            return False
        if rel_path in self.paths:
            return True
        for pat in self.patterns:
            if "/" in pat:
                if fnmatch.fnmatch(rel_path, pat) or fnmatch.fnmatch(rel_path, "*/" + pat):
                    return True
            elif fnmatch.fnmatch(name, pat):
                return True
        return False


ENV_FILES = IncludeClass("env", patterns=(".env", ".env.*"))
CREDENTIAL_FILES = IncludeClass(
    "credentials",
    patterns=(
        "*.pem", "*.key", "credentials.json", "secrets.*", "*.p12", "*.pfx",
        "*.tfvars", "*.local.*", "local.settings.json", "appsettings.*.json",
        ".gcp/*.json", ".firebase/*.json",
    ),
    paths=(".aws/credentials", ".aws/config", "docker-compose.override.yml"),
)
IDE_SETTINGS = IncludeClass(
    "ide",
    patterns=(".idea/codeStyles/*",),
    paths=(
        ".vscode/settings.json", ".vscode/launch.json",
        ".vscode/extensions.json", ".idea/workspace.xml",
    ),
)
LOCAL_NOTES = IncludeClass(
    "notes",
    patterns=("NOTES.md", "NOTES.txt", "TODO.local.md", "*.private.md"),
    max_depth=2,
)


def local_database_class(main_db: Path | None) -> IncludeClass:
    exclude = (main_db.name,) if main_db else ()
    return IncludeClass("local_databases", patterns=("*.db", "*.sqlite", "*.sql"),
                        exclude_names=exclude)


def include_classes_for(config: BackupConfig) -> list[IncludeClass]:
    classes = []
    if config.backup_env_files:
        classes.append(ENV_FILES)
    if config.backup_credentials:
        classes.append(CREDENTIAL_FILES)
    if config.backup_ide_settings:
        classes.append(IDE_SETTINGS)
    if config.backup_local_notes:
        classes.append(LOCAL_NOTES)
    if config.backup_local_databases:
        classes.append(local_database_class(config.db_path))
    return classes


def walk_files(root: Path, max_depth: int | None = None, prune=(".git",)):
    """Yield relative POSIX paths of files under ``root``.

    Depth counts path components, so ``max_depth=1`` means top-level files.
    Symlinked directories are not followed.
    """
    root = Path(root)
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = os.path.relpath(dirpath, root)
        depth = 0 if rel_dir == "." else rel_dir.count(os.sep) + 1
        dirnames[:] = sorted(d for d in dirnames if d not in prune)
        if max_depth is not None and depth + 1 >= max_depth:
            dirnames[:] = []
        if max_depth is not None and depth + 1 > max_depth:
            continue
        for name in filenames:
            rel = name if rel_dir == "." else os.path.join(rel_dir, name)
            yield rel.replace(os.sep, "/")


def find_always_included(project_dir: Path, classes: list[IncludeClass]) -> set[str]:
    """One walk to the deepest class depth, matched against every class."""
    if not classes:
        return set()
    deepest = max(c.max_depth for c in classes)
    found = set()
    for rel in walk_files(project_dir, max_depth=deepest):
        depth = rel.count("/") + 1
        for cls in classes:
            if depth <= cls.max_depth and cls.matches(rel):
                found.add(rel)
                break
    return found


def build_change_set(paths, backup_dir: Path | None = None,
                     project_dir: Path | None = None) -> list[str]:
    """Deduplicate, drop blanks and paths inside the backup tree, sort."""
    backup_prefix = None
    if backup_dir is not None and project_dir is not None:
        try:
            rel = Path(backup_dir).resolve().relative_to(Path(project_dir).resolve())
            backup_prefix = rel.as_posix().rstrip("/") + "/"
        except ValueError:
            backup_prefix = None

    result = set()
    for p in paths:
        p = p.strip()
        if p.startswith("./"):
            p = p[2:]
        if not p or p.startswith("backups/"):
            continue
        if backup_prefix and p.startswith(backup_prefix):
            continue
        result.add(p)
    return sorted(result)


class ChangeDetector:
    """Base strategy. Subclasses supply ``_changed_paths``."""

    name = "base"

    def __init__(self, config: BackupConfig):
        self.config = config
        self.include_classes = include_classes_for(config)

    def detect(self, project_dir=None, full: bool = False) -> list[str]:
        """Return the ChangeSet for ``project_dir``.

        ``full`` selects every tracked file (first backup).
        """
        root = Path(project_dir or self.config.project_dir)
        paths = set(self._changed_paths(root, full))
        paths |= find_always_included(root, self.include_classes)
        if (root / PROJECT_CONFIG_NAME).is_file():
            paths.add(PROJECT_CONFIG_NAME)
        change_set = build_change_set(paths, self.config.backup_dir, root)
        logger.info("%s detector: %d path(s) to check", self.name, len(change_set))
        return change_set

    def _changed_paths(self, root: Path, full: bool):
        raise NotImplementedError


class GitChangeDetector(ChangeDetector):
    name = "git"

    def _changed_paths(self, root: Path, full: bool):
        if full:
            commands = [["ls-files"], ["ls-files", "--others", "--exclude-standard"]]
        else:
            commands = [
                ["diff", "--name-only", "--relative"],
                ["diff", "--cached", "--name-only", "--relative"],
                ["ls-files", "--others", "--exclude-standard"],
            ]
        paths = []
        for args in commands:
            paths.extend(self._git(root, args))
        return paths

    @staticmethod
    def _git(root: Path, args: list[str]) -> list[str]:
        try:
            proc = subprocess.run(
                ["git", "-c", "core.quotepath=off", *args],
                cwd=str(root), capture_output=True, text=True, timeout=GIT_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("git %s failed: %s", " ".join(args), exc)
            return []
        if proc.returncode != 0:
            logger.warning("git %s exited %d: %s", " ".join(args),
                           proc.returncode, proc.stderr.strip())
            return []
        return [line for line in proc.stdout.splitlines() if line]


class MtimeFallbackDetector(ChangeDetector):
    name = "mtime"

    def __init__(self, config: BackupConfig, clock=time.time):
        super().__init__(config)
        self._clock = clock

    def _changed_paths(self, root: Path, full: bool):
        cutoff = self._clock() - self.config.backup_interval
        for rel in walk_files(root, prune=EXCLUDED_DIRS):
            if rel.rsplit("/", 1)[-1] in EXCLUDED_FILES:
                continue
            if full:
                yield rel
                continue
            try:
                mtime = os.lstat(root / rel).st_mtime
            except OSError:
                continue
            if mtime >= cutoff:
                yield rel


def is_git_repository(project_dir) -> bool:
    try:
        proc = subprocess.run(
            ["git", "rev-parse", "--is-inside-work-tree"],
            cwd=str(project_dir), capture_output=True, text=True, timeout=GIT_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return proc.returncode == 0 and proc.stdout.strip() == "true"


def select_detector(config: BackupConfig) -> ChangeDetector:
    """Pick the strategy once, at startup."""
    if is_git_repository(config.project_dir):
        return GitChangeDetector(config)
    logger.debug("No git repository in %s, using mtime detection", config.project_dir)
    return MtimeFallbackDetector(config)
