"""Backup engine configuration and defaults.

Defaults live here as module constants. A project config file (JSON) is
loaded once by ``load_config`` into an immutable ``BackupConfig`` which is
handed to every component at construction.

Config file layout::

    {
      "project":   {"name": "...", "dir": "...", "db_path": null},
      "backup":    {"dir": "...", "secondary_dir": null, "interval": 3600, ...},
      "retention": {"database_days": 30, "file_days": 7, "tiered": false, ...},
      "watcher":   {"debounce_seconds": 60, "excludes": []},
      "watchdog":  {"stale_threshold": 300, "check_interval": 60, ...}
    }
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

# State shared by all projects (heartbeat, watchdog status, locks)
DEFAULT_STATE_ROOT = os.path.join(os.path.expanduser("~"), ".checkpoint")
DEFAULT_LOCK_ROOT = os.path.join(DEFAULT_STATE_ROOT, "locks")
HEARTBEAT_FILENAME = "daemon.heartbeat"

# Per-project config file, always included in file backups
PROJECT_CONFIG_NAME = ".checkpoint.json"

# Backup behaviour
BACKUP_INTERVAL = 3600            # seconds between scheduled runs
COPY_ATTEMPTS = 3
COPY_RETRY_DELAY = 1.0            # seconds, doubles per attempt
MAX_BACKUP_FILE_SIZE = 0          # bytes, 0 = no limit
CLEANUP_INTERVAL = 6              # tiered cleanup every N cycles

# Retention
DB_RETENTION_DAYS = 30
FILE_RETENTION_DAYS = 7

# Watcher
DEBOUNCE_SECONDS = 60

# Watchdog
STALE_THRESHOLD = 300
CHECK_INTERVAL = 60
MAX_CONSECUTIVE_FAILURES = 3
NOTIFY_COOLDOWN_WARNING = 4 * 3600
NOTIFY_COOLDOWN_CRITICAL = 2 * 3600


@dataclass(frozen=True)
class BackupConfig:
    """Everything one backup cycle, cleanup or watchdog needs to know."""

    project_name: str
    project_dir: Path
    backup_dir: Path
    secondary_dir: Path | None = None
    db_path: Path | None = None
    state_root: Path = Path(DEFAULT_STATE_ROOT)
    lock_root: Path = Path(DEFAULT_LOCK_ROOT)

    # Backup
    backup_interval: int = BACKUP_INTERVAL
    use_hash_compare: bool = False
    copy_attempts: int = COPY_ATTEMPTS
    copy_retry_delay: float = COPY_RETRY_DELAY
    max_file_size: int = MAX_BACKUP_FILE_SIZE
    backup_large_files: bool = True
    use_utc_timestamps: bool = False
    persist_manifest: bool = True
    drive_marker: Path | None = None

    # Always-include classes
    backup_env_files: bool = True
    backup_credentials: bool = True
    backup_ide_settings: bool = True
    backup_local_notes: bool = True
    backup_local_databases: bool = True

    # Retention
    db_retention_days: int = DB_RETENTION_DAYS
    file_retention_days: int = FILE_RETENTION_DAYS
    db_never_delete: bool = False
    files_never_delete: bool = False
    protected_patterns: tuple[str, ...] = ()
    tiered_retention: bool = False
    versions_per_tier: int = 1
    detect_duplicates: bool = False
    detect_orphans: bool = False
    cleanup_interval: int = CLEANUP_INTERVAL

    # Watcher
    debounce_seconds: float = DEBOUNCE_SECONDS
    watcher_excludes: tuple[str, ...] = ()

    # Watchdog
    stale_threshold: int = STALE_THRESHOLD
    check_interval: int = CHECK_INTERVAL
    max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES
    notify_cooldowns: dict = field(default_factory=lambda: {
        "info": 0,
        "warning": NOTIFY_COOLDOWN_WARNING,
        "critical": NOTIFY_COOLDOWN_CRITICAL,
    })

    @property
    def files_dir(self) -> Path:
        return self.backup_dir / "files"

    @property
    def archived_dir(self) -> Path:
        return self.backup_dir / "archived"

    @property
    def database_dir(self) -> Path:
        return self.backup_dir / "databases"

    @property
    def secondary_files_dir(self) -> Path | None:
        return self.secondary_dir / "files" if self.secondary_dir else None

    @property
    def secondary_archived_dir(self) -> Path | None:
        return self.secondary_dir / "archived" if self.secondary_dir else None

    @property
    def project_state_dir(self) -> Path:
        return self.state_root / "state" / self.project_name

    @property
    def daemon_name(self) -> str:
        return f"backup-{self.project_name}"

    @property
    def daemon_pid_path(self) -> Path:
        return self.state_root / f"{self.daemon_name}.pid"

    @property
    def heartbeat_path(self) -> Path:
        return self.state_root / HEARTBEAT_FILENAME

    @property
    def manifest_path(self) -> Path:
        return self.backup_dir / ".checkpoint-manifest.json"


def _resolve_path(path_str: str | None) -> Path | None:
    if not path_str:
        return None
    return Path(os.path.expanduser(os.path.expandvars(path_str))).resolve()


def config_from_dict(data: dict) -> BackupConfig:
    """Build a BackupConfig from the parsed JSON sections."""
    project = data.get("project", {})
    backup = data.get("backup", {})
    retention = data.get("retention", {})
    watcher = data.get("watcher", {})
    watchdog_cfg = data.get("watchdog", {})

    project_dir = _resolve_path(project.get("dir")) or Path.cwd()
    project_name = project.get("name") or project_dir.name
    backup_dir = _resolve_path(backup.get("dir")) or project_dir / "backups"
    state_root = _resolve_path(data.get("state_root")) or Path(DEFAULT_STATE_ROOT)
    lock_root = _resolve_path(data.get("lock_root")) or state_root / "locks"

    cooldowns = {
        "info": 0,
        "warning": watchdog_cfg.get("notify_cooldown_warning", NOTIFY_COOLDOWN_WARNING),
        "critical": watchdog_cfg.get("notify_cooldown_critical", NOTIFY_COOLDOWN_CRITICAL),
    }

    return BackupConfig(
        project_name=project_name,
        project_dir=project_dir,
        backup_dir=backup_dir,
        secondary_dir=_resolve_path(backup.get("secondary_dir")),
        db_path=_resolve_path(project.get("db_path")),
        state_root=state_root,
        lock_root=lock_root,
        backup_interval=backup.get("interval", BACKUP_INTERVAL),
        use_hash_compare=backup.get("use_hash_compare", False),
        copy_attempts=backup.get("copy_attempts", COPY_ATTEMPTS),
        copy_retry_delay=backup.get("copy_retry_delay", COPY_RETRY_DELAY),
        max_file_size=backup.get("max_file_size", MAX_BACKUP_FILE_SIZE),
        backup_large_files=backup.get("backup_large_files", True),
        use_utc_timestamps=backup.get("use_utc_timestamps", False),
        persist_manifest=backup.get("persist_manifest", True),
        drive_marker=_resolve_path(backup.get("drive_marker")),
        backup_env_files=backup.get("env_files", True),
        backup_credentials=backup.get("credentials", True),
        backup_ide_settings=backup.get("ide_settings", True),
        backup_local_notes=backup.get("local_notes", True),
        backup_local_databases=backup.get("local_databases", True),
        db_retention_days=retention.get("database_days", DB_RETENTION_DAYS),
        file_retention_days=retention.get("file_days", FILE_RETENTION_DAYS),
        db_never_delete=retention.get("database_never_delete", False),
        files_never_delete=retention.get("files_never_delete", False),
        protected_patterns=tuple(retention.get("protected_patterns", [])),
        tiered_retention=retention.get("tiered", False),
        versions_per_tier=retention.get("versions_per_tier", 1),
        detect_duplicates=retention.get("detect_duplicates", False),
        detect_orphans=retention.get("detect_orphans", False),
        cleanup_interval=retention.get("cleanup_interval", CLEANUP_INTERVAL),
        debounce_seconds=watcher.get("debounce_seconds", DEBOUNCE_SECONDS),
        watcher_excludes=tuple(watcher.get("excludes", [])),
        stale_threshold=watchdog_cfg.get("stale_threshold", STALE_THRESHOLD),
        check_interval=watchdog_cfg.get("check_interval", CHECK_INTERVAL),
        max_consecutive_failures=watchdog_cfg.get(
            "max_failures", MAX_CONSECUTIVE_FAILURES
        ),
        notify_cooldowns=cooldowns,
    )


def load_config(config_path: str) -> BackupConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    with open(path) as f:
        return config_from_dict(json.load(f))
