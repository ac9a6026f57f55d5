"""Error codes and suggested fixes for per-file backup failures.

Codes follow ``E{CATEGORY}{NUMBER}``:
    PERM (permission), DISK (storage), CONF (config), DB (database),
    NET (network), FILE (file), UNK (unknown)
"""

import errno
from dataclasses import dataclass

ERROR_CATALOG: dict[str, tuple[str, str]] = {
    "EPERM001": ("Cannot write to backup directory",
                 "Check permissions on the backup directory and fix with chmod -R u+rw"),
    "EPERM002": ("Cannot read source file",
                 "Check the file exists and is readable"),
    "EPERM003": ("Permission denied during copy",
                 "Check source and destination permissions: chmod u+r source && chmod u+w dest"),
    "EDISK001": ("Backup directory full or quota exceeded",
                 "Check disk space with df -h, free space or increase quota"),
    "EDISK002": ("External drive not mounted",
                 "Mount the drive or update the backup dir in the project config"),
    "EDISK003": ("Insufficient space for backup",
                 "Delete old backups with an aggressive cleanup or free disk space"),
    "ECONF001": ("Invalid backup configuration",
                 "Validate the project config, check backup and project dirs"),
    "ECONF002": ("Missing required configuration",
                 "Create a project config file"),
    "ECONF003": ("Cloud folder path does not exist",
                 "Verify the cloud sync app is running and the folder path is correct"),
    "EDB001": ("Database connection failed",
               "Check the database is running and credentials are valid"),
    "EDB002": ("Database dump command failed",
               "Check the dump tool is installed and has permissions"),
    "EDB003": ("Database file locked",
               "Close applications using the database, wait and retry"),
    "ENET001": ("Cloud sync destination unreachable",
                "Check the network connection and the cloud folder path"),
    "ENET002": ("Cloud sync service not running",
                "Start the cloud sync app"),
    "EFILE001": ("Source file not found",
                 "File was deleted or moved during backup (ignore if intentional)"),
    "EFILE002": ("Size mismatch after copy",
                 "File was modified during backup. Retry backup to capture current version"),
    "EFILE003": ("File too large for destination",
                 "Check available space or exclude large files"),
    "EUNK000": ("Unknown error occurred",
                "Check backup logs and run history for details"),
}

_REASON_TO_CODE = {
    "disk_full": "EDISK001",
    "drive_disconnected": "EDISK002",
    "permission_denied": "EPERM001",
    "file_not_readable": "EPERM002",
    "read_error": "EPERM002",
    "permission": "EPERM003",
    "config_invalid": "ECONF001",
    "config_missing": "ECONF002",
    "cloud_missing": "ECONF003",
    "db_connection": "EDB001",
    "db_dump_failed": "EDB002",
    "db_locked": "EDB003",
    "network": "ENET001",
    "cloud_not_running": "ENET002",
    "file_missing": "EFILE001",
    "size_mismatch": "EFILE002",
    "file_too_large": "EFILE003",
}

# Reasons not worth retrying: the next attempt fails the same way
NON_RETRYABLE = {"permission_denied", "disk_full"}


def map_error_to_code(reason: str) -> str:
    """Map a failure reason (or an existing code) to a catalog code."""
    if reason in ERROR_CATALOG:
        return reason
    return _REASON_TO_CODE.get(reason, "EUNK000")


def get_error_description(code: str) -> str:
    entry = ERROR_CATALOG.get(code)
    return entry[0] if entry else f"Unknown error: {code}"


def get_error_suggestion(code: str) -> str:
    entry = ERROR_CATALOG.get(code)
    return entry[1] if entry else ERROR_CATALOG["EUNK000"][1]


def classify_os_error(exc: OSError) -> str:
    """Reduce an OSError to a failure reason."""
    if exc.errno in (errno.EACCES, errno.EPERM):
        return "permission_denied"
    if exc.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
        return "disk_full"
    if exc.errno == errno.ENOENT:
        return "file_missing"
    if exc.errno == errno.EIO:
        return "read_error"
    return "copy_failed"


@dataclass
class FileFailure:
    """One file that could not be backed up or failed verification."""
    path: str
    error_code: str
    message: str
    suggestion: str
    attempts: int = 0

    @classmethod
    def from_reason(cls, path: str, reason: str, message: str,
                    attempts: int = 0) -> "FileFailure":
        code = map_error_to_code(reason)
        return cls(
            path=path,
            error_code=code,
            message=message,
            suggestion=get_error_suggestion(code),
            attempts=attempts,
        )

    def format(self) -> str:
        return (f"Error {self.error_code}: {get_error_description(self.error_code)}\n"
                f"  Context: {self.path}: {self.message}\n"
                f"  Fix: {self.suggestion}")
