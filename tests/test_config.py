"""Tests for configuration loading."""

import json
from pathlib import Path

import pytest

from checkpoint.config import (
    BACKUP_INTERVAL,
    DB_RETENTION_DAYS,
    NOTIFY_COOLDOWN_WARNING,
    config_from_dict,
    load_config,
)


class TestConfigFromDict:
    def test_defaults(self, tmp_path):
        config = config_from_dict({"project": {"dir": str(tmp_path)}})

        assert config.project_name == tmp_path.name
        assert config.backup_dir == tmp_path.resolve() / "backups"
        assert config.backup_interval == BACKUP_INTERVAL
        assert config.db_retention_days == DB_RETENTION_DAYS
        assert config.notify_cooldowns["warning"] == NOTIFY_COOLDOWN_WARNING
        assert config.secondary_dir is None

    def test_sections_override_defaults(self, tmp_path):
        config = config_from_dict({
            "project": {"name": "shop", "dir": str(tmp_path / "shop")},
            "backup": {"dir": str(tmp_path / "bk"), "interval": 60, "copy_attempts": 5},
            "retention": {"file_days": 3, "protected_patterns": [".env*"], "tiered": True},
            "watcher": {"debounce_seconds": 10, "excludes": ["\\.log$"]},
            "watchdog": {"max_failures": 5, "notify_cooldown_critical": 60},
            "state_root": str(tmp_path / "state"),
        })

        assert config.project_name == "shop"
        assert config.files_dir == (tmp_path / "bk").resolve() / "files"
        assert config.archived_dir == (tmp_path / "bk").resolve() / "archived"
        assert config.backup_interval == 60
        assert config.copy_attempts == 5
        assert config.file_retention_days == 3
        assert config.protected_patterns == (".env*",)
        assert config.tiered_retention
        assert config.watcher_excludes == ("\\.log$",)
        assert config.max_consecutive_failures == 5
        assert config.notify_cooldowns["critical"] == 60
        assert config.lock_root == (tmp_path / "state").resolve() / "locks"
        assert config.heartbeat_path.name == "daemon.heartbeat"
        assert config.project_state_dir == (tmp_path / "state").resolve() / "state" / "shop"
        assert config.daemon_pid_path == (tmp_path / "state").resolve() / "backup-shop.pid"

    def test_secondary_paths(self, tmp_path):
        config = config_from_dict({
            "project": {"dir": str(tmp_path)},
            "backup": {"secondary_dir": str(tmp_path / "usb")},
        })
        assert config.secondary_files_dir == (tmp_path / "usb").resolve() / "files"

    def test_config_is_immutable(self, tmp_path):
        config = config_from_dict({"project": {"dir": str(tmp_path)}})
        with pytest.raises(AttributeError):
            config.backup_interval = 1


class TestLoadConfig:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "missing.json"))

    def test_load_sample_config(self):
        sample = Path(__file__).resolve().parent.parent / "config" / "config.json"
        config = load_config(str(sample))
        assert config.project_name == "myproject"
        assert config.backup_dir.name == "backups"

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"project": {"name": "x", "dir": str(tmp_path)}}))
        assert load_config(str(path)).project_name == "x"
