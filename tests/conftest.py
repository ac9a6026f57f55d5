import pytest

from checkpoint.config import BackupConfig


@pytest.fixture
def project_dir(tmp_path):
    d = tmp_path / "project"
    d.mkdir()
    return d


@pytest.fixture
def make_config(tmp_path, project_dir):
    """Factory for a BackupConfig rooted in tmp_path, with overrides."""
    def _make(**overrides):
        values = dict(
            project_name="demo",
            project_dir=project_dir,
            backup_dir=tmp_path / "backups",
            state_root=tmp_path / "state",
            lock_root=tmp_path / "locks",
            copy_retry_delay=0.0,
        )
        values.update(overrides)
        return BackupConfig(**values)
    return _make
