"""Tests for the archival engine, manifest verification and error codes.

Covers:
- New / update / unchanged handling and archive naming
- Idempotence: a second identical run writes and archives nothing
- Crash between archive and copy loses nothing
- Bounded retry with doubling delay, non-retryable errors
- Secondary destination fallback and mirroring
- Symlinks and oversize files are skipped
- Size mismatch detected by verification (EFILE002)
- Archive name parsing
"""

import errno
import os
import shutil
from datetime import datetime

import pytest

from checkpoint.backup.archival_engine import (
    OUTCOME_FAILURE,
    OUTCOME_PARTIAL,
    OUTCOME_SUCCESS,
    ArchivalEngine,
    ArchivedVersion,
    archive_name,
    parse_archive_name,
)
from checkpoint.backup.error_codes import (
    FileFailure,
    classify_os_error,
    get_error_suggestion,
    map_error_to_code,
)
from checkpoint.backup.manifest import BackupManifest

NOW = datetime(2026, 10, 19, 14, 30, 0)
PID = 4242


def write(root, rel, content):
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_engine(make_config, sleeps):
    def _make(copy_func=shutil.copy2, **overrides):
        return ArchivalEngine(make_config(**overrides), copy_func=copy_func,
                              sleep=sleeps.append, pid=PID, now=NOW)
    return _make


# ---------------------------------------------------------------------------
# Core new / update / unchanged
# ---------------------------------------------------------------------------

class TestArchival:
    def test_new_file_is_copied(self, make_engine, project_dir):
        write(project_dir, "src/app.py", "print('hi')")
        engine = make_engine()
        result, manifest = engine.run(["src/app.py"])

        snapshot = engine.config.files_dir / "src/app.py"
        assert snapshot.read_text() == "print('hi')"
        assert result.written == ["src/app.py"]
        assert result.archived_count == 0
        assert result.outcome == OUTCOME_SUCCESS
        assert manifest.entries == {"src/app.py": len("print('hi')")}

    def test_update_archives_previous_version(self, make_engine, project_dir):
        engine = make_engine()
        write(engine.config.files_dir, "app.py", "old")
        write(project_dir, "app.py", "new content")

        result, _ = engine.run(["app.py"])

        archived = engine.config.archived_dir / f"app.py.20261019_143000_{PID}"
        assert archived.read_text() == "old"
        assert (engine.config.files_dir / "app.py").read_text() == "new content"
        assert result.archived_count == 1
        assert result.archived[0].original_rel_path == "app.py"
        assert result.archived[0].size_bytes == 3

    def test_same_size_different_content_is_update(self, make_engine, project_dir):
        engine = make_engine()
        write(engine.config.files_dir, "a.txt", "aaaa")
        write(project_dir, "a.txt", "bbbb")

        result, _ = engine.run(["a.txt"])
        assert result.archived_count == 1

    def test_hash_compare_mode(self, make_engine, project_dir):
        engine = make_engine(use_hash_compare=True)
        write(engine.config.files_dir, "a.txt", "same")
        write(project_dir, "a.txt", "same")

        result, _ = engine.run(["a.txt"])
        assert result.unchanged == ["a.txt"]
        assert result.archived_count == 0

    def test_unchanged_is_noop(self, make_engine, project_dir):
        engine = make_engine()
        write(engine.config.files_dir, "a.txt", "same")
        write(project_dir, "a.txt", "same")

        result, _ = engine.run(["a.txt"])
        assert result.unchanged == ["a.txt"]
        assert result.written == []
        assert result.succeeded_count == 1
        assert not engine.config.archived_dir.exists()

    def test_second_run_is_idempotent(self, make_engine, project_dir):
        write(project_dir, "a.txt", "one")
        write(project_dir, "b/c.txt", "two")
        engine = make_engine()
        engine.run(["a.txt", "b/c.txt"])

        result, _ = engine.run(["a.txt", "b/c.txt"])
        assert result.written == []
        assert result.archived_count == 0
        assert sorted(result.unchanged) == ["a.txt", "b/c.txt"]

    def test_archive_names_are_never_reused(self, make_engine, project_dir):
        engine = make_engine()
        taken = write(engine.config.archived_dir, f"a.txt.20261019_143000_{PID}", "older")
        write(engine.config.files_dir, "a.txt", "old")
        write(project_dir, "a.txt", "new")

        result, _ = engine.run(["a.txt"])

        assert taken.read_text() == "older"
        bumped = engine.config.archived_dir / f"a.txt.20261019_143001_{PID}"
        assert bumped.read_text() == "old"
        assert result.archived[0].timestamp == "20261019_143001"

    def test_deleted_file_is_skipped(self, make_engine):
        result, _ = make_engine().run(["gone.txt"])
        assert result.skipped_missing == ["gone.txt"]
        assert result.outcome == OUTCOME_SUCCESS


# ---------------------------------------------------------------------------
# Crash safety
# ---------------------------------------------------------------------------

class TestCrashBetweenArchiveAndCopy:
    def test_previous_version_survives_and_next_run_recovers(self, make_engine, project_dir):
        def crash(src, dst):
            raise SystemExit("killed mid-copy")

        crashing = make_engine(copy_func=crash)
        files_dir = crashing.config.files_dir
        write(files_dir, "a.txt", "v1")
        write(project_dir, "a.txt", "v2")

        with pytest.raises(SystemExit):
            crashing.run(["a.txt"])

        archived = crashing.config.archived_dir / f"a.txt.20261019_143000_{PID}"
        assert archived.read_text() == "v1"
        assert not (files_dir / "a.txt").exists()
        # No partial temp file left beside the snapshot
        assert list(files_dir.iterdir()) == []

        result, _ = make_engine().run(["a.txt"])
        assert (files_dir / "a.txt").read_text() == "v2"
        assert result.archived_count == 0
        assert archived.read_text() == "v1"


# ---------------------------------------------------------------------------
# Retry and failure records
# ---------------------------------------------------------------------------

class TestRetry:
    def test_transient_errors_are_retried_with_backoff(self, make_engine, project_dir, sleeps):
        calls = []

        def flaky(src, dst):
            calls.append(dst)
            if len(calls) < 3:
                raise OSError(errno.EIO, "I/O error")
            shutil.copy2(src, dst)

        write(project_dir, "a.txt", "data")
        engine = make_engine(copy_func=flaky, copy_retry_delay=0.5)
        result, _ = engine.run(["a.txt"])

        assert len(calls) == 3
        assert sleeps == [0.5, 1.0]
        assert result.outcome == OUTCOME_SUCCESS

    def test_permission_denied_is_not_retried(self, make_engine, project_dir, sleeps):
        def denied(src, dst):
            raise PermissionError(errno.EACCES, "Permission denied")

        write(project_dir, "a.txt", "data")
        result, _ = make_engine(copy_func=denied).run(["a.txt"])

        assert sleeps == []
        assert result.failed_count == 1
        failure = result.failures[0]
        assert failure.error_code == "EPERM001"
        assert failure.attempts == 1
        assert failure.suggestion
        assert result.outcome == OUTCOME_FAILURE

    def test_exhausted_retries_record_failure(self, make_engine, project_dir, sleeps):
        def broken(src, dst):
            raise OSError(errno.EIO, "I/O error")

        write(project_dir, "a.txt", "data")
        result, _ = make_engine(copy_func=broken, copy_attempts=3).run(["a.txt"])

        assert len(sleeps) == 2
        assert result.failures[0].attempts == 3
        # Verification does not report the same path a second time
        assert len(result.failures) == 1

    def test_partial_outcome(self, make_engine, project_dir):
        def deny_b(src, dst):
            if os.path.basename(src) == "b.txt":
                raise PermissionError(errno.EACCES, "Permission denied")
            shutil.copy2(src, dst)

        for name in ("a.txt", "b.txt", "c.txt"):
            write(project_dir, name, name)
        result, _ = make_engine(copy_func=deny_b).run(["a.txt", "b.txt", "c.txt"])

        assert result.succeeded_count == 2
        assert result.failed_count == 1
        assert result.outcome == OUTCOME_PARTIAL


class TestSecondaryDestination:
    def test_fallback_when_primary_fails(self, make_engine, project_dir, tmp_path):
        secondary = tmp_path / "secondary"
        primary_files = tmp_path / "backups" / "files"

        def primary_broken(src, dst):
            if str(dst).startswith(str(primary_files)):
                raise OSError(errno.EIO, "I/O error")
            shutil.copy2(src, dst)

        write(project_dir, "a.txt", "data")
        result, _ = make_engine(copy_func=primary_broken,
                                secondary_dir=secondary).run(["a.txt"])

        assert (secondary / "files" / "a.txt").read_text() == "data"
        assert result.written_secondary == ["a.txt"]
        assert result.failures == []
        assert result.outcome == OUTCOME_SUCCESS

    def test_mirror_after_primary_success(self, make_engine, project_dir, tmp_path):
        secondary = tmp_path / "secondary"
        engine = make_engine(secondary_dir=secondary)
        write(secondary / "files", "a.txt", "stale")
        write(project_dir, "a.txt", "fresh")

        result, _ = engine.run(["a.txt"])

        assert (engine.config.files_dir / "a.txt").read_text() == "fresh"
        assert (secondary / "files" / "a.txt").read_text() == "fresh"
        archived = list((secondary / "archived").iterdir())
        assert len(archived) == 1 and archived[0].read_text() == "stale"
        assert result.written == ["a.txt"]


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------

class TestEligibility:
    def test_symlinks_are_skipped(self, make_engine, project_dir):
        target = write(project_dir, "real.txt", "real")
        os.symlink(target, project_dir / "link.txt")

        engine = make_engine()
        result, manifest = engine.run(["link.txt", "real.txt"])

        assert result.skipped_symlinks == ["link.txt"]
        assert not (engine.config.files_dir / "link.txt").exists()
        assert "link.txt" not in manifest

    def test_large_files_skipped_when_disabled(self, make_engine, project_dir):
        write(project_dir, "big.bin", "x" * 100)
        write(project_dir, "small.txt", "x")

        engine = make_engine(max_file_size=10, backup_large_files=False)
        result, _ = engine.run(["big.bin", "small.txt"])

        assert result.skipped_large == ["big.bin"]
        assert result.written == ["small.txt"]

    def test_large_files_kept_by_default(self, make_engine, project_dir):
        write(project_dir, "big.bin", "x" * 100)
        result, _ = make_engine(max_file_size=10).run(["big.bin"])
        assert result.written == ["big.bin"]


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

class TestVerification:
    def test_truncated_copy_is_size_mismatch(self, make_engine, project_dir):
        def truncating(src, dst):
            with open(src, "rb") as f:
                data = f.read()
            with open(dst, "wb") as f:
                f.write(data[: len(data) // 2])

        write(project_dir, "a.txt", "0123456789")
        result, _ = make_engine(copy_func=truncating).run(["a.txt"])

        assert [f.error_code for f in result.failures] == ["EFILE002"]
        assert "expected 10, got 5" in result.failures[0].message

    def test_clean_run_has_no_mismatches(self, make_engine, project_dir):
        for i in range(5):
            write(project_dir, f"dir{i}/f{i}.txt", "content" * i)
        result, _ = make_engine().run([f"dir{i}/f{i}.txt" for i in range(5)])
        assert result.failures == []

    def test_manifest_reports_missing(self, tmp_path):
        manifest = BackupManifest({"a.txt": 3})
        failures = manifest.verify(tmp_path)
        assert failures[0].error_code == "EFILE001"

    def test_manifest_persist_and_load(self, tmp_path):
        manifest = BackupManifest({"a.txt": 3, "b/c.txt": 10})
        path = tmp_path / ".checkpoint-manifest.json"
        manifest.persist(path, "demo")

        assert BackupManifest.load(path).entries == manifest.entries


class TestErrorCodes:
    def test_classify_os_error(self):
        assert classify_os_error(OSError(errno.EACCES, "x")) == "permission_denied"
        assert classify_os_error(OSError(errno.ENOSPC, "x")) == "disk_full"
        assert classify_os_error(OSError(errno.ENOENT, "x")) == "file_missing"

    def test_unknown_reason_maps_to_unknown_code(self):
        assert map_error_to_code("something_else") == "EUNK000"
        assert map_error_to_code("EDISK002") == "EDISK002"

    def test_format_includes_fix(self):
        failure = FileFailure.from_reason("a.txt", "disk_full", "No space left")
        text = failure.format()
        assert "EDISK001" in text
        assert get_error_suggestion("EDISK001") in text


# ---------------------------------------------------------------------------
# Archive names
# ---------------------------------------------------------------------------

class TestArchiveNames:
    def test_name_with_pid(self):
        assert archive_name("src/app.py", "20261019_143000", 42) == \
            "src/app.py.20261019_143000_42"

    def test_parse_round_trip(self):
        assert parse_archive_name("src/app.py.20261019_143000_42") == \
            ("src/app.py", "20261019_143000", 42)

    def test_parse_without_pid(self):
        assert parse_archive_name("notes.md.20261019_143000") == \
            ("notes.md", "20261019_143000", None)

    def test_parse_tolerates_encryption_suffix(self):
        assert parse_archive_name(".env.20261019_143000_7.age") == \
            (".env", "20261019_143000", 7)

    def test_parse_rejects_other_names(self):
        assert parse_archive_name("README.md") is None

    def test_archived_version_from_path(self, tmp_path):
        root = tmp_path / "archived"
        path = write(root, "lib/util.py.20261019_143000_9", "abc")
        version = ArchivedVersion.from_path(root, path)
        assert version.original_rel_path == "lib/util.py"
        assert version.size_bytes == 3
        assert version.archived_at == datetime(2026, 10, 19, 14, 30, 0)
