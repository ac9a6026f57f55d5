"""Tests for the cross-process backup lock.

Covers:
- Acquire / release and the on-disk layout
- Contention with a live holder
- Stale lock reclaim (dead holder, missing pid file)
- Idempotent release, release after reclaim by someone else
- Scoped hold() raising LockContention
- Single winner among concurrent processes
"""

import multiprocessing
import os
import sys
import time

import pytest

from checkpoint.lock.lock_manager import (
    PID_FILENAME,
    LockContention,
    LockManager,
    pid_alive,
)


@pytest.fixture
def lock_root(tmp_path):
    return tmp_path / "locks"


def always_alive(pid):
    return True


def never_alive(pid):
    return False


# ---------------------------------------------------------------------------
# Basic acquire / release
# ---------------------------------------------------------------------------

class TestAcquireRelease:
    def test_acquire_creates_lock_dir_with_pid(self, lock_root):
        mgr = LockManager(lock_root, pid=1234)
        handle = mgr.acquire("demo")

        assert handle is not None
        assert handle.holder_pid == 1234
        assert (lock_root / "demo.lock" / PID_FILENAME).read_text().strip() == "1234"

    def test_release_removes_lock_dir(self, lock_root):
        mgr = LockManager(lock_root)
        handle = mgr.acquire("demo")
        mgr.release(handle)

        assert not (lock_root / "demo.lock").exists()
        assert handle.released

    def test_release_is_idempotent(self, lock_root):
        mgr = LockManager(lock_root)
        handle = mgr.acquire("demo")
        mgr.release(handle)
        mgr.release(handle)
        mgr.release(None)
        assert not (lock_root / "demo.lock").exists()

    def test_no_temp_files_left_behind(self, lock_root):
        mgr = LockManager(lock_root)
        mgr.release(mgr.acquire("demo"))
        LockManager(lock_root, is_alive=always_alive).acquire("other")
        LockManager(lock_root, is_alive=always_alive).acquire("other")
        leftovers = [p.name for p in lock_root.iterdir() if p.name.startswith(".pid.")]
        assert leftovers == []

    def test_projects_are_independent(self, lock_root):
        mgr = LockManager(lock_root)
        assert mgr.acquire("one") is not None
        assert mgr.acquire("two") is not None


# ---------------------------------------------------------------------------
# Contention and stale locks
# ---------------------------------------------------------------------------

class TestContention:
    def test_live_holder_means_contention(self, lock_root):
        LockManager(lock_root, pid=1111).acquire("demo")
        other = LockManager(lock_root, pid=2222, is_alive=always_alive)

        assert other.acquire("demo") is None
        assert other.holder_pid("demo") == 1111

    def test_current_process_is_alive(self):
        assert pid_alive(os.getpid())
        assert not pid_alive(-1)

    def test_dead_holder_is_reclaimed(self, lock_root):
        LockManager(lock_root, pid=1111).acquire("demo")
        other = LockManager(lock_root, pid=2222, is_alive=never_alive)

        handle = other.acquire("demo")
        assert handle is not None
        assert (lock_root / "demo.lock" / PID_FILENAME).read_text().strip() == "2222"

    def test_missing_pid_file_is_reclaimed_after_settle(self, lock_root):
        (lock_root / "demo.lock").mkdir(parents=True)
        mgr = LockManager(lock_root, pid=3333, settle_delay=0.01)

        handle = mgr.acquire("demo")
        assert handle is not None
        assert handle.holder_pid == 3333

    def test_garbage_pid_file_is_stale(self, lock_root):
        lock_dir = lock_root / "demo.lock"
        lock_dir.mkdir(parents=True)
        (lock_dir / PID_FILENAME).write_text("not-a-pid\n")

        assert LockManager(lock_root, settle_delay=0).acquire("demo") is not None

    def test_release_leaves_lock_reclaimed_by_another_pid(self, lock_root):
        first = LockManager(lock_root, pid=1111)
        handle = first.acquire("demo")
        # 1111 considered dead by the second process
        LockManager(lock_root, pid=2222, is_alive=never_alive).acquire("demo")

        first.release(handle)
        assert (lock_root / "demo.lock" / PID_FILENAME).read_text().strip() == "2222"


class TestHold:
    def test_hold_releases_on_exit(self, lock_root):
        mgr = LockManager(lock_root)
        with mgr.hold("demo") as handle:
            assert handle.lock_path.exists()
        assert not handle.lock_path.exists()

    def test_hold_releases_on_exception(self, lock_root):
        mgr = LockManager(lock_root)
        with pytest.raises(RuntimeError):
            with mgr.hold("demo"):
                raise RuntimeError("boom")
        assert not (lock_root / "demo.lock").exists()

    def test_hold_raises_contention(self, lock_root):
        LockManager(lock_root, pid=1111).acquire("demo")
        other = LockManager(lock_root, pid=2222, is_alive=always_alive)

        with pytest.raises(LockContention) as excinfo:
            with other.hold("demo"):
                pass
        assert excinfo.value.holder_pid == 1111
        # Contention must not remove the holder's lock
        assert (lock_root / "demo.lock").exists()


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

def _contend(lock_root, barrier, results):
    mgr = LockManager(lock_root)
    barrier.wait()
    handle = mgr.acquire("demo")
    results.put(handle is not None)
    if handle is not None:
        # Hold long enough for every contender to try
        time.sleep(1.0)
        mgr.release(handle)


@pytest.mark.skipif(sys.platform == "win32", reason="requires fork")
class TestConcurrentProcesses:
    def test_single_winner(self, lock_root):
        ctx = multiprocessing.get_context("fork")
        n = 8
        barrier = ctx.Barrier(n)
        results = ctx.Queue()
        procs = [ctx.Process(target=_contend, args=(lock_root, barrier, results))
                 for _ in range(n)]
        for p in procs:
            p.start()
        outcomes = [results.get(timeout=10) for _ in range(n)]
        for p in procs:
            p.join(timeout=10)

        assert outcomes.count(True) == 1
        assert outcomes.count(False) == n - 1
        assert not (lock_root / "demo.lock").exists()
