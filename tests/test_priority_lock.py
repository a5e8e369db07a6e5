"""Tests for backlog.priority_lock - cross-process priority counter lock."""

from __future__ import annotations

import os
import subprocess
import sys
import threading
import time
from pathlib import Path

import pytest

from backlog import priority_lock as priority_lock_module
from backlog.priority_lock import PriorityLock, PriorityLockTimeout

REPO_ROOT = Path(__file__).resolve().parent.parent

CHILD_SCRIPT = """
import sys
from pathlib import Path

from backlog.priority_lock import PriorityLock

lock = PriorityLock(sys.argv[1], timeout=30, poll_interval=0.001)
counter = Path(sys.argv[2])
for _ in range(int(sys.argv[3])):
    with lock:
        value = int(counter.read_text()) + 1
        counter.write_text(str(value))
        with open(sys.argv[4], "a") as out:
            out.write(f"{value}\\n")
"""


def _hold_fresh_marker(path: Path) -> None:
    """Create a marker owned by this (live) process that stays younger than any timeout."""
    path.write_text(str(os.getpid()))
    future = time.time() + 3600
    os.utime(path, (future, future))


@pytest.fixture
def lock_path(tmp_path: Path) -> Path:
    return tmp_path / "feature-priority.lock"


class TestAcquireRelease:
    """Basic marker lifecycle."""

    def test_acquire_creates_marker_with_pid(self, lock_path: Path) -> None:
        lock = PriorityLock(lock_path, timeout=1.0)
        assert lock.acquire()
        assert lock_path.read_text() == str(os.getpid())
        lock.release()
        assert not lock_path.exists()

    def test_release_without_marker_is_noop(self, lock_path: Path) -> None:
        PriorityLock(lock_path).release()
        assert not lock_path.exists()

    def test_release_removes_foreign_marker(self, lock_path: Path) -> None:
        _hold_fresh_marker(lock_path)
        PriorityLock(lock_path).release()
        assert not lock_path.exists()

    def test_reacquire_after_release(self, lock_path: Path) -> None:
        lock = PriorityLock(lock_path, timeout=0.5)
        for _ in range(3):
            assert lock.acquire()
            lock.release()


class TestContention:
    """Bounded waiting and stale-holder recovery."""

    def test_live_holder_times_out(self, lock_path: Path) -> None:
        _hold_fresh_marker(lock_path)
        lock = PriorityLock(lock_path, timeout=0.2, poll_interval=0.01)

        start = time.monotonic()
        assert not lock.acquire()
        assert time.monotonic() - start >= 0.2
        assert lock_path.exists()

    def test_context_manager_raises_on_timeout(self, lock_path: Path) -> None:
        _hold_fresh_marker(lock_path)
        lock = PriorityLock(lock_path, timeout=0.1, poll_interval=0.01)
        with pytest.raises(PriorityLockTimeout):
            with lock:
                pytest.fail("body must not run without the lock")

    def test_timeout_is_a_timeout_error(self) -> None:
        assert issubclass(PriorityLockTimeout, TimeoutError)

    def test_stale_marker_reclaimed(self, lock_path: Path) -> None:
        lock_path.write_text(str(os.getpid()))
        old = time.time() - 600
        os.utime(lock_path, (old, old))

        lock = PriorityLock(lock_path, timeout=0.2, poll_interval=0.01)
        assert lock.acquire()
        lock.release()

    def test_empty_stale_marker_reclaimed(self, lock_path: Path) -> None:
        lock_path.touch()
        old = time.time() - 600
        os.utime(lock_path, (old, old))

        assert PriorityLock(lock_path, timeout=0.1, poll_interval=0.01).acquire()

    def test_dead_holder_reclaimed_without_waiting(self, lock_path: Path, monkeypatch) -> None:
        monkeypatch.setattr(priority_lock_module.psutil, "pid_exists", lambda pid: False)
        lock_path.write_text("4242")

        lock = PriorityLock(lock_path, timeout=5.0, poll_interval=0.01)
        start = time.monotonic()
        assert lock.acquire()
        assert time.monotonic() - start < 1.0
        assert lock_path.read_text() == str(os.getpid())

    def test_reclaim_waits_for_guard(self, lock_path: Path, monkeypatch) -> None:
        monkeypatch.setattr(priority_lock_module.psutil, "pid_exists", lambda pid: False)
        lock_path.write_text("4242")
        lock = PriorityLock(lock_path, timeout=5.0, poll_interval=0.01)
        lock.guard_path.touch()

        assert not lock._reclaim(check_age=False)
        assert lock_path.read_text() == "4242"

        lock.guard_path.unlink()
        assert lock._reclaim(check_age=False)
        assert not lock_path.exists()
        assert not lock.guard_path.exists()

    def test_abandoned_guard_removed(self, lock_path: Path) -> None:
        lock = PriorityLock(lock_path, timeout=0.1)
        lock.guard_path.touch()
        old = time.time() - 600
        os.utime(lock.guard_path, (old, old))

        assert not lock._take_guard()
        assert not lock.guard_path.exists()
        assert lock._take_guard()

    def test_reclaim_leaves_replacement_marker(self, lock_path: Path, monkeypatch) -> None:
        dead_pid = 4242
        monkeypatch.setattr(priority_lock_module.psutil, "pid_exists", lambda pid: pid != dead_pid)
        lock_path.write_text(str(dead_pid))
        first = PriorityLock(lock_path, timeout=5.0)
        late = PriorityLock(lock_path, timeout=5.0)

        # Both waiters saw the dead holder; the first one reclaims and takes over
        assert late._is_stale(check_age=False)
        assert first._reclaim(check_age=False)
        assert first._try_create()

        assert not late._reclaim(check_age=False)
        assert lock_path.read_text() == str(os.getpid())

    def test_released_on_exception(self, lock_path: Path) -> None:
        lock = PriorityLock(lock_path, timeout=1.0)
        with pytest.raises(ValueError):
            with lock:
                assert lock_path.exists()
                raise ValueError("boom")
        assert not lock_path.exists()


class TestMutualExclusion:
    """Read-then-increment sequences never hand out the same value."""

    def test_threads_with_separate_instances(self, tmp_path: Path, lock_path: Path) -> None:
        counter = tmp_path / "counter"
        counter.write_text("0")
        seen: list[int] = []
        errors: list[BaseException] = []

        def worker() -> None:
            lock = PriorityLock(lock_path, timeout=10.0, poll_interval=0.001)
            try:
                for _ in range(25):
                    with lock:
                        value = int(counter.read_text()) + 1
                        time.sleep(0.0005)
                        counter.write_text(str(value))
                        seen.append(value)
            except BaseException as e:  # surfaced by the assertion below
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sorted(seen) == list(range(1, 101))
        assert not lock_path.exists()

    def test_concurrent_reclaim_of_dead_holder(self, lock_path: Path, monkeypatch) -> None:
        dead_pid = 999999

        def slow_pid_exists(pid: int) -> bool:
            time.sleep(0.005)
            return pid != dead_pid

        monkeypatch.setattr(priority_lock_module.psutil, "pid_exists", slow_pid_exists)
        holders = 0
        max_holders = 0
        count_lock = threading.Lock()
        errors: list[BaseException] = []

        def worker(barrier: threading.Barrier) -> None:
            nonlocal holders, max_holders
            lock = PriorityLock(lock_path, timeout=10.0, poll_interval=0.001)
            try:
                barrier.wait()
                with lock:
                    with count_lock:
                        holders += 1
                        max_holders = max(max_holders, holders)
                    time.sleep(0.01)
                    with count_lock:
                        holders -= 1
            except BaseException as e:  # surfaced by the assertion below
                errors.append(e)

        for _ in range(20):
            lock_path.write_text(str(dead_pid))
            barrier = threading.Barrier(4)
            threads = [threading.Thread(target=worker, args=(barrier,)) for _ in range(4)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        assert errors == []
        assert max_holders == 1
        assert not lock_path.exists()

    def test_separate_processes(self, tmp_path: Path, lock_path: Path) -> None:
        counter = tmp_path / "counter"
        counter.write_text("0")
        results = tmp_path / "results"
        env = {**os.environ, "PYTHONPATH": str(REPO_ROOT)}

        procs = [
            subprocess.Popen(
                [sys.executable, "-c", CHILD_SCRIPT, str(lock_path), str(counter), "20", str(results)],
                env=env,
            )
            for _ in range(2)
        ]
        for proc in procs:
            assert proc.wait(timeout=60) == 0

        values = [int(line) for line in results.read_text().split()]
        assert sorted(values) == list(range(1, 41))
        assert counter.read_text() == "40"


class TestModuleLevelLock:
    """lock_priority() / unlock_priority() / priority_lock() on the shared lock."""

    @pytest.fixture(autouse=True)
    def shared_lock(self, lock_path: Path, monkeypatch) -> PriorityLock:
        lock = PriorityLock(lock_path, timeout=0.2, poll_interval=0.01)
        monkeypatch.setattr(priority_lock_module, "_default_lock", lock)
        return lock

    def test_get_priority_lock_returns_shared_instance(self, shared_lock: PriorityLock) -> None:
        assert priority_lock_module.get_priority_lock() is shared_lock

    def test_lock_and_unlock(self, lock_path: Path) -> None:
        assert priority_lock_module.lock_priority()
        assert lock_path.exists()
        priority_lock_module.unlock_priority()
        assert not lock_path.exists()

    def test_lock_reports_failure_as_value(self, lock_path: Path) -> None:
        _hold_fresh_marker(lock_path)
        assert priority_lock_module.lock_priority() is False

    def test_scoped_lock(self, lock_path: Path) -> None:
        with priority_lock_module.priority_lock() as held:
            assert held.path == lock_path
            assert lock_path.exists()
        assert not lock_path.exists()

    def test_scoped_lock_with_explicit_instance(self, tmp_path: Path) -> None:
        other = PriorityLock(tmp_path / "other.lock", timeout=0.2)
        with priority_lock_module.priority_lock(other):
            assert other.path.exists()
        assert not other.path.exists()
