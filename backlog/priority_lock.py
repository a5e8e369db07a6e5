"""
Priority Lock
=============

Cross-process lock guarding the priority counter.

New features are created with ``max(priority) + 1`` and skipped features are
moved to the end of the queue the same way. Reading the maximum and writing
the new value has to be atomic across every process working on the backlog
(several agents run their own MCP server against the same database), so the
sequence runs inside this lock.

The lock is a marker file created with O_CREAT | O_EXCL holding the PID of the
holder. Waiters poll until the marker disappears. A marker left behind by a
crashed holder is reclaimed, either as soon as the recorded PID no longer
exists or once the marker is older than the timeout. Reclaiming happens under
a second ``<path>.reclaim`` marker, so only one waiter at a time may remove a
marker it did not create.

Usage:
    with priority_lock():
        next_priority = get_next_priority(session)
        ...
        session.commit()
"""

import logging
import os
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

import psutil

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = "feature-priority.lock"

# Configuration from environment
DEFAULT_LOCK_PATH = Path(
    os.environ.get("FEATURE_LOCK_PATH", Path(tempfile.gettempdir()) / LOCK_FILE_NAME)
)
LOCK_TIMEOUT = float(os.environ.get("FEATURE_LOCK_TIMEOUT", "5.0"))  # seconds
LOCK_POLL_INTERVAL = 0.05  # seconds between attempts


class PriorityLockError(Exception):
    """Base class for priority lock failures."""


class PriorityLockTimeout(PriorityLockError, TimeoutError):
    """The lock could not be acquired before the timeout and was not stale."""


class PriorityLock:
    """Marker-file lock shared by every process using the same path.

    An instance holds no per-acquisition state, so one instance can be shared
    between threads; the marker file is the only source of truth.
    """

    def __init__(
        self,
        path: Union[str, Path, None] = None,
        timeout: float = LOCK_TIMEOUT,
        poll_interval: float = LOCK_POLL_INTERVAL,
    ):
        self.path = Path(path) if path is not None else DEFAULT_LOCK_PATH
        self.timeout = timeout
        self.poll_interval = poll_interval

    def acquire(self) -> bool:
        """Try to take the lock, waiting up to ``timeout`` seconds.

        Returns:
            True if the lock was acquired, False if a live holder kept it for
            the whole timeout.
        """
        start = time.monotonic()
        while True:
            if self._try_create():
                return True

            timed_out = time.monotonic() - start >= self.timeout
            if self._is_stale(check_age=timed_out):
                if self._reclaim(check_age=timed_out):
                    continue
            elif timed_out:
                if self._marker_identity() is None:
                    # Released between our attempt and the check
                    continue
                logger.info("Timed out waiting for priority lock %s", self.path)
                return False

            time.sleep(self.poll_interval)

    def release(self) -> None:
        """Remove the marker. Safe to call when the lock is not held."""
        _unlink(self.path)

    def __enter__(self) -> "PriorityLock":
        if not self.acquire():
            raise PriorityLockTimeout(
                f"Failed to acquire priority lock {self.path}: timeout after {self.timeout}s"
            )
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    @property
    def guard_path(self) -> Path:
        return self.path.with_name(self.path.name + ".reclaim")

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            os.write(fd, str(os.getpid()).encode())
        finally:
            os.close(fd)
        return True

    def _holder_pid(self) -> Optional[int]:
        try:
            content = self.path.read_text().strip()
        except FileNotFoundError:
            return None
        # Empty while the holder is still writing its PID
        return int(content) if content.isdigit() else None

    def _holder_is_dead(self) -> bool:
        pid = self._holder_pid()
        if pid is None or pid == os.getpid():
            return False
        return not psutil.pid_exists(pid)

    def _is_stale(self, check_age: bool) -> bool:
        if self._holder_is_dead():
            return True
        if not check_age:
            return False
        age = _file_age(self.path)
        return age is not None and age > self.timeout

    def _marker_identity(self) -> Optional[tuple[int, int]]:
        try:
            st = self.path.stat()
        except FileNotFoundError:
            return None
        return st.st_ino, st.st_mtime_ns

    def _reclaim(self, check_age: bool) -> bool:
        """Remove a stale marker while holding the reclaim guard.

        Staleness is decided again under the guard, so a waiter that saw the
        old marker cannot remove the one created by whoever reclaimed first.

        Returns:
            True if the marker was removed.
        """
        if not self._take_guard():
            return False
        try:
            seen = self._marker_identity()
            if seen is None or not self._is_stale(check_age):
                return False
            if self._marker_identity() != seen:
                return False
            _unlink(self.path)
            logger.warning("Reclaimed stale priority lock %s", self.path)
            return True
        finally:
            _unlink(self.guard_path)

    def _take_guard(self) -> bool:
        try:
            fd = os.open(self.guard_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            # A reclaimer that died inside its few statements leaves the guard behind
            age = _file_age(self.guard_path)
            if age is not None and age > self.timeout:
                logger.warning("Removing abandoned reclaim guard %s", self.guard_path)
                _unlink(self.guard_path)
            return False
        os.close(fd)
        return True


def _file_age(path: Path) -> Optional[float]:
    try:
        return time.time() - path.stat().st_mtime
    except FileNotFoundError:
        return None


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


# System-wide lock used by the feature tools
_default_lock: Optional[PriorityLock] = None


def get_priority_lock() -> PriorityLock:
    """Return the system-wide priority lock."""
    global _default_lock
    if _default_lock is None:
        _default_lock = PriorityLock()
    return _default_lock


def lock_priority() -> bool:
    """Acquire the system-wide priority lock. Pair with unlock_priority()."""
    return get_priority_lock().acquire()


def unlock_priority() -> None:
    """Release the system-wide priority lock."""
    get_priority_lock().release()


@contextmanager
def priority_lock(lock: Optional[PriorityLock] = None) -> Iterator[PriorityLock]:
    """Hold the priority lock for the duration of the block.

    Raises:
        PriorityLockTimeout: If the lock could not be acquired.
    """
    with lock or get_priority_lock() as held:
        yield held
