"""Advisory file locks so that concurrent splits never share chunk files."""

from __future__ import annotations

import fcntl
import json
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

from mbox_ingestor.core.exceptions import LockTimeoutError

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"


def _same_file(path: Path, handle: TextIO) -> bool:
    """True if ``path`` still names the file behind ``handle``."""
    try:
        return os.stat(path).st_ino == os.fstat(handle.fileno()).st_ino
    except FileNotFoundError:
        return False


class FileLock:
    """Exclusive lock on ``<path>.lock`` held with ``fcntl.flock``.

    The kernel drops a flock when its holder exits, so a lock file left behind
    by a crashed process never blocks the next holder. Leftover files are
    removed by :func:`cleanup_stale_locks`.

    Locks are per open file, so two FileLock objects in one process exclude
    each other just as two processes do.
    """

    def __init__(self, path: Path, timeout: float = 30.0, retry_interval: float = 0.1) -> None:
        self.path = path
        self.lock_path = path.with_name(path.name + LOCK_SUFFIX)
        self._timeout = timeout
        self._retry_interval = retry_interval
        self._handle: TextIO | None = None

    @property
    def is_locked(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        """Block until the lock is held.

        Raises:
            LockTimeoutError: If another holder keeps the lock past the timeout.
        """
        if self._handle is not None:
            raise RuntimeError(f"Lock {self.lock_path} is already held")

        deadline = time.monotonic() + self._timeout
        while (handle := self._try_lock()) is None:
            if time.monotonic() >= deadline:
                raise LockTimeoutError(
                    f"Failed to acquire lock on {self.lock_path} within {self._timeout} seconds"
                )
            time.sleep(self._retry_interval)

        handle.truncate(0)
        json.dump({"pid": os.getpid(), "acquired_at": datetime.now(UTC).isoformat()}, handle)
        handle.flush()
        self._handle = handle
        logger.debug("Acquired lock on %s", self.lock_path)

    def _try_lock(self) -> TextIO | None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        # Append mode so a file held by someone else is never truncated
        handle = self.lock_path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            handle.close()
            return None
        # The previous holder unlinks on release; a lock on the old inode is worthless
        if not _same_file(self.lock_path, handle):
            handle.close()
            return None
        return handle

    def release(self) -> None:
        if self._handle is None:
            logger.warning("Attempted to release lock that was not acquired: %s", self.lock_path)
            return
        try:
            self.lock_path.unlink(missing_ok=True)
        finally:
            fcntl.flock(self._handle, fcntl.LOCK_UN)
            self._handle.close()
            self._handle = None
        logger.debug("Released lock on %s", self.lock_path)

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(self, *args: object) -> None:
        self.release()


@contextmanager
def file_lock(path: Path, timeout: float = 30.0, retry_interval: float = 0.1) -> Iterator[Path]:
    """Hold an exclusive lock on ``path`` for the duration of the block."""
    with FileLock(path, timeout=timeout, retry_interval=retry_interval) as lock:
        yield lock.lock_path


def cleanup_stale_locks(directory: Path, stale_after: float) -> int:
    """Remove lock files nobody holds that are older than ``stale_after`` seconds.

    Returns:
        Number of lock files removed.
    """
    if not directory.is_dir():
        return 0

    cutoff = time.time() - stale_after
    removed = 0
    for lock_path in sorted(directory.glob(f"*{LOCK_SUFFIX}")):
        try:
            if lock_path.stat().st_mtime > cutoff:
                continue
            with lock_path.open("a+", encoding="utf-8") as handle:
                try:
                    fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except OSError:
                    logger.debug("Lock %s is old but still held", lock_path)
                    continue
                if not _same_file(lock_path, handle):
                    continue
                lock_path.unlink()
        except FileNotFoundError:
            continue
        logger.warning("Removed stale lock %s", lock_path)
        removed += 1

    return removed
