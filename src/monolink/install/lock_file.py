"""Inter-process advisory locks guarding shared install folders."""

from __future__ import annotations

import logging
import os
import sys
import time
from typing import IO, Optional

from monolink.common.filesystem import ensure_folder
from monolink.constants import Constants
from monolink.errors import LockContention

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)


def _try_lock(fh: IO[str]) -> bool:
    try:
        if sys.platform == "win32":
            fh.seek(0)
            msvcrt.locking(fh.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        return False
    return True


def _unlock(fh: IO[str]) -> None:
    if sys.platform == "win32":
        fh.seek(0)
        msvcrt.locking(fh.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


class LockFile:
    """An exclusive lock on ``<folder>/<resource>.lock``.

    The holder writes its pid into the file and truncates it on release, so
    a non-empty file found right after acquiring means the previous holder
    died mid-operation. That is reported as :attr:`dirty_when_acquired`.

    Use :meth:`acquire` or the context manager protocol::

        with LockFile.acquire(folder, "pnpm-8.15.0") as lock:
            if lock.dirty_when_acquired:
                ...
    """

    def __init__(self, path: str, handle: IO[str], dirty_when_acquired: bool) -> None:
        self.path = path
        self.dirty_when_acquired = dirty_when_acquired
        self._handle: Optional[IO[str]] = handle

    @classmethod
    def acquire(
        cls,
        folder: str,
        resource_name: str,
        timeout: Optional[float] = None,
        poll_interval: float = Constants.LOCK_POLL_INTERVAL_SEC,
    ) -> "LockFile":
        """Block until the lock is held.

        Args:
            folder: Folder holding the lock file; created if missing.
            resource_name: Name of the guarded resource.
            timeout: Seconds to wait before giving up; None waits forever.
            poll_interval: Seconds between attempts.

        Raises:
            LockContention: ``timeout`` elapsed while another process held the lock.
        """
        ensure_folder(folder)
        path = os.path.join(folder, f"{resource_name}.lock")
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        handle = os.fdopen(fd, "r+", encoding="utf-8")

        start = time.monotonic()
        waiting_logged = False
        while not _try_lock(handle):
            if timeout is not None and (time.monotonic() - start) >= timeout:
                handle.close()
                raise LockContention(f"Could not acquire lock on {path} within {timeout}s")
            if not waiting_logged:
                logger.info("Waiting for another process to release %s", path)
                waiting_logged = True
            time.sleep(poll_interval)

        handle.seek(0)
        previous_owner = handle.read().strip()
        dirty = bool(previous_owner)
        if dirty:
            logger.debug("Lock %s was left behind by process %s", path, previous_owner)

        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        return cls(path, handle, dirty)

    @property
    def is_released(self) -> bool:
        return self._handle is None

    def release(self) -> None:
        """Clear the owner record and unlock; safe to call twice."""
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            handle.seek(0)
            handle.truncate()
            handle.flush()
            _unlock(handle)
        finally:
            handle.close()

    def __enter__(self) -> "LockFile":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
