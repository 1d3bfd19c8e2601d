"""
Per-channel lock for farm_ipc.

Every channel address has one lock file.  A socket keeps the file open
for its whole life and holds the lock while it moves the head or tail
pointer of the ring buffer, or while it releases its mapping.  The lock
excludes other processes through ``fcntl.flock`` (``msvcrt.locking`` on
Windows) and other threads of this process through a
:class:`threading.Lock`, so two sockets on one address in the same
process also serialise.
"""

import os
import sys
import time
import tempfile
import threading
import logging
from .exceptions import IPCTimeoutError, IPCClosedError

logger = logging.getLogger("farmipc.sync")

_IS_WINDOWS = sys.platform == "win32"

if not _IS_WINDOWS:
    import fcntl
else:
    import msvcrt

_RETRY_INTERVAL = 0.000_050

# One in-process lock per lock file, shared by every ChannelLock on it.
_thread_locks: dict[str, threading.Lock] = {}
_thread_locks_guard = threading.Lock()


def lock_path(name: str) -> str:
    """Return the lock file guarding the segment *name*."""
    safe = name.replace("/", "_").replace("\\", "_")
    return os.path.join(tempfile.gettempdir(), f"{safe}.lock")


def _thread_lock(path: str) -> threading.Lock:
    with _thread_locks_guard:
        return _thread_locks.setdefault(path, threading.Lock())


class ChannelLock:
    """Exclusive access to one channel's ring buffer.

    Usage::

        lock = ChannelLock(segment_name("farm-state"))
        with lock:
            write_message(shm, frame)
        lock.close()

    Args:
        name: Segment name of the channel.
    """

    def __init__(self, name: str):
        self._path = lock_path(name)
        self._local = _thread_lock(self._path)
        self._fd: int | None = os.open(self._path, os.O_RDWR | os.O_CREAT)

    @property
    def path(self) -> str:
        return self._path

    @property
    def closed(self) -> bool:
        return self._fd is None

    def acquire(self, timeout: float | None = None) -> None:
        """Take the lock.  ``None`` waits as long as it takes.

        Raises:
            IPCTimeoutError: If *timeout* seconds passed first.
            IPCClosedError:  If the lock was closed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        if not self._local.acquire(timeout=-1 if timeout is None else timeout):
            raise IPCTimeoutError(f"Lock '{self._path}' is held by another thread")
        try:
            if self._fd is None:
                raise IPCClosedError(f"Lock '{self._path}' is closed")
            self._lock_file(deadline)
        except BaseException:
            self._local.release()
            raise

    def release(self) -> None:
        try:
            if self._fd is not None:
                if _IS_WINDOWS:
                    os.lseek(self._fd, 0, os.SEEK_SET)
                    msvcrt.locking(self._fd, msvcrt.LK_UNLCK, 1)
                else:
                    fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            self._local.release()

    def close(self) -> None:
        """Close the lock file.  Waits for the current holder, if any."""
        with self._local:
            if self._fd is not None:
                os.close(self._fd)
                self._fd = None
                logger.debug("Closed lock file '%s'", self._path)

    def _lock_file(self, deadline: float | None) -> None:
        if not _IS_WINDOWS and deadline is None:
            fcntl.flock(self._fd, fcntl.LOCK_EX)
            return
        while True:
            try:
                if _IS_WINDOWS:
                    os.lseek(self._fd, 0, os.SEEK_SET)
                    msvcrt.locking(self._fd, msvcrt.LK_NBLCK, 1)
                else:
                    fcntl.flock(self._fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except OSError:
                pass
            if deadline is not None and time.monotonic() >= deadline:
                raise IPCTimeoutError(
                    f"Lock '{self._path}' is held by another process"
                )
            time.sleep(_RETRY_INTERVAL)

    def __enter__(self) -> "ChannelLock":
        self.acquire()
        return self

    def __exit__(self, *_) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"ChannelLock(path={self._path!r}, closed={self.closed})"
