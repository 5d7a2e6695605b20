"""Per-repository sync lock, held across threads and processes.

A second sync on the same repository is rejected rather than queued.
"""

from __future__ import annotations

import os
import threading
from contextlib import contextmanager

from .exceptions import SyncInProgressError

_LOCK_NAME = "gitsync.lock"

# Per-process threading locks, keyed by resolved control directory
_thread_locks: dict[tuple[int, int] | str, threading.Lock] = {}
_thread_locks_guard = threading.Lock()


def _get_thread_lock(control_dir: str) -> threading.Lock:
    real = os.path.realpath(control_dir)
    try:
        st = os.stat(real)
        key: tuple[int, int] | str = (st.st_dev, st.st_ino)
        if st.st_ino == 0:
            key = os.path.normcase(real)
    except OSError:
        key = os.path.normcase(real)
    with _thread_locks_guard:
        if key not in _thread_locks:
            _thread_locks[key] = threading.Lock()
        return _thread_locks[key]


def _lock_path(control_dir: str) -> str:
    if os.path.isdir(control_dir):
        return os.path.join(control_dir, _LOCK_NAME)
    return control_dir + ".lock"


try:
    import fcntl

    def _acquire(fd: int, blocking: bool) -> bool:
        flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
        try:
            fcntl.flock(fd, flags)
        except BlockingIOError:
            return False
        return True

    def _release(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_UN)

except ImportError:
    import msvcrt

    def _acquire(fd: int, blocking: bool) -> bool:
        try:
            msvcrt.locking(fd, msvcrt.LK_LOCK if blocking else msvcrt.LK_NBLCK, 1)
        except OSError:
            return False
        return True

    def _release(fd: int) -> None:
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)


@contextmanager
def repo_lock(control_dir: str, *, blocking: bool = False):
    """Hold the sync lock for the repository whose git dir is *control_dir*.

    Raises:
        SyncInProgressError: If *blocking* is False and the lock is taken.
    """
    tlock = _get_thread_lock(control_dir)
    if not tlock.acquire(blocking):
        raise SyncInProgressError(control_dir)
    try:
        fd = os.open(_lock_path(control_dir), os.O_CREAT | os.O_RDWR | getattr(os, "O_CLOEXEC", 0))
        os.set_inheritable(fd, False)
        try:
            if not _acquire(fd, blocking):
                raise SyncInProgressError(control_dir)
            try:
                yield
            finally:
                _release(fd)
        finally:
            os.close(fd)
    finally:
        tlock.release()
