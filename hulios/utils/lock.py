#!/usr/bin/env python3
import os
import logging
import contextlib

import lockfile
from lockfile.pidlockfile import PIDLockFile

from hulios.core import constants
from hulios.core.errors import TransitionInProgressError


def _pid_alive(pid):
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


class TransitionLock:
    """Cross-process lock held for the whole of one transition.

    The lock file stores the owner's pid, so a lock left behind by a process
    that died mid-transition is broken instead of blocking forever.
    """

    def __init__(self, path=constants.LOCK_FILE, timeout=constants.LOCK_TIMEOUT_SECONDS):
        self.path = path
        self.timeout = timeout
        self._lock = PIDLockFile(path)

    def _break_if_stale(self):
        pid = self._lock.read_pid()
        if pid is not None and pid != os.getpid() and not _pid_alive(pid):
            logging.warning(f"Breaking stale transition lock held by dead PID {pid}")
            with contextlib.suppress(OSError):
                self._lock.break_lock()

    def acquire(self):
        lock_dir = os.path.dirname(self.path)
        if lock_dir:
            os.makedirs(lock_dir, exist_ok=True)
        self._break_if_stale()
        try:
            self._lock.acquire(timeout=self.timeout)
        except lockfile.LockError as e:
            owner = self._lock.read_pid()
            raise TransitionInProgressError(
                f"Another HULIOS transition is in progress (PID: {owner or 'unknown'})") from e
        logging.debug(f"Acquired transition lock {self.path}")

    def release(self):
        if self._lock.i_am_locking():
            self._lock.release()
            logging.debug(f"Released transition lock {self.path}")

    def is_locked(self):
        return self._lock.is_locked()

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
