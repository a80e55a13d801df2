"""
Session lock — non-blocking exclusive ``flock`` over the state directory.

Held for the lifetime of an install or undo session. A second process
fails immediately with SessionLocked instead of queueing behind the
first one.
"""

from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path

from provisioner.core.errors import PermissionDenied, SessionLocked

logger = logging.getLogger(__name__)

LOCK_FILE = ".lock"


class SessionLock:
    """Exclusive advisory lock on ``<state_dir>/.lock``.

    Usable as a context manager::

        with SessionLock(state_dir):
            ...
    """

    def __init__(self, state_dir: Path):
        self.path = state_dir / LOCK_FILE
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock or raise SessionLocked without waiting."""
        if self._fd is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        except PermissionError as e:
            raise PermissionDenied(str(self.path), "Cannot open lock file") from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = _read_holder(fd)
            os.close(fd)
            raise SessionLocked(str(self.path), holder) from None

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug("Acquired session lock %s", self.path)

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug("Released session lock %s", self.path)

    def __enter__(self) -> SessionLock:
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


def _read_holder(fd: int) -> str:
    try:
        os.lseek(fd, 0, os.SEEK_SET)
        return os.read(fd, 32).decode(errors="replace").strip()
    except OSError:
        return ""
