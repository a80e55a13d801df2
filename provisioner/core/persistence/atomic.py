"""
Atomic file writes — the one persistence primitive for state and ledger.

Every write goes: free-space check → temp file in the target directory
→ fsync(file) → rename over target → fsync(directory). A crash at any
point leaves the target either fully old or fully new; the temp file is
removed on every failure path, including KeyboardInterrupt.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import tempfile
from pathlib import Path

from provisioner.core.errors import DiskFull, PermissionDenied, WriteFailed

logger = logging.getLogger(__name__)

MIN_FREE_BYTES = 1024 * 1024

_DISK_FULL_ERRNOS = (errno.ENOSPC, errno.EDQUOT)
_PERMISSION_ERRNOS = (errno.EACCES, errno.EPERM, errno.EROFS)


def fsync_directory(directory: Path) -> None:
    """Flush a directory entry so a completed rename survives power loss."""
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def check_free_space(directory: Path, min_free_bytes: int = MIN_FREE_BYTES) -> None:
    """Raise DiskFull if *directory* has less than *min_free_bytes* free."""
    try:
        free = shutil.disk_usage(directory).free
    except OSError as e:
        raise WriteFailed(str(directory), f"Cannot stat filesystem ({e})") from e
    if free < min_free_bytes:
        raise DiskFull(
            str(directory),
            f"Only {free // 1024} KiB free, need {min_free_bytes // 1024} KiB",
        )


def classify_os_error(path: Path, exc: OSError) -> WriteFailed | DiskFull | PermissionDenied:
    if exc.errno in _DISK_FULL_ERRNOS:
        return DiskFull(str(path), f"Disk full ({exc.strerror})")
    if isinstance(exc, PermissionError) or exc.errno in _PERMISSION_ERRNOS:
        return PermissionDenied(str(path), f"Permission denied ({exc.strerror})")
    return WriteFailed(str(path), f"Write failed ({exc})")


def write_atomic(
    path: Path,
    content: str | bytes,
    *,
    mode: int = 0o600,
    min_free_bytes: int = MIN_FREE_BYTES,
) -> None:
    """Atomically replace *path* with *content*.

    Args:
        path: Target file. Its parent directory must already exist.
        content: Text (written as UTF-8) or bytes.
        mode: Permission bits for the new file.
        min_free_bytes: Required free space in the target directory.

    Raises:
        DiskFull: Free-space precheck failed or ENOSPC during write.
        PermissionDenied: Directory or file not writable.
        WriteFailed: Any other I/O failure. The original file is untouched.
    """
    data = content.encode("utf-8") if isinstance(content, str) else content
    directory = path.parent

    if not directory.is_dir():
        raise WriteFailed(str(path), "Target directory does not exist")
    if not os.access(directory, os.W_OK):
        raise PermissionDenied(str(directory), "Directory is not writable")
    check_free_space(directory, min_free_bytes)

    try:
        fd, tmp_name = tempfile.mkstemp(
            dir=directory,
            prefix=f".{path.name}.",
            suffix=".tmp",
        )
    except OSError as e:
        raise classify_os_error(path, e) from e

    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        logger.error("Atomic write to %s failed: %s", path, e)
        raise classify_os_error(path, e) from e
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise

    try:
        fsync_directory(directory)
    except OSError as e:
        # The rename already happened; only durability across power loss is in doubt.
        logger.warning("Could not fsync directory %s: %s", directory, e)

    logger.debug("Wrote %d bytes to %s", len(data), path)


def append_line_atomic(
    path: Path,
    line: str,
    *,
    mode: int = 0o600,
    min_free_bytes: int = MIN_FREE_BYTES,
) -> None:
    """Append one line to *path* by rewriting it atomically.

    The existing content is copied into the temp file together with the
    new line, so a torn append can never be observed.
    """
    existing = b""
    if path.is_file():
        try:
            existing = path.read_bytes()
        except OSError as e:
            raise classify_os_error(path, e) from e
        if existing and not existing.endswith(b"\n"):
            existing += b"\n"
    payload = line if line.endswith("\n") else line + "\n"
    write_atomic(path, existing + payload.encode("utf-8"), mode=mode, min_free_bytes=min_free_bytes)
