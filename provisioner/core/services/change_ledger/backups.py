"""
Content-addressed file backups for the change ledger.

A backup is a verbatim copy (metadata preserved) stored as
``<name>.<session_id>.<checksum12>.backup``. Its recorded checksum must
match its bytes at all times; anything else is corruption.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shlex
import shutil
from pathlib import Path

from provisioner.core.errors import (
    BackupCorrupt,
    BackupMissing,
    BackupVerificationFailed,
    LedgerError,
)
from provisioner.core.models.change import BackupInfo
from provisioner.core.persistence.atomic import check_free_space, classify_os_error, fsync_directory

logger = logging.getLogger(__name__)

_CHUNK = 1024 * 1024


def file_checksum(path: Path) -> str:
    """SHA-256 of a file's bytes."""
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def create_backup(path: Path, backups_dir: Path, session_id: str) -> BackupInfo | None:
    """Copy *path* into *backups_dir* and verify the copy.

    Returns None if *path* does not exist: nothing to restore later.

    Raises:
        BackupVerificationFailed: the original changed during the copy.
        PersistenceError: the copy could not be written.
    """
    if not path.exists():
        logger.debug("No backup needed, %s does not exist", path)
        return None
    if not path.is_file():
        raise LedgerError(f"Only regular files can be backed up: {path}")

    backups_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
    check_free_space(backups_dir, max(path.stat().st_size, 1024 * 1024))
    partial = backups_dir / f".{path.name}.{session_id}.partial"

    try:
        shutil.copy2(path, partial)
        with partial.open("rb") as f:
            os.fsync(f.fileno())
    except OSError as e:
        partial.unlink(missing_ok=True)
        raise classify_os_error(partial, e) from e

    copy_sum = file_checksum(partial)
    original_sum = file_checksum(path)
    if copy_sum != original_sum:
        partial.unlink(missing_ok=True)
        raise BackupVerificationFailed(str(path))

    final = backups_dir / f"{path.name}.{session_id}.{copy_sum[:12]}.backup"
    try:
        os.replace(partial, final)
        fsync_directory(backups_dir)
    except OSError as e:
        partial.unlink(missing_ok=True)
        raise classify_os_error(final, e) from e

    logger.info("Backed up %s -> %s", path, final.name)
    return BackupInfo(
        original_path=str(path.absolute()),
        backup_path=str(final),
        content_checksum=copy_sum,
    )


def verify_backup(info: BackupInfo) -> None:
    """Raise BackupMissing / BackupCorrupt unless the backup is intact."""
    backup = Path(info.backup_path)
    if not backup.is_file():
        raise BackupMissing(info.backup_path)
    if file_checksum(backup) != info.content_checksum:
        raise BackupCorrupt(info.backup_path)


def build_restore_command(backups: list[BackupInfo]) -> str:
    """Shell command that copies every backup back over its original."""
    return " && ".join(
        f"cp -p {shlex.quote(b.backup_path)} {shlex.quote(b.original_path)}" for b in backups
    )
