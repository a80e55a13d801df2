"""
Change Ledger & Undo Engine.

Layout under the ledger directory::

    changes.jsonl   one ChangeRecord per line, never rewritten except by repair()
    undos.jsonl     one UndoRecord per undo attempt
    backups/        verbatim copies referenced by BackupInfo
    .integrity      checkpoint written at session end
    .session        marker for the session in progress

A change moves Recorded -> Undone exactly once, by appending an
UndoRecord with exit code 0. Undo is idempotent.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from provisioner.adapters.base import CommandRunner
from provisioner.core.errors import (
    BackupCorrupt,
    BackupMissing,
    ChecksumMismatch,
    DependentNotUndone,
    LedgerError,
    NotReversible,
    PersistenceError,
    UnknownChangeId,
)
from provisioner.core.models.change import (
    BackupInfo,
    ChangeRecord,
    Severity,
    UndoRecord,
    verify_record_checksum,
)
from provisioner.core.observability.reporter import Reporter
from provisioner.core.persistence.atomic import MIN_FREE_BYTES, write_atomic
from provisioner.core.persistence.journal import Journal
from provisioner.core.services.change_ledger.backups import (
    create_backup,
    file_checksum,
    verify_backup,
)
from provisioner.core.services.change_ledger.session import Session

logger = logging.getLogger(__name__)

CHANGES_FILE = "changes.jsonl"
UNDOS_FILE = "undos.jsonl"
BACKUPS_DIR = "backups"
INTEGRITY_FILE = ".integrity"
SESSION_FILE = ".session"

_ID_RE = re.compile(r"^chg_(\d+)$")


# ── Reports ─────────────────────────────────────────────────────


@dataclass
class IntegrityIssue:
    kind: str  # parse, invalid, checksum, backup_missing, backup_corrupt, undo_parse, undo_invalid
    file: str
    line: int
    detail: str
    change_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "file": self.file,
            "line": self.line,
            "change_id": self.change_id,
            "detail": self.detail,
        }


@dataclass
class IntegrityReport:
    changes_checked: int = 0
    undos_checked: int = 0
    issues: list[IntegrityIssue] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.issues)

    @property
    def healthy(self) -> bool:
        return not self.issues

    @property
    def parse_errors(self) -> int:
        return sum(1 for i in self.issues if i.kind in ("parse", "undo_parse"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "changes_checked": self.changes_checked,
            "undos_checked": self.undos_checked,
            "error_count": self.error_count,
            "issues": [i.to_dict() for i in self.issues],
        }


@dataclass
class UndoOutcome:
    change_id: str
    exit_code: int = 0
    output: str = ""
    already_undone: bool = False
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "change_id": self.change_id,
            "ok": self.ok,
            "exit_code": self.exit_code,
            "already_undone": self.already_undone,
            "dry_run": self.dry_run,
            "output": self.output,
        }


@dataclass
class RollbackReport:
    attempted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    ledger_path: str = ""

    @property
    def unrecovered(self) -> int:
        return len(self.failed)

    @property
    def recovered(self) -> list[str]:
        return [cid for cid in self.attempted if cid not in self.failed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted": list(self.attempted),
            "failed": list(self.failed),
            "errors": dict(self.errors),
            "unrecovered": self.unrecovered,
            "ledger_path": self.ledger_path,
        }


@dataclass
class ChangeEntry:
    """A ledger record together with its derived undo status."""

    record: ChangeRecord
    undone: bool
    line: int

    def to_dict(self) -> dict[str, Any]:
        data = self.record.model_dump(mode="json")
        data["undone"] = self.undone
        return data


# ── Ledger ──────────────────────────────────────────────────────


class ChangeLedger:
    """Append-only journal of mutating actions, with undo."""

    def __init__(
        self,
        ledger_dir: Path,
        runner: CommandRunner,
        *,
        reporter: Reporter | None = None,
        min_free_bytes: int = MIN_FREE_BYTES,
    ):
        self._dir = ledger_dir
        self._runner = runner
        self._reporter = reporter or Reporter()
        self._min_free_bytes = min_free_bytes
        self._changes: Journal[ChangeRecord] = Journal(ledger_dir / CHANGES_FILE, ChangeRecord, min_free_bytes)
        self._undos: Journal[UndoRecord] = Journal(ledger_dir / UNDOS_FILE, UndoRecord, min_free_bytes)

    # ── Paths ────────────────────────────────────────────────────

    @property
    def directory(self) -> Path:
        return self._dir

    @property
    def changes_path(self) -> Path:
        return self._changes.path

    @property
    def undos_path(self) -> Path:
        return self._undos.path

    @property
    def backups_dir(self) -> Path:
        return self._dir / BACKUPS_DIR

    # ── Session ──────────────────────────────────────────────────

    def start_session(self, session: Session | None = None) -> Session:
        """Open a session: verify the ledger, repair parse damage, write the marker.

        The caller must already hold the session lock.
        """
        session = session or Session()
        self._dir.mkdir(parents=True, exist_ok=True, mode=0o700)

        marker = self._dir / SESSION_FILE
        if marker.is_file():
            self._reporter.warn("Previous session did not finish cleanly")
            logger.warning("Stale session marker: %s", marker.read_text(encoding="utf-8", errors="replace").strip())

        report = self.verify_integrity()
        if report.parse_errors:
            removed = self.repair()
            self._reporter.warn(f"Removed {removed} unparseable ledger line(s)")
            report = self.verify_integrity()
        if not report.healthy:
            self._reporter.warn(
                f"Change ledger has {report.error_count} integrity problem(s); "
                "run 'provision undo --verify' for details"
            )

        write_atomic(marker, json.dumps(session.to_marker()) + "\n", min_free_bytes=self._min_free_bytes)
        logger.info("Ledger session %s started", session.id)
        return session

    def end_session(self, session: Session) -> None:
        """Write the integrity checkpoint and remove the session marker."""
        self.write_integrity_checkpoint()
        (self._dir / SESSION_FILE).unlink(missing_ok=True)
        logger.info("Ledger session %s ended (%d changes)", session.id, len(session.changes))

    # ── Recording ────────────────────────────────────────────────

    def create_backup(self, session: Session, path: str | Path) -> BackupInfo | None:
        return create_backup(Path(path).expanduser(), self.backups_dir, session.id)

    def record_change(
        self,
        session: Session,
        category: str,
        description: str,
        undo_command: str = "",
        *,
        requires_elevation: bool = False,
        severity: Severity = Severity.INFO,
        files_affected: list[str] | None = None,
        backups: list[BackupInfo] | None = None,
        depends_on: list[str] | None = None,
        reversible: bool | None = None,
    ) -> str:
        """Append a ChangeRecord and return its id.

        The id is derived from what is already on disk, so it never
        collides across restarts.
        """
        existing_ids, next_number = self._scan_ids()
        for dep in depends_on or []:
            if dep not in existing_ids:
                raise UnknownChangeId(dep)

        record = ChangeRecord(
            id=f"chg_{next_number:04d}",
            category=category,
            description=description,
            undo_command=undo_command,
            undo_requires_elevated_privilege=requires_elevation,
            severity=severity,
            files_affected=list(files_affected or []),
            backups=list(backups or []),
            depends_on=list(depends_on or []),
            session_id=session.id,
            reversible=bool(undo_command) if reversible is None else reversible,
        ).with_checksum()

        self._dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        self._changes.append(record)
        session.changes.append(record)
        logger.info("Recorded %s [%s] %s", record.id, category, description)
        return record.id

    def _scan_ids(self) -> tuple[set[str], int]:
        ids: set[str] = set()
        highest = 0
        count = 0
        for line in self._changes.replay():
            count += 1
            cid = (line.data or {}).get("id")
            if isinstance(cid, str):
                ids.add(cid)
                m = _ID_RE.match(cid)
                if m:
                    highest = max(highest, int(m.group(1)))
        return ids, max(count, highest) + 1

    # ── Integrity ────────────────────────────────────────────────

    def verify_integrity(self) -> IntegrityReport:
        """Check every ledger line, every checksum and every backup.

        Reports at most one issue per change line.
        """
        report = IntegrityReport()
        name = self._changes.path.name

        for line in self._changes.replay():
            report.changes_checked += 1
            if line.data is None:
                report.issues.append(IntegrityIssue("parse", name, line.number, line.error))
                continue
            cid = str(line.data.get("id", ""))
            if not verify_record_checksum(line.data):
                report.issues.append(
                    IntegrityIssue("checksum", name, line.number, "record checksum mismatch", cid)
                )
                continue
            if line.record is None:
                report.issues.append(IntegrityIssue("invalid", name, line.number, line.error, cid))
                continue
            for backup in line.record.backups:
                try:
                    verify_backup(backup)
                except BackupMissing:
                    report.issues.append(
                        IntegrityIssue("backup_missing", name, line.number, backup.backup_path, cid)
                    )
                    break
                except BackupCorrupt:
                    report.issues.append(
                        IntegrityIssue("backup_corrupt", name, line.number, backup.backup_path, cid)
                    )
                    break

        undo_name = self._undos.path.name
        for line in self._undos.replay():
            report.undos_checked += 1
            if line.data is None:
                report.issues.append(IntegrityIssue("undo_parse", undo_name, line.number, line.error))
            elif line.record is None:
                report.issues.append(IntegrityIssue("undo_invalid", undo_name, line.number, line.error))

        if report.issues:
            logger.warning("Ledger integrity: %d issue(s)", report.error_count)
        return report

    def repair(self) -> int:
        """Drop lines that are not JSON objects and rewrite atomically.

        Parseable lines with a bad checksum are kept: they point at
        tampering or a partial write and must be looked at, not healed.
        Returns the number of lines removed.
        """
        removed = 0
        for journal in (self._changes, self._undos):
            if not journal.exists():
                continue
            keep: list[str] = []
            dropped = 0
            for line in journal.replay():
                if line.data is None:
                    logger.warning("Discarding unparseable line %d of %s", line.number, journal.path.name)
                    dropped += 1
                else:
                    keep.append(line.raw)
            if dropped:
                journal.rewrite(keep)
                removed += dropped
        return removed

    def write_integrity_checkpoint(self) -> None:
        checkpoint = {
            "timestamp": datetime.now(UTC).isoformat(),
            "changes_checksum": file_checksum(self.changes_path) if self.changes_path.is_file() else "",
            "undos_checksum": file_checksum(self.undos_path) if self.undos_path.is_file() else "",
            "backup_count": len(list(self.backups_dir.glob("*.backup"))) if self.backups_dir.is_dir() else 0,
        }
        self._dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        write_atomic(
            self._dir / INTEGRITY_FILE,
            json.dumps(checkpoint, indent=2) + "\n",
            min_free_bytes=self._min_free_bytes,
        )

    # ── Queries ──────────────────────────────────────────────────

    def undone_ids(self) -> set[str]:
        return {u.undone for u in self._undos.records() if u.succeeded}

    def list_changes(self, category: str | None = None) -> list[ChangeEntry]:
        """All parseable records, oldest first, with undo status."""
        undone = self.undone_ids()
        entries = []
        for line in self._changes.replay():
            if line.record is None:
                continue
            if category and line.record.category != category:
                continue
            entries.append(ChangeEntry(line.record, line.record.id in undone, line.number))
        return entries

    def _locate(self, change_id: str, session: Session | None) -> tuple[ChangeRecord, dict[str, Any], int | None]:
        if session is not None:
            cached = session.find(change_id)
            if cached is not None:
                return cached, cached.model_dump(mode="json"), None

        found: tuple[ChangeRecord, dict[str, Any], int | None] | None = None
        for line in self._changes.replay():
            if line.data is None or line.data.get("id") != change_id:
                continue
            if line.record is None:
                raise LedgerError(f"Record {change_id} at line {line.number} is malformed: {line.error}")
            found = (line.record, line.data, line.number)  # most recent wins
        if found is None:
            raise UnknownChangeId(change_id)
        return found

    # ── Undo ─────────────────────────────────────────────────────

    def undo(
        self,
        change_id: str,
        *,
        session: Session | None = None,
        force: bool = False,
        skip_dependency_check: bool = False,
        dry_run: bool = False,
    ) -> UndoOutcome:
        """Reverse one change.

        Raises:
            UnknownChangeId, ChecksumMismatch, NotReversible,
            DependentNotUndone, BackupMissing, BackupCorrupt.
        A failing undo command is not an exception: the attempt is
        recorded and returned with its non-zero exit code.
        """
        record, data, line_no = self._locate(change_id, session)

        if not verify_record_checksum(data):
            if not force:
                raise ChecksumMismatch(change_id, line_no)
            logger.warning("Checksum mismatch for %s ignored (--force)", change_id)

        undone = self.undone_ids()
        if change_id in undone:
            logger.info("%s already undone", change_id)
            return UndoOutcome(change_id, already_undone=True)

        if not record.reversible or not record.undo_command:
            raise NotReversible(change_id)

        if not skip_dependency_check:
            dependents = [
                r.id for r in self._changes.records()
                if r.id != change_id and change_id in r.depends_on and r.id not in undone
            ]
            dependents = list(dict.fromkeys(dependents))
            if dependents:
                if not force:
                    raise DependentNotUndone(change_id, dependents)
                logger.warning("Undoing %s before its dependents %s (--force)", change_id, dependents)

        for backup in record.backups:
            try:
                verify_backup(backup)
            except (BackupMissing, BackupCorrupt) as e:
                if not force:
                    raise
                logger.warning("%s (continuing, --force)", e)

        if dry_run:
            return UndoOutcome(change_id, dry_run=True, output=record.undo_command)

        self._reporter.info(f"Undoing {change_id}: {record.description}")
        result = self._runner.run(record.undo_command, elevated=record.undo_requires_elevated_privilege)

        self._undos.append(
            UndoRecord(
                undone=change_id,
                exit_code=result.exit_code,
                session_id=session.id if session else "",
            )
        )
        if result.ok:
            self._reporter.success(f"Undid {change_id}")
        else:
            self._reporter.error(f"Undo of {change_id} failed (exit {result.exit_code})")
        return UndoOutcome(change_id, exit_code=result.exit_code, output=result.output)

    def rollback_all_on_failure(self, session: Session, exit_code: int) -> RollbackReport:
        """Undo every change of *session*, newest first, best-effort.

        Individual failures are collected, never raised.
        """
        report = RollbackReport(ledger_path=str(self.changes_path))
        if exit_code == 0 or not session.changes:
            return report

        self._reporter.warn(f"Rolling back {len(session.changes)} change(s) from this session")
        for record in reversed(session.changes):
            report.attempted.append(record.id)
            try:
                outcome = self.undo(record.id, session=session, force=True, skip_dependency_check=True)
            except (LedgerError, PersistenceError) as e:
                report.failed.append(record.id)
                report.errors[record.id] = str(e)
                logger.error("Rollback of %s failed: %s", record.id, e)
                continue
            if not outcome.ok:
                report.failed.append(record.id)
                report.errors[record.id] = f"exit code {outcome.exit_code}"

        if report.failed:
            self._reporter.error(
                f"Rollback left {report.unrecovered} change(s) unrecovered; "
                f"inspect {report.ledger_path}"
            )
        else:
            self._reporter.success(f"Rolled back {len(report.attempted)} change(s)")
        return report

    # ── Housekeeping ─────────────────────────────────────────────

    def cleanup_old_backups(self, days: int = 30) -> int:
        """Delete backups older than *days* unless a live change still needs them."""
        if not self.backups_dir.is_dir():
            return 0
        undone = self.undone_ids()
        referenced = {
            Path(b.backup_path).name
            for r in self._changes.records()
            if r.id not in undone
            for b in r.backups
        }
        cutoff = time.time() - days * 86400
        removed = 0
        for backup in sorted(self.backups_dir.glob("*.backup")):
            if backup.name in referenced:
                continue
            if backup.stat().st_mtime < cutoff:
                backup.unlink()
                removed += 1
        if removed:
            logger.info("Removed %d backup(s) older than %d days", removed, days)
        return removed
