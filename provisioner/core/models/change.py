"""
Change ledger records — ChangeRecord, BackupInfo, UndoRecord.

A ChangeRecord is immutable once appended. Undoing it appends an
UndoRecord; the original line is never rewritten. ``record_checksum``
is the SHA-256 of the record's canonical JSON with the checksum field
removed.
"""

from __future__ import annotations

import hashlib
import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class BackupInfo(BaseModel):
    """A verbatim copy of a file taken before it was modified."""

    original_path: str
    backup_path: str
    content_checksum: str
    created_at: str = Field(default_factory=_now_iso)


class ChangeRecord(BaseModel):
    """One mutating action and how to reverse it."""

    id: str
    timestamp: str = Field(default_factory=_now_iso)
    category: str
    description: str
    undo_command: str = ""
    undo_requires_elevated_privilege: bool = False
    severity: Severity = Severity.INFO
    files_affected: list[str] = Field(default_factory=list)
    backups: list[BackupInfo] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)
    session_id: str = ""
    reversible: bool = True
    undone: bool = False  # always False on disk; see UndoRecord
    record_checksum: str = ""

    def with_checksum(self) -> ChangeRecord:
        return self.model_copy(update={"record_checksum": compute_record_checksum(self.model_dump(mode="json"))})


class UndoRecord(BaseModel):
    """Marker appended for every undo attempt, successful or not."""

    undone: str
    timestamp: str = Field(default_factory=_now_iso)
    exit_code: int
    session_id: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


def compute_record_checksum(data: dict[str, Any]) -> str:
    """SHA-256 over canonical JSON of *data* without ``record_checksum``."""
    payload = {k: v for k, v in data.items() if k != "record_checksum"}
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def verify_record_checksum(data: dict[str, Any]) -> bool:
    """True if *data* has no checksum or its checksum matches its content."""
    stored = data.get("record_checksum")
    if not stored:
        return True
    return stored == compute_record_checksum(data)
