"""Change ledger: append-only journal of mutating actions, backups and undo."""

from provisioner.core.services.change_ledger.backups import build_restore_command
from provisioner.core.services.change_ledger.ledger import (
    ChangeEntry,
    ChangeLedger,
    IntegrityIssue,
    IntegrityReport,
    RollbackReport,
    UndoOutcome,
)
from provisioner.core.services.change_ledger.session import Session, new_session_id

__all__ = [
    "ChangeEntry",
    "ChangeLedger",
    "IntegrityIssue",
    "IntegrityReport",
    "RollbackReport",
    "Session",
    "UndoOutcome",
    "build_restore_command",
    "new_session_id",
]
