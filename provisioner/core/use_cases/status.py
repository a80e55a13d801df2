"""
Status use case — installation progress plus a ledger summary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from provisioner.adapters.mock import MockCommandRunner
from provisioner.core.models.settings import Settings
from provisioner.core.services.change_ledger.ledger import ChangeLedger
from provisioner.core.services.state.manager import StateManager, StateSummary


@dataclass
class StatusResult:
    """Aggregated status."""

    summary: StateSummary | None = None
    state_path: Path | None = None
    ledger_path: Path | None = None
    changes_total: int = 0
    changes_undone: int = 0
    categories: dict[str, int] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict:
        """Convert to a JSON-serializable dictionary."""
        result: dict = {}
        if self.error:
            result["error"] = self.error
            return result

        result["state_file"] = str(self.state_path)
        if self.summary is not None:
            result["state"] = self.summary.to_dict()
        result["ledger"] = {
            "path": str(self.ledger_path),
            "changes": self.changes_total,
            "undone": self.changes_undone,
            "live": self.changes_total - self.changes_undone,
            "by_category": dict(self.categories),
        }
        return result


def get_status(settings: Settings) -> StatusResult:
    """Read-only status: never creates or repairs anything on disk."""
    result = StatusResult()

    manager = StateManager(settings.state_dir)
    result.state_path = manager.path
    result.summary = manager.summary()

    # The runner is never invoked for read-only ledger queries.
    ledger = ChangeLedger(settings.ledger_dir, MockCommandRunner())
    result.ledger_path = ledger.changes_path
    for entry in ledger.list_changes():
        result.changes_total += 1
        if entry.undone:
            result.changes_undone += 1
        else:
            result.categories[entry.record.category] = result.categories.get(entry.record.category, 0) + 1

    return result
