"""
Session — the explicit per-run context for ledger operations.

Holds the session id and the ordered list of changes recorded during
this run, which is what rollback walks in reverse. Passed by reference
into every ledger call; there is no module-level session.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime

from provisioner.core.models.change import ChangeRecord


def new_session_id(now: datetime | None = None, pid: int | None = None) -> str:
    """``sess_<YYYYmmdd_HHMMSS>_<pid>``."""
    now = now or datetime.now()
    return f"sess_{now.strftime('%Y%m%d_%H%M%S')}_{os.getpid() if pid is None else pid}"


@dataclass
class Session:
    """One install or undo run."""

    id: str = field(default_factory=new_session_id)
    started_at: str = field(default_factory=lambda: datetime.now().astimezone().isoformat())
    pid: int = field(default_factory=os.getpid)
    changes: list[ChangeRecord] = field(default_factory=list)

    def find(self, change_id: str) -> ChangeRecord | None:
        """Most recent in-session record with this id."""
        for record in reversed(self.changes):
            if record.id == change_id:
                return record
        return None

    @property
    def change_ids(self) -> list[str]:
        return [c.id for c in self.changes]

    def to_marker(self) -> dict:
        return {"id": self.id, "started_at": self.started_at, "pid": self.pid}
