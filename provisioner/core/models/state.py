"""
InstallationState — the single persisted progress document.

Serialized to ``<state_dir>/state.json`` and read at every startup to
decide between resuming and starting fresh. A phase ID is in at most one
of completed / failed / current; ``current_phase`` and ``failed_phase``
are never both set.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

CURRENT_SCHEMA_VERSION = 3

# Keys a v2+ document must carry to be considered usable.
REQUIRED_FIELDS = ("mode", "completed_phases")


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class InstallMode(str, Enum):
    VIBE = "vibe"
    SAFE = "safe"


class StateStatus(str, Enum):
    """Outcome of validating the on-disk state file."""

    FRESH = "fresh"
    CORRUPT = "corrupt"
    MISSING_FIELDS = "missing_fields"
    FUTURE_SCHEMA = "future_schema"
    LEGACY_SCHEMA = "legacy_schema"
    VALID = "valid"

    @property
    def needs_reset(self) -> bool:
        return self in (StateStatus.CORRUPT, StateStatus.MISSING_FIELDS, StateStatus.FUTURE_SCHEMA)


class InstallationState(BaseModel):
    """Root state model — serialized to state.json."""

    # ── Schema ───────────────────────────────────────────────────
    schema_version: int = CURRENT_SCHEMA_VERSION

    # ── Identity ─────────────────────────────────────────────────
    tool_version: str = ""
    mode: InstallMode = InstallMode.VIBE
    target_user: str = ""

    # ── Timestamps ───────────────────────────────────────────────
    started_at: str = Field(default_factory=_now_iso)
    last_updated: str = Field(default_factory=_now_iso)

    # ── Progress ─────────────────────────────────────────────────
    completed_phases: list[str] = Field(default_factory=list)
    current_phase: str | None = None
    current_step: str | None = None
    phase_started_at: float | None = None   # epoch seconds, cleared on complete/fail

    # ── Failure ──────────────────────────────────────────────────
    failed_phase: str | None = None
    failed_step: str | None = None
    failed_error: str | None = None

    # ── User intent ──────────────────────────────────────────────
    skipped_tools: list[str] = Field(default_factory=list)
    skipped_phases: list[str] = Field(default_factory=list)

    # ── Metrics ──────────────────────────────────────────────────
    phase_durations: dict[str, int] = Field(default_factory=dict)

    def touch(self) -> None:
        """Update the last_updated timestamp."""
        self.last_updated = _now_iso()

    def is_completed(self, phase_id: str) -> bool:
        return phase_id in self.completed_phases

    def is_skipped(self, phase_id: str) -> bool:
        return phase_id in self.skipped_phases

    def mark_completed(self, phase_id: str) -> None:
        """Add to completed_phases with set semantics, keeping first-insertion order."""
        if phase_id not in self.completed_phases:
            self.completed_phases.append(phase_id)

    def clear_current(self) -> None:
        self.current_phase = None
        self.current_step = None
        self.phase_started_at = None

    def clear_failure(self) -> None:
        self.failed_phase = None
        self.failed_step = None
        self.failed_error = None

    @property
    def last_completed(self) -> str | None:
        return self.completed_phases[-1] if self.completed_phases else None
