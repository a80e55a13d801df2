"""
Phase catalog — the fixed, linear list of installation phases.

Phase IDs are stable: an ID is never reused for a different meaning.
Numeric positions exist only for legacy state migration and for the
``--only-phase 3`` shorthand.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Phase:
    """A static installation phase."""

    id: str
    name: str
    position: int  # 1-based canonical position


PHASES: tuple[Phase, ...] = (
    Phase("user_setup", "User Normalization", 1),
    Phase("filesystem", "Filesystem Setup", 2),
    Phase("shell_setup", "Shell Setup", 3),
    Phase("cli_tools", "CLI Tools", 4),
    Phase("languages", "Language Runtimes", 5),
    Phase("agents", "Coding Agents", 6),
    Phase("cloud_db", "Cloud & Database Tools", 7),
    Phase("stack", "Developer Stack", 8),
    Phase("finalize", "Final Wiring", 9),
)

PHASE_IDS: tuple[str, ...] = tuple(p.id for p in PHASES)

_BY_ID = {p.id: p for p in PHASES}

# Schema v1 stored phases by position.
LEGACY_PHASE_NUMBERS: dict[int, str] = {p.position: p.id for p in PHASES}

PHASE_ALIASES: dict[str, str] = {
    "user": "user_setup",
    "users": "user_setup",
    "fs": "filesystem",
    "shell": "shell_setup",
    "cli": "cli_tools",
    "tools": "cli_tools",
    "lang": "languages",
    "langs": "languages",
    "agent": "agents",
    "cloud": "cloud_db",
    "db": "cloud_db",
    "database": "cloud_db",
    "final": "finalize",
}


def get_phase(phase_id: str) -> Phase | None:
    return _BY_ID.get(phase_id)


def phase_name(phase_id: str) -> str:
    """Display name for *phase_id*, or the ID itself if unknown."""
    phase = _BY_ID.get(phase_id)
    return phase.name if phase else phase_id


def normalize_phase(value: str) -> str | None:
    """Resolve an ID, alias or 1-based position to a canonical phase ID."""
    key = value.strip().lower().replace("-", "_")
    if key in _BY_ID:
        return key
    if key in PHASE_ALIASES:
        return PHASE_ALIASES[key]
    if key.isdigit():
        return LEGACY_PHASE_NUMBERS.get(int(key))
    return None
