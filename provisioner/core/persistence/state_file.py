"""
State file persistence — validate, migrate, load and save state.json.

Reads never guess: ``read_state_file`` classifies the file into a
StateStatus and leaves it to the State Manager to decide what to do.
Writes go through ``write_atomic`` with mode 0600.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from provisioner.core.errors import PermissionDenied, WriteFailed
from provisioner.core.models.phase import LEGACY_PHASE_NUMBERS
from provisioner.core.models.state import (
    CURRENT_SCHEMA_VERSION,
    REQUIRED_FIELDS,
    InstallationState,
    StateStatus,
)
from provisioner.core.persistence.atomic import MIN_FREE_BYTES, write_atomic

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
APP_DIR = "provision"


def default_state_dir() -> Path:
    """Per-user state directory: $XDG_STATE_HOME/provision or ~/.local/state/provision."""
    xdg = os.environ.get("XDG_STATE_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "state"
    return base / APP_DIR


@dataclass
class StateReadResult:
    """Classification of the on-disk state file."""

    status: StateStatus
    data: dict[str, Any] | None = None
    schema_version: int | None = None
    detail: str = ""


def read_state_file(path: Path) -> StateReadResult:
    """Read and classify *path* without modifying it."""
    if not path.is_file():
        return StateReadResult(StateStatus.FRESH)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        return StateReadResult(StateStatus.CORRUPT, detail=f"unreadable: {e}")
    if not raw.strip():
        return StateReadResult(StateStatus.CORRUPT, detail="empty file")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        return StateReadResult(StateStatus.CORRUPT, detail=f"invalid JSON: {e.msg}")
    if not isinstance(data, dict):
        return StateReadResult(StateStatus.CORRUPT, detail="not a JSON object")

    version = data.get("schema_version")
    if version is None or version == 1:
        return StateReadResult(StateStatus.LEGACY_SCHEMA, data=data, schema_version=1)
    if not isinstance(version, int) or isinstance(version, bool):
        return StateReadResult(StateStatus.CORRUPT, data=data, detail=f"bad schema_version: {version!r}")
    if version > CURRENT_SCHEMA_VERSION:
        return StateReadResult(
            StateStatus.FUTURE_SCHEMA,
            data=data,
            schema_version=version,
            detail=f"schema {version} is newer than supported {CURRENT_SCHEMA_VERSION}",
        )

    version_key = "tool_version" if version >= 3 else "version"
    missing = [f for f in (version_key, *REQUIRED_FIELDS) if f not in data]
    if missing:
        return StateReadResult(
            StateStatus.MISSING_FIELDS,
            data=data,
            schema_version=version,
            detail=f"missing fields: {', '.join(missing)}",
        )
    if not isinstance(data["completed_phases"], list):
        return StateReadResult(
            StateStatus.MISSING_FIELDS,
            data=data,
            schema_version=version,
            detail="completed_phases is not a list",
        )

    try:
        InstallationState.model_validate(migrate_state(dict(data)))
    except ValidationError as e:
        return StateReadResult(
            StateStatus.MISSING_FIELDS,
            data=data,
            schema_version=version,
            detail=f"malformed fields ({e.error_count()} errors)",
        )

    return StateReadResult(StateStatus.VALID, data=data, schema_version=version)


# ── Migration ───────────────────────────────────────────────────


def _migrate_v1_to_v2(data: dict[str, Any]) -> dict[str, Any]:
    """Remap positional phase numbers to stable IDs.

    Entries with no mapping are kept verbatim (as strings) so a newer
    build that knows them can still make sense of the file.
    """
    completed: list[str] = []
    for entry in data.get("completed_phases") or []:
        phase_id = _map_legacy_phase(entry)
        if phase_id is None:
            logger.warning("Legacy phase %r has no known mapping; keeping it verbatim", entry)
            phase_id = str(entry)
        if phase_id not in completed:
            completed.append(phase_id)

    data["completed_phases"] = completed
    data["current_phase"] = None
    data["current_step"] = None
    data["failed_phase"] = None
    data["failed_step"] = None
    data["failed_error"] = None
    data["skipped_tools"] = []
    data["skipped_phases"] = []
    data["phase_durations"] = {}
    data.setdefault("version", "")
    data.setdefault("mode", "vibe")
    data["schema_version"] = 2
    return data


def _migrate_v2_to_v3(data: dict[str, Any]) -> dict[str, Any]:
    data["tool_version"] = data.pop("version", "") or ""
    start = data.pop("phase_start_time", None)
    if isinstance(start, (int, float)) and data.get("current_phase"):
        data["phase_started_at"] = float(start)
    data["schema_version"] = 3
    return data


def _map_legacy_phase(entry: Any) -> str | None:
    if isinstance(entry, bool):
        return None
    if isinstance(entry, int):
        return LEGACY_PHASE_NUMBERS.get(entry)
    if isinstance(entry, str):
        if entry.isdigit():
            return LEGACY_PHASE_NUMBERS.get(int(entry))
        if entry in LEGACY_PHASE_NUMBERS.values():
            return entry
    return None


_MIGRATIONS = {1: _migrate_v1_to_v2, 2: _migrate_v2_to_v3}


def migrate_state(data: dict[str, Any]) -> dict[str, Any]:
    """Upgrade a state document to CURRENT_SCHEMA_VERSION, step by step."""
    version = data.get("schema_version") or 1
    while version < CURRENT_SCHEMA_VERSION:
        step = _MIGRATIONS[version]
        data = step(data)
        logger.info("Migrated state schema v%d -> v%d", version, data["schema_version"])
        version = data["schema_version"]
    return data


# ── Load / save ─────────────────────────────────────────────────


def load_state(path: Path) -> InstallationState | None:
    """Load a VALID or LEGACY state file, migrating in memory.

    Returns None when the file is absent or unusable; call
    ``read_state_file`` to learn why.
    """
    result = read_state_file(path)
    if result.status not in (StateStatus.VALID, StateStatus.LEGACY_SCHEMA):
        return None
    assert result.data is not None
    try:
        return InstallationState.model_validate(migrate_state(dict(result.data)))
    except ValidationError as e:
        logger.warning("State file %s did not validate after migration: %s", path, e)
        return None


def save_state(
    state: InstallationState,
    path: Path,
    min_free_bytes: int = MIN_FREE_BYTES,
) -> None:
    """Save state atomically. Raises a PersistenceError on failure."""
    state.touch()
    data = state.model_dump(mode="json")
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    write_atomic(path, content, mode=0o600, min_free_bytes=min_free_bytes)
    logger.debug("State saved to %s", path)


def backup_state_file(path: Path) -> Path | None:
    """Move *path* aside to ``<name>.backup.<YYYYmmdd_HHMMSS>``.

    Returns the backup path, or None if there was nothing to move.
    """
    if not path.exists():
        return None
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    target = path.with_name(f"{path.name}.backup.{stamp}")
    n = 1
    while target.exists():
        target = path.with_name(f"{path.name}.backup.{stamp}.{n}")
        n += 1
    try:
        os.replace(path, target)
    except PermissionError as e:
        raise PermissionDenied(str(path), "Cannot move state file aside") from e
    except OSError as e:
        raise WriteFailed(str(path), f"Cannot move state file aside ({e})") from e
    logger.warning("Backed up state file to %s", target)
    return target
