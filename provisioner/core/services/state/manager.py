"""
State Manager — phase lifecycle, validation and the resume decision.

Owns ``<state_dir>/state.json``. Every transition is written through the
atomic-write primitive before the call returns; a failed write raises a
PersistenceError and the caller halts. Only ``step_update``,
``phase_skip`` and ``tool_skip`` are best-effort bookkeeping: a write
failure there is logged and ignored.
"""

from __future__ import annotations

import logging
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from provisioner.core.errors import (
    PermissionDenied,
    PersistenceError,
    StateInvalidError,
    StepFailed,
    WriteFailed,
)
from provisioner.core.models.phase import PHASE_IDS, PHASES, get_phase, phase_name
from provisioner.core.models.state import InstallationState, InstallMode, StateStatus
from provisioner.core.observability.reporter import Reporter
from provisioner.core.persistence.atomic import MIN_FREE_BYTES
from provisioner.core.persistence.state_file import (
    STATE_FILE,
    backup_state_file,
    load_state,
    read_state_file,
    save_state,
)
from provisioner.core.services.error_analysis import ERROR_OUTPUT_MAX_LENGTH, truncate_output

logger = logging.getLogger(__name__)

RESUME_HINT = "Resuming installation (use --force-reinstall for fresh start)"


class InvalidStatePolicy(str, Enum):
    """What to do with a Corrupt / MissingFields / FutureSchema state file."""

    RESET = "reset"      # back up aside, start fresh
    ABORT = "abort"      # keep the file, refuse to run
    PROMPT = "prompt"    # ask; falls back to RESET without a terminal


class ResumeDecision(str, Enum):
    RESUME = "resume"
    FRESH = "fresh"
    ABORT = "abort"


@dataclass
class ResumeOptions:
    force_reinstall: bool = False
    force_resume: bool = False
    interactive: bool = False


@dataclass
class StateSummary:
    """Read-only snapshot for status output."""

    exists: bool
    status: StateStatus
    state: InstallationState | None = None
    pending: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"exists": self.exists, "status": self.status.value}
        if self.state is None:
            return result
        s = self.state
        result.update({
            "tool_version": s.tool_version,
            "mode": s.mode.value,
            "started_at": s.started_at,
            "last_updated": s.last_updated,
            "progress": f"{len(s.completed_phases)}/{len(PHASES)}",
            "completed_phases": list(s.completed_phases),
            "pending_phases": list(self.pending),
            "current_phase": s.current_phase,
            "current_step": s.current_step,
            "failed": (
                {"phase": s.failed_phase, "step": s.failed_step, "error": s.failed_error}
                if s.failed_phase else None
            ),
            "skipped_phases": list(s.skipped_phases),
            "skipped_tools": list(s.skipped_tools),
            "phase_durations": dict(s.phase_durations),
        })
        return result


class StateManager:
    """Persisted phase state machine for one state directory."""

    def __init__(
        self,
        state_dir: Path,
        *,
        tool_version: str = "",
        mode: InstallMode = InstallMode.VIBE,
        target_user: str = "",
        reporter: Reporter | None = None,
        min_free_bytes: int = MIN_FREE_BYTES,
        error_output_max_length: int = ERROR_OUTPUT_MAX_LENGTH,
        clock: Callable[[], float] = time.time,
    ):
        self._dir = state_dir
        self._path = state_dir / STATE_FILE
        self._tool_version = tool_version
        self._mode = mode
        self._target_user = target_user
        self._reporter = reporter or Reporter()
        self._min_free_bytes = min_free_bytes
        self._max_error = error_output_max_length
        self._clock = clock
        self._state: InstallationState | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def state(self) -> InstallationState:
        """The loaded state. Loads from disk, or creates fresh, on first access."""
        if self._state is None:
            self.initialize()
        assert self._state is not None
        return self._state

    # ── Setup ────────────────────────────────────────────────────

    def initialize(self) -> InstallationState:
        """Load the existing state, or create and persist a fresh one.

        An unreadable state file is backed up aside before it is replaced.
        Call ``ensure_valid`` first to abort or prompt instead.

        Raises:
            PermissionDenied / WriteFailed: state directory cannot be created.
        """
        self._ensure_dir()
        existing = load_state(self._path)
        if existing is not None:
            self._state = existing
            return existing
        unreadable = self._path.exists()
        if unreadable:
            logger.warning("State file %s is %s; backing it up", self._path, self.validate().value)
        return self._start_fresh(backup=unreadable)

    def validate(self) -> StateStatus:
        return read_state_file(self._path).status

    def ensure_valid(
        self,
        policy: InvalidStatePolicy = InvalidStatePolicy.RESET,
        confirm_reset: Callable[[StateStatus, str], bool] | None = None,
    ) -> StateStatus:
        """Bring the state file into a usable shape before anything runs.

        LegacySchema is migrated and saved. Corrupt / MissingFields /
        FutureSchema are backed up and reset according to *policy*.
        Returns the status observed before any repair.
        """
        result = read_state_file(self._path)
        status = result.status

        if status is StateStatus.LEGACY_SCHEMA:
            state = load_state(self._path)
            if state is None:
                status = StateStatus.CORRUPT
            else:
                self._reporter.info("Migrating state file to the current schema")
                self._state = state
                self.save()
                return StateStatus.LEGACY_SCHEMA

        if not status.needs_reset:
            return status

        logger.warning("State file %s is %s: %s", self._path, status.value, result.detail)
        self._reporter.warn(f"State file is {status.value.replace('_', ' ')}: {result.detail}")

        if policy is InvalidStatePolicy.ABORT:
            raise StateInvalidError(status, str(self._path))
        if policy is InvalidStatePolicy.PROMPT and confirm_reset is not None:
            if not confirm_reset(status, result.detail):
                raise StateInvalidError(status, str(self._path))

        self._start_fresh(backup=True)
        return status

    def reset(self) -> Path | None:
        """Back up the current state file and start fresh. Returns the backup path."""
        self._ensure_dir()
        backup = backup_state_file(self._path)
        self._state = self._new_state()
        self.save()
        return backup

    def save(self) -> None:
        """Persist the in-memory state. Raises PersistenceError on failure."""
        self._ensure_dir()
        save_state(self.state, self._path, self._min_free_bytes)

    # ── Resume decision ──────────────────────────────────────────

    def confirm_resume(
        self,
        options: ResumeOptions,
        *,
        prompt: Callable[[str], str] | None = None,
        is_tty: Callable[[], bool] | None = None,
    ) -> ResumeDecision:
        """Decide between resuming, starting fresh, and aborting.

        Precedence: force-reinstall, force-resume, interactive prompt
        (only with a terminal), then a silent resume.
        """
        result = read_state_file(self._path)
        if result.status is StateStatus.FRESH:
            self._start_fresh(backup=False)
            return ResumeDecision.FRESH
        if result.status.needs_reset:
            self._reporter.warn("Existing state file is unreadable; starting fresh")
            self._start_fresh(backup=True)
            return ResumeDecision.FRESH

        state = load_state(self._path)
        if state is None:
            self._start_fresh(backup=True)
            return ResumeDecision.FRESH
        self._state = state

        if not state.completed_phases:
            self._start_fresh(backup=False)
            return ResumeDecision.FRESH

        if options.force_reinstall:
            self._reporter.info("Force reinstall requested; starting fresh")
            self._start_fresh(backup=True)
            return ResumeDecision.FRESH

        if options.force_resume:
            self._reconcile_version()
            return ResumeDecision.RESUME

        tty = is_tty or sys.stdin.isatty
        if options.interactive and prompt is not None and tty():
            self._report_progress()
            choice = prompt("[R]esume, start [F]resh, or [A]bort?").strip().lower()
            if choice.startswith("f"):
                self._start_fresh(backup=True)
                return ResumeDecision.FRESH
            if choice.startswith("a"):
                return ResumeDecision.ABORT
            self._reconcile_version()
            return ResumeDecision.RESUME

        self._report_progress()
        self._reporter.info(RESUME_HINT)
        self._reconcile_version()
        return ResumeDecision.RESUME

    def _reconcile_version(self) -> None:
        """On a tool upgrade, re-run final wiring so new config lands."""
        state = self.state
        if not self._tool_version or state.tool_version == self._tool_version:
            return
        self._reporter.info(
            f"Version changed ({state.tool_version or 'unknown'} -> {self._tool_version}); "
            "final wiring will re-run"
        )
        if "finalize" in state.completed_phases:
            state.completed_phases.remove("finalize")
            state.phase_durations.pop("finalize", None)
        state.tool_version = self._tool_version
        self.save()

    def _report_progress(self) -> None:
        s = self.state
        self._reporter.info(f"Previous installation started {s.started_at} (mode: {s.mode.value})")
        self._reporter.info(f"Progress: {len(s.completed_phases)}/{len(PHASES)} phases")
        if s.last_completed:
            self._reporter.info(f"Last completed: {phase_name(s.last_completed)}")
        if s.failed_phase:
            self._reporter.warn(f"Previous failure in {phase_name(s.failed_phase)}: {s.failed_step or ''}")

    # ── Phase lifecycle ──────────────────────────────────────────

    def phase_start(self, phase_id: str) -> None:
        s = self.state
        s.clear_failure()
        if phase_id in s.completed_phases:
            s.completed_phases.remove(phase_id)
        s.current_phase = phase_id
        s.current_step = None
        s.phase_started_at = self._clock()
        self.save()

    def step_update(self, description: str) -> None:
        """Record the current step (best-effort)."""
        self.state.current_step = description
        try:
            self.save()
        except PersistenceError as e:
            logger.warning("Could not record step %r: %s", description, e)

    def phase_complete(self, phase_id: str) -> int:
        """Mark *phase_id* complete and return its duration in seconds."""
        s = self.state
        duration = 0
        if s.current_phase == phase_id and s.phase_started_at is not None:
            duration = max(0, int(self._clock() - s.phase_started_at))
        s.mark_completed(phase_id)
        s.phase_durations[phase_id] = duration
        if s.failed_phase == phase_id:
            s.clear_failure()
        s.clear_current()
        self.save()
        return duration

    def phase_fail(self, phase_id: str, step: str | None, error: str) -> None:
        s = self.state
        if phase_id in s.completed_phases:
            s.completed_phases.remove(phase_id)
        s.clear_current()
        s.failed_phase = phase_id
        s.failed_step = step
        s.failed_error = truncate_output(error, self._max_error)
        self.save()

    def phase_skip(self, phase_id: str) -> None:
        """Remember that the user skipped *phase_id* (best-effort)."""
        s = self.state
        if phase_id not in s.skipped_phases:
            s.skipped_phases.append(phase_id)
        try:
            self.save()
        except PersistenceError as e:
            logger.warning("Could not record skipped phase %s: %s", phase_id, e)

    def tool_skip(self, tool: str) -> None:
        """Remember a skipped optional tool (best-effort)."""
        s = self.state
        if tool not in s.skipped_tools:
            s.skipped_tools.append(tool)
        try:
            self.save()
        except PersistenceError as e:
            logger.warning("Could not record skipped tool %s: %s", tool, e)

    def phase_reopen(self, phase_id: str) -> None:
        """Forget that *phase_id* completed; used after its changes were rolled back."""
        s = self.state
        if phase_id not in s.completed_phases:
            return
        s.completed_phases.remove(phase_id)
        s.phase_durations.pop(phase_id, None)
        self.save()

    # ── Queries ──────────────────────────────────────────────────

    def skip_reason(self, phase_id: str) -> str | None:
        s = self.state
        if s.is_completed(phase_id):
            return "already completed"
        if s.is_skipped(phase_id):
            return "user skipped"
        return None

    def should_skip_phase(self, phase_id: str) -> bool:
        return self.skip_reason(phase_id) is not None

    def pending_phases(self) -> list[str]:
        """Canonical-order phase IDs that are neither completed nor skipped."""
        return [pid for pid in PHASE_IDS if not self.should_skip_phase(pid)]

    def summary(self) -> StateSummary:
        result = read_state_file(self._path)
        state = load_state(self._path)
        if state is not None:
            self._state = state
        return StateSummary(
            exists=self._path.exists(),
            status=result.status,
            state=state,
            pending=self.pending_phases() if state is not None else list(PHASE_IDS),
        )

    # ── Runner integration ───────────────────────────────────────

    def run_phase(self, phase_id: str, name: str, fn: Callable[[], None]) -> int:
        """Skip-check, start, run *fn*, then record success or failure.

        *fn* signals failure by raising StepFailed. Returns 0 on success
        or skip, otherwise the failing step's exit code. Any other
        exception is recorded as a failure and re-raised; an interrupt
        leaves the phase marked current so the next run resumes it.
        """
        if get_phase(phase_id) is None:
            logger.warning("Unknown phase ID: %s", phase_id)

        reason = self.skip_reason(phase_id)
        if reason:
            self._reporter.info(f"Skipping {name} ({reason})")
            return 0

        self.phase_start(phase_id)
        self._reporter.info(f"{name}...")
        try:
            fn()
        except StepFailed as e:
            code = e.step_exit_code or 1
            step = e.step or self.state.current_step
            error = f"Phase '{name}' failed with exit code {code}"
            if e.output:
                error = f"{error}: {e.output}"
            self.phase_fail(phase_id, step, error)
            self._reporter.error(f"{name} failed at {step or 'unknown step'} (exit {code})")
            return code
        except KeyboardInterrupt:
            raise
        except Exception as e:
            self.phase_fail(phase_id, self.state.current_step, f"Phase '{name}' crashed: {e}")
            raise

        duration = self.phase_complete(phase_id)
        self._reporter.success(f"{name} complete ({duration}s)")
        return 0

    # ── Internals ────────────────────────────────────────────────

    def _ensure_dir(self) -> None:
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise PermissionDenied(str(self._dir), "Cannot create state directory") from e
        except OSError as e:
            raise WriteFailed(str(self._dir), f"Cannot create state directory ({e})") from e

    def _new_state(self) -> InstallationState:
        return InstallationState(
            tool_version=self._tool_version,
            mode=self._mode,
            target_user=self._target_user,
        )

    def _start_fresh(self, backup: bool) -> InstallationState:
        self._ensure_dir()
        if backup:
            backup_state_file(self._path)
        self._state = self._new_state()
        self.save()
        return self._state
