"""
Install use case — the full vertical slice of a provisioning run.

Loads the manifest, resolves the plan, takes the session lock, settles
the state file and the resume decision, opens a ledger session and
drives the phase runner. On a phase failure every change recorded in
this session is rolled back, newest first, and phases whose changes
were undone are reopened so the next run repeats them.
"""

from __future__ import annotations

import getpass
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from provisioner import __version__
from provisioner.adapters.base import CommandRunner, VerifiedFetch, unconfigured_verified_fetch
from provisioner.adapters.mock import MockCommandRunner, mock_verified_fetch
from provisioner.adapters.shell.command import ShellCommandRunner
from provisioner.core.config.loader import load_manifest
from provisioner.core.engine.runner import PhaseRunner, RunReport
from provisioner.core.errors import (
    ConfigError,
    LedgerError,
    PersistenceError,
    SelectionError,
    SessionLocked,
    StateInvalidError,
    UnknownPhase,
)
from provisioner.core.models.phase import normalize_phase
from provisioner.core.models.settings import Settings
from provisioner.core.models.state import InstallMode, StateStatus
from provisioner.core.observability.reporter import Reporter
from provisioner.core.persistence.lock import SessionLock
from provisioner.core.reliability.retry import RetryPolicy
from provisioner.core.services.change_ledger.ledger import ChangeLedger, RollbackReport
from provisioner.core.services.selection.graph import ModuleGraph
from provisioner.core.services.selection.plan import ExecutionPlan
from provisioner.core.services.selection.resolver import SelectionIntent, resolve
from provisioner.core.services.state.manager import (
    InvalidStatePolicy,
    ResumeDecision,
    ResumeOptions,
    StateManager,
)

logger = logging.getLogger(__name__)

RESUME_COMMAND = "provision install --resume"


@dataclass
class InstallOptions:
    """Everything the install command line can ask for."""

    intent: SelectionIntent = field(default_factory=SelectionIntent)
    resume: ResumeOptions = field(default_factory=ResumeOptions)
    skip_phases: tuple[str, ...] = ()
    invalid_state_policy: InvalidStatePolicy = InvalidStatePolicy.RESET
    mode: InstallMode | None = None
    mock: bool = False


@dataclass
class InstallResult:
    """Result of an install run."""

    exit_code: int = 0
    error: str | None = None
    plan: ExecutionPlan | None = None
    decision: ResumeDecision | None = None
    report: RunReport | None = None
    rollback: RollbackReport | None = None
    reopened_phases: list[str] = field(default_factory=list)
    interrupted: bool = False
    session_id: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"exit_code": self.exit_code}
        if self.error:
            result["error"] = self.error
        if self.plan is not None:
            result["plan"] = self.plan.to_dict()
        if self.decision is not None:
            result["decision"] = self.decision.value
        if self.session_id:
            result["session_id"] = self.session_id
        if self.report is not None:
            result["report"] = self.report.to_dict()
        if self.rollback is not None:
            result["rollback"] = self.rollback.to_dict()
            result["reopened_phases"] = list(self.reopened_phases)
        if self.interrupted:
            result["interrupted"] = True
        if self.exit_code != 0:
            result["resume_command"] = RESUME_COMMAND
        return result


def _fail(result: InstallResult, message: str, exit_code: int) -> InstallResult:
    result.error = message
    result.exit_code = exit_code
    return result


def run_install(
    settings: Settings,
    options: InstallOptions,
    *,
    graph: ModuleGraph | None = None,
    runner: CommandRunner | None = None,
    verified_fetch: VerifiedFetch | None = None,
    reporter: Reporter | None = None,
    prompt: Callable[[str], str] | None = None,
    confirm_reset: Callable[[StateStatus, str], bool] | None = None,
    is_tty: Callable[[], bool] | None = None,
    retry_policy: RetryPolicy | None = None,
) -> InstallResult:
    """Provision the machine according to *options*.

    Args:
        settings: Loaded settings (state dir, manifest, retry, limits).
        options: Selection intent, resume flags and skip lists.
        graph: Pre-loaded module graph. None = load ``settings.manifest``.
        runner: Subprocess capability. None = shell (or mock with ``options.mock``).
        verified_fetch: Verified installer source for modules that need one.

    Returns:
        InstallResult. Exit code 0 on success, 1 on a phase failure or
        abort, 2 on configuration, selection, lock or persistence errors.
    """
    reporter = reporter or Reporter()
    result = InstallResult()

    # ── Plan ─────────────────────────────────────────────────────
    try:
        if graph is None:
            graph = load_manifest(settings.manifest)
        plan = resolve(graph, options.intent)
        skip_phases = []
        for value in options.skip_phases:
            pid = normalize_phase(value)
            if pid is None:
                raise UnknownPhase(value)
            skip_phases.append(pid)
    except (ConfigError, SelectionError) as e:
        reporter.error(str(e))
        return _fail(result, str(e), e.exit_code)

    result.plan = plan
    for warning in plan.warnings:
        reporter.warn(warning)
    if not plan.entries:
        reporter.warn("No modules selected; nothing to do")
        return result

    if runner is None:
        if options.mock:
            runner = MockCommandRunner()
        else:
            runner = ShellCommandRunner(default_timeout=settings.command_timeout)
    if verified_fetch is None:
        verified_fetch = mock_verified_fetch if options.mock else unconfigured_verified_fetch

    mode = options.mode or settings.mode
    target_user = settings.target_user or getpass.getuser()

    # ── Session ──────────────────────────────────────────────────
    lock = SessionLock(settings.state_dir)
    try:
        lock.acquire()
    except (SessionLocked, PersistenceError) as e:
        reporter.error(str(e))
        return _fail(result, str(e), e.exit_code)

    try:
        state = StateManager(
            settings.state_dir,
            tool_version=__version__,
            mode=mode,
            target_user=target_user,
            reporter=reporter,
            min_free_bytes=settings.min_free_bytes,
            error_output_max_length=settings.error_output_max_length,
        )
        state.ensure_valid(options.invalid_state_policy, confirm_reset)
        decision = state.confirm_resume(options.resume, prompt=prompt, is_tty=is_tty)
        result.decision = decision
        if decision is ResumeDecision.ABORT:
            reporter.warn("Aborted; state left unchanged")
            return _fail(result, "Aborted by user", 1)

        for pid in skip_phases:
            state.phase_skip(pid)

        ledger = ChangeLedger(settings.ledger_dir, runner, reporter=reporter, min_free_bytes=settings.min_free_bytes)
        session = ledger.start_session()
        result.session_id = session.id
        try:
            phase_runner = PhaseRunner(
                graph,
                plan,
                state,
                ledger,
                session,
                runner,
                verified_fetch=verified_fetch,
                retry_policy=retry_policy or RetryPolicy(delays=tuple(settings.retry_delays)),
                reporter=reporter,
                env={"TARGET_USER": target_user, "PROVISION_MODE": mode.value},
                command_timeout=settings.command_timeout,
                error_output_max_length=settings.error_output_max_length,
            )
            report = phase_runner.run()
            result.report = report

            if not report.ok:
                result.exit_code = report.exit_code
                result.error = f"Phase {report.failed_phase} failed at {report.failed_step or 'unknown step'}"
                rollback = ledger.rollback_all_on_failure(session, report.exit_code)
                result.rollback = rollback
                undone = set(rollback.recovered)
                for phase in report.phases:
                    if phase.status == "completed" and phase.changes and undone.issuperset(phase.changes):
                        state.phase_reopen(phase.phase_id)
                        result.reopened_phases.append(phase.phase_id)
                reporter.warn(f"Fix the problem, then resume with: {RESUME_COMMAND}")
            else:
                reporter.success(f"Provisioning complete ({len(report.changes)} change(s) recorded)")
                ledger.cleanup_old_backups(settings.backup_retention_days)
        finally:
            ledger.end_session(session)

    except KeyboardInterrupt:
        result.interrupted = True
        reporter.warn(f"Interrupted; progress is saved. Resume with: {RESUME_COMMAND}")
        return _fail(result, "Interrupted", 1)
    except (StateInvalidError, PersistenceError, LedgerError) as e:
        reporter.error(str(e))
        return _fail(result, str(e), e.exit_code)
    finally:
        lock.release()

    return result
