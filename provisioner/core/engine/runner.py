"""
Phase runner — executes an ExecutionPlan phase by phase.

For each phase in canonical order the State Manager decides whether to
skip; otherwise the phase's planned modules run in plan order, one step
per module. Every module that ran is recorded in the change ledger with
the change ids of its dependencies from this session as ``depends_on``.
The runner stops at the first failed phase; rollback is the caller's
decision.
"""

from __future__ import annotations

import logging
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from provisioner.adapters.base import CommandRunner, VerifiedFetch, unconfigured_verified_fetch
from provisioner.core.errors import LedgerError, PersistenceError, Permanent, StepFailed
from provisioner.core.models.change import BackupInfo
from provisioner.core.models.module import Module
from provisioner.core.models.phase import PHASES, Phase
from provisioner.core.observability.reporter import Reporter
from provisioner.core.reliability.retry import RetryPolicy, call_with_retry, run_with_retry
from provisioner.core.services.change_ledger.backups import build_restore_command
from provisioner.core.services.change_ledger.ledger import ChangeLedger
from provisioner.core.services.change_ledger.session import Session
from provisioner.core.services.error_analysis import (
    ERROR_OUTPUT_MAX_LENGTH,
    analyse_failure,
    truncate_output,
)
from provisioner.core.services.selection.graph import ModuleGraph
from provisioner.core.services.selection.plan import ExecutionPlan
from provisioner.core.services.state.manager import StateManager

logger = logging.getLogger(__name__)


@dataclass
class PhaseResult:
    """Outcome of one phase in this run."""

    phase_id: str
    name: str
    status: str = "pending"   # completed, skipped, failed, empty
    modules: list[str] = field(default_factory=list)
    changes: list[str] = field(default_factory=list)
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase_id,
            "name": self.name,
            "status": self.status,
            "modules": list(self.modules),
            "changes": list(self.changes),
            "detail": self.detail,
        }


@dataclass
class RunReport:
    """What the runner did, in order."""

    exit_code: int = 0
    phases: list[PhaseResult] = field(default_factory=list)
    failed_phase: str | None = None
    failed_step: str | None = None
    step_exit_code: int | None = None
    error_output: str = ""
    remediation: dict | None = None
    already_installed: list[str] = field(default_factory=list)
    optional_failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def changes(self) -> list[str]:
        return [cid for p in self.phases for cid in p.changes]

    @property
    def completed_phases(self) -> list[str]:
        return [p.phase_id for p in self.phases if p.status == "completed"]

    def phase(self, phase_id: str) -> PhaseResult | None:
        for p in self.phases:
            if p.phase_id == phase_id:
                return p
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "phases": [p.to_dict() for p in self.phases],
            "failed_phase": self.failed_phase,
            "failed_step": self.failed_step,
            "step_exit_code": self.step_exit_code,
            "error_output": self.error_output,
            "remediation": self.remediation,
            "changes": self.changes,
            "already_installed": list(self.already_installed),
            "optional_failures": list(self.optional_failures),
        }


class PhaseRunner:
    """Drive the plan through the State Manager and the change ledger."""

    def __init__(
        self,
        graph: ModuleGraph,
        plan: ExecutionPlan,
        state: StateManager,
        ledger: ChangeLedger,
        session: Session,
        runner: CommandRunner,
        *,
        verified_fetch: VerifiedFetch = unconfigured_verified_fetch,
        retry_policy: RetryPolicy | None = None,
        reporter: Reporter | None = None,
        env: Mapping[str, str] | None = None,
        command_timeout: float | None = None,
        error_output_max_length: int = ERROR_OUTPUT_MAX_LENGTH,
    ):
        self._graph = graph
        self._plan = plan
        self._state = state
        self._ledger = ledger
        self._session = session
        self._runner = runner
        self._verified_fetch = verified_fetch
        self._retry = retry_policy or RetryPolicy()
        self._reporter = reporter or Reporter()
        self._env = dict(env or {})
        self._timeout = command_timeout
        self._max_output = error_output_max_length
        self._change_by_module: dict[str, str] = {}

    def run(self) -> RunReport:
        report = RunReport()
        for phase in PHASES:
            entries = self._plan.for_phase(phase.id)
            result = PhaseResult(phase.id, phase.name, modules=[e.module_id for e in entries])
            report.phases.append(result)

            if not entries:
                result.status = "empty"
                logger.debug("No planned modules in %s", phase.id)
                continue

            reason = self._state.skip_reason(phase.id)
            if reason:
                result.status = "skipped"
                result.detail = reason

            code = self._state.run_phase(
                phase.id,
                phase.name,
                lambda phase=phase, result=result: self._run_phase(phase, result, report),
            )
            if reason:
                continue
            if code == 0:
                result.status = "completed"
                continue

            result.status = "failed"
            state = self._state.state
            report.exit_code = 1
            report.step_exit_code = code
            report.failed_phase = phase.id
            report.failed_step = state.failed_step
            report.remediation = analyse_failure(report.error_output)
            self._report_failure(phase, report)
            break

        return report

    # ── Phase body ───────────────────────────────────────────────

    def _run_phase(self, phase: Phase, result: PhaseResult, report: RunReport) -> None:
        for entry in self._plan.for_phase(phase.id):
            module = self._graph.get(entry.module_id)
            try:
                change_id = self._run_module(module, report)
            except StepFailed as e:
                report.error_output = truncate_output(e.output, self._max_output)
                raise
            if change_id:
                result.changes.append(change_id)

    def _run_module(self, module: Module, report: RunReport) -> str | None:
        """Install one module. Returns the change id, or None if nothing changed."""
        self._state.step_update(module.id)
        env = {**self._env, "PROVISION_MODULE": module.id}

        if module.installed_check:
            check = self._runner.run(module.installed_check, env=env, elevated=module.elevated, timeout=self._timeout)
            if check.ok:
                self._reporter.info(f"{module.id}: already installed")
                report.already_installed.append(module.id)
                return None

        self._reporter.info(f"Installing {module.id}")
        backups: list[BackupInfo] = []
        try:
            for path in module.backup_paths:
                try:
                    info = self._ledger.create_backup(self._session, path)
                except (LedgerError, PersistenceError) as e:
                    raise StepFailed(1, str(e), step=module.id) from e
                if info is not None:
                    backups.append(info)
            self._execute(module, env)
        except StepFailed as e:
            if not module.optional:
                e.step = e.step or module.id
                raise
            self._reporter.warn(f"{module.id} (optional) failed with exit code {e.step_exit_code}; continuing")
            self._state.tool_skip(module.id)
            report.optional_failures.append(module.id)
            return None

        undo = " && ".join(c for c in (build_restore_command(backups), module.undo) if c)
        depends_on = [self._change_by_module[d] for d in module.dependencies if d in self._change_by_module]
        try:
            change_id = self._ledger.record_change(
                self._session,
                module.category.value,
                f"Installed {module.id}" + (f": {module.description}" if module.description else ""),
                undo,
                requires_elevation=module.elevated,
                files_affected=[b.original_path for b in backups],
                backups=backups,
                depends_on=depends_on,
            )
        except (LedgerError, PersistenceError) as e:
            raise StepFailed(1, str(e), step=module.id) from e
        self._change_by_module[module.id] = change_id
        self._reporter.success(f"{module.id} installed")
        return change_id

    def _execute(self, module: Module, env: dict[str, str]) -> None:
        installer = module.verified_installer
        if installer is not None:
            content = call_with_retry(
                lambda: self._verified_fetch(installer.tool),
                self._retry,
                step=f"{module.id} fetch",
            )
            command = " ".join([installer.runner, *(shlex.quote(a) for a in installer.args)])
            run_with_retry(
                lambda: self._runner.run(command, env=env, elevated=module.elevated, input=content, timeout=self._timeout),
                self._retry,
                step=module.id,
            )

        for command in module.install:
            run_with_retry(
                lambda command=command: self._runner.run(
                    command, env=env, elevated=module.elevated, timeout=self._timeout
                ),
                self._retry,
                step=module.id,
            )

        for command in module.verify:
            result = self._runner.run(command, env=env, elevated=module.elevated, timeout=self._timeout)
            if not result.ok:
                raise Permanent(result.exit_code, result.output, step=f"{module.id} (verify)")

    def _report_failure(self, phase: Phase, report: RunReport) -> None:
        logger.error("Phase %s failed at %s (exit %s)", phase.id, report.failed_step, report.step_exit_code)
        if report.error_output:
            self._reporter.error(report.error_output)
        if report.remediation:
            self._reporter.info(f"Likely cause: {report.remediation['cause']}")
            self._reporter.info(f"Suggestion: {report.remediation['suggestion']}")
