"""
Undo use case — reverse recorded changes from the command line.

Targets are explicit change ids (in the order given), every live change
(``--all``), or every live change of one category. Bulk targets are
undone newest first so dependents go before what they depend on.
A real run is a ledger session: verified and repaired at the start,
checkpointed at the end. A dry run only reads.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from provisioner.adapters.base import CommandRunner
from provisioner.adapters.shell.command import ShellCommandRunner
from provisioner.core.errors import LedgerError, PersistenceError, ProvisionError, SessionLocked
from provisioner.core.models.settings import Settings
from provisioner.core.observability.reporter import Reporter
from provisioner.core.persistence.lock import SessionLock
from provisioner.core.services.change_ledger.ledger import (
    ChangeEntry,
    ChangeLedger,
    IntegrityReport,
    UndoOutcome,
)
from provisioner.core.services.change_ledger.session import Session

logger = logging.getLogger(__name__)


@dataclass
class UndoOptions:
    change_ids: tuple[str, ...] = ()
    all: bool = False
    category: str | None = None
    force: bool = False
    skip_dependency_check: bool = False
    dry_run: bool = False


@dataclass
class UndoResult:
    """Per-change outcomes of one undo invocation."""

    outcomes: list[UndoOutcome] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    exit_code: int = 0

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "exit_code": self.exit_code,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "errors": dict(self.errors),
        }
        if self.error:
            result["error"] = self.error
        return result


def _ledger(settings: Settings, runner: CommandRunner | None, reporter: Reporter | None) -> ChangeLedger:
    return ChangeLedger(
        settings.ledger_dir,
        runner or ShellCommandRunner(default_timeout=settings.command_timeout),
        reporter=reporter,
        min_free_bytes=settings.min_free_bytes,
    )


def list_changes(settings: Settings, category: str | None = None) -> list[ChangeEntry]:
    """Every readable change, oldest first, with undo status."""
    return _ledger(settings, None, None).list_changes(category)


def verify_ledger(settings: Settings) -> IntegrityReport:
    """Integrity check without modifying anything."""
    return _ledger(settings, None, None).verify_integrity()


def _targets(ledger: ChangeLedger, options: UndoOptions) -> list[str]:
    if options.change_ids:
        return list(dict.fromkeys(options.change_ids))
    entries = ledger.list_changes(options.category if not options.all else None)
    return [e.record.id for e in reversed(entries) if not e.undone]


def run_undo(
    settings: Settings,
    options: UndoOptions,
    *,
    runner: CommandRunner | None = None,
    reporter: Reporter | None = None,
) -> UndoResult:
    """Undo the selected changes under the session lock.

    Returns:
        UndoResult. Exit code 0 when every targeted change is undone (or
        already was), 1 when any undo failed or was refused, 2 when the
        lock or the ledger directory is unavailable.
    """
    reporter = reporter or Reporter()
    result = UndoResult()

    if not (options.change_ids or options.all or options.category):
        result.error = "Nothing to undo: give change ids, --all or --category"
        result.exit_code = 2
        return result

    lock = SessionLock(settings.state_dir)
    try:
        lock.acquire()
    except (SessionLocked, PersistenceError) as e:
        reporter.error(str(e))
        result.error = str(e)
        result.exit_code = e.exit_code
        return result

    try:
        ledger = _ledger(settings, runner, reporter)
        if options.dry_run:
            session = Session()
        else:
            session = ledger.start_session()
        try:
            _undo_targets(ledger, session, options, reporter, result)
        finally:
            if not options.dry_run:
                ledger.cleanup_old_backups(settings.backup_retention_days)
                ledger.end_session(session)
    except ProvisionError as e:
        reporter.error(str(e))
        result.error = str(e)
        result.exit_code = e.exit_code
    finally:
        lock.release()

    logger.info("Undo finished: %d outcome(s), %d error(s)", len(result.outcomes), len(result.errors))
    return result


def _undo_targets(
    ledger: ChangeLedger,
    session: Session,
    options: UndoOptions,
    reporter: Reporter,
    result: UndoResult,
) -> None:
    targets = _targets(ledger, options)
    if not targets:
        reporter.info("No changes to undo")
        return

    for change_id in targets:
        try:
            outcome = ledger.undo(
                change_id,
                session=session,
                force=options.force,
                skip_dependency_check=options.skip_dependency_check,
                dry_run=options.dry_run,
            )
        except LedgerError as e:
            reporter.error(str(e))
            result.errors[change_id] = str(e)
            result.exit_code = max(result.exit_code, e.exit_code)
            continue
        result.outcomes.append(outcome)
        if outcome.dry_run:
            reporter.info(f"[dry-run] {change_id}: {outcome.output}")
        elif outcome.already_undone:
            reporter.info(f"{change_id} already undone")
        elif not outcome.ok:
            result.errors[change_id] = f"undo command exited {outcome.exit_code}"
            result.exit_code = max(result.exit_code, 1)
