"""
Error taxonomy — every failure the core raises, by subsystem.

Callers branch on type, never on message text. Exit-code mapping lives
in the CLI layer: ``ProvisionError.exit_code`` is the default severity
(1 = recoverable / partial, 2 = hard failure).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from provisioner.core.models.state import StateStatus


class ProvisionError(Exception):
    """Base class for all orchestrator errors."""

    exit_code = 2


class ConfigError(ProvisionError):
    """Raised when settings or the module manifest cannot be loaded."""


class SessionLocked(ProvisionError):
    """Another install session holds the exclusive lock."""

    def __init__(self, lock_path: str, holder: str = ""):
        self.lock_path = lock_path
        self.holder = holder
        detail = f" (held by pid {holder})" if holder else ""
        super().__init__(f"Another session is active{detail}: {lock_path}")


# ── Persistence ─────────────────────────────────────────────────


class PersistenceError(ProvisionError):
    """An atomic write to the state or ledger files failed."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"{message}: {path}")


class DiskFull(PersistenceError):
    """Not enough free space in the target directory."""


class PermissionDenied(PersistenceError):
    """Target directory or file is not writable."""


class WriteFailed(PersistenceError):
    """Any other I/O failure during write, fsync or rename."""


# ── State validation ────────────────────────────────────────────


class StateInvalidError(ProvisionError):
    """State file failed validation and the policy says keep-and-abort."""

    def __init__(self, status: StateStatus, path: str):
        self.status = status
        self.path = path
        super().__init__(f"State file {path} is {status.value}; refusing to reset it")


# ── Ledger ──────────────────────────────────────────────────────


class LedgerError(ProvisionError):
    """Base for change ledger and undo failures."""

    exit_code = 1


class ChecksumMismatch(LedgerError):
    """A change record's checksum does not match its content."""

    def __init__(self, change_id: str, line: int | None = None):
        self.change_id = change_id
        self.line = line
        where = f" (line {line})" if line else ""
        super().__init__(f"Checksum mismatch for {change_id}{where}: record was modified")


class BackupMissing(LedgerError):
    """A backup referenced by a change record no longer exists."""

    def __init__(self, backup_path: str):
        self.backup_path = backup_path
        super().__init__(f"Backup file missing: {backup_path}")


class BackupCorrupt(LedgerError):
    """A backup's content no longer matches its recorded checksum."""

    def __init__(self, backup_path: str):
        self.backup_path = backup_path
        super().__init__(f"Backup file corrupt (checksum mismatch): {backup_path}")


class BackupVerificationFailed(LedgerError):
    """The copy and the original differed right after backing up."""

    def __init__(self, original_path: str):
        self.original_path = original_path
        super().__init__(f"Backup verification failed (file changed during copy): {original_path}")


class DependentNotUndone(LedgerError):
    """A later change that depends on this one has not been undone yet."""

    def __init__(self, change_id: str, dependents: list[str]):
        self.change_id = change_id
        self.dependents = dependents
        super().__init__(
            f"Cannot undo {change_id}: undo {', '.join(dependents)} first "
            "(or use --force)"
        )


class UnknownChangeId(LedgerError):
    """No change record with this id exists."""

    def __init__(self, change_id: str):
        self.change_id = change_id
        super().__init__(f"Unknown change id: {change_id}")


class NotReversible(LedgerError):
    """The change was recorded without an undo command."""

    def __init__(self, change_id: str):
        self.change_id = change_id
        super().__init__(f"Change {change_id} is not reversible")


# ── Selection ───────────────────────────────────────────────────


class SelectionError(ProvisionError):
    """Base for module selection failures; all are hard failures."""


class ModuleGraphError(SelectionError):
    """The declared module graph is structurally invalid."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Invalid module graph: " + "; ".join(errors))


class UnknownModule(SelectionError):
    """A module id given on the command line is not in the graph."""

    def __init__(self, module_id: str, flag: str = ""):
        self.module_id = module_id
        self.flag = flag
        where = f" in {flag}" if flag else ""
        super().__init__(f"Unknown module{where}: {module_id}")


class UnknownPhase(SelectionError):
    """A phase given to --only-phase / --skip-phase does not exist."""

    def __init__(self, phase: str):
        self.phase = phase
        super().__init__(f"Unknown phase: {phase}")


class ContradictorySelection(SelectionError):
    """A module is requested by id and excluded by a skip rule."""

    def __init__(self, module_id: str, skip_rule: str):
        self.module_id = module_id
        self.skip_rule = skip_rule
        super().__init__(
            f"Module '{module_id}' is requested by --only but excluded by {skip_rule}"
        )


class UnsatisfiableDependency(SelectionError):
    """Dependency closure reached a module the user skipped."""

    def __init__(self, requester: str, dependency: str, chain: list[str], skip_rule: str = ""):
        self.requester = requester
        self.dependency = dependency
        self.chain = chain
        self.skip_rule = skip_rule
        rule = f" ({skip_rule})" if skip_rule else ""
        super().__init__(
            f"Module '{requester}' requires '{dependency}', which is skipped{rule}. "
            f"Dependency chain: {' -> '.join(chain)}"
        )


# ── Execution ───────────────────────────────────────────────────


class StepFailed(ProvisionError):
    """A phase step exited non-zero."""

    exit_code = 1

    def __init__(self, exit_code: int, output: str = "", step: str = ""):
        self.step_exit_code = exit_code
        self.output = output
        self.step = step
        label = f"{step}: " if step else ""
        super().__init__(f"{label}command failed with exit code {exit_code}")


class RetryableTransient(StepFailed):
    """A failure that may succeed on retry (DNS, connect, timeout)."""


class Permanent(StepFailed):
    """A failure that will not change on retry (HTTP 4xx, checksum)."""
