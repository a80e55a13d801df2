"""
Domain models — pydantic types for the orchestrator.

All models are re-exported here for convenient access:

    from provisioner.core.models import InstallationState, Module, ChangeRecord
"""

from provisioner.core.models.change import BackupInfo, ChangeRecord, Severity, UndoRecord
from provisioner.core.models.command import CommandResult
from provisioner.core.models.module import Module, ModuleCategory, RunAs, VerifiedInstaller
from provisioner.core.models.phase import PHASE_IDS, PHASES, Phase
from provisioner.core.models.state import (
    CURRENT_SCHEMA_VERSION,
    InstallationState,
    InstallMode,
    StateStatus,
)

__all__ = [
    # change.py
    "BackupInfo",
    "ChangeRecord",
    "Severity",
    "UndoRecord",
    # command.py
    "CommandResult",
    # module.py
    "Module",
    "ModuleCategory",
    "RunAs",
    "VerifiedInstaller",
    # phase.py
    "PHASES",
    "PHASE_IDS",
    "Phase",
    # state.py
    "CURRENT_SCHEMA_VERSION",
    "InstallMode",
    "InstallationState",
    "StateStatus",
]
