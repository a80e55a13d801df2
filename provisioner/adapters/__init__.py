"""Runners — the subprocess capability used by the engine and undo engine.

Public re-exports for convenient access.
"""

from provisioner.adapters.base import CommandRunner, VerifiedFetch, unconfigured_verified_fetch
from provisioner.adapters.mock import MockCommandRunner, mock_verified_fetch
from provisioner.adapters.shell.command import ShellCommandRunner

__all__ = [
    "CommandRunner",
    "MockCommandRunner",
    "ShellCommandRunner",
    "VerifiedFetch",
    "mock_verified_fetch",
    "unconfigured_verified_fetch",
]
