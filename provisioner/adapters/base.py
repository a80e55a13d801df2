"""
Runner base — the subprocess capability injected into the engine.

The engine and the undo engine only execute commands through a
``CommandRunner``. Real runs use the shell runner; tests and ``--mock``
runs use the mock runner. Runners never raise for a failing command:
the exit code and captured output come back in a CommandResult.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping

from provisioner.core.errors import Permanent
from provisioner.core.models.command import CommandResult

# Supplied by the checksum-verification collaborator: takes an installer
# identifier, returns verified content or raises.
VerifiedFetch = Callable[[str], bytes]


class CommandRunner(ABC):
    """Abstract subprocess capability: ``run(command, env, elevation)``."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Runner identifier (e.g. 'shell', 'mock')."""

    @abstractmethod
    def run(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        elevated: bool = False,
        input: bytes | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run *command* to completion and return its result.

        MUST NOT raise for a non-zero exit or a timeout; a timed-out
        command is reported as a failure with ``timed_out=True``.
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


def unconfigured_verified_fetch(identifier: str) -> bytes:
    """Default collaborator when no verifier is wired in."""
    raise Permanent(1, f"No verified installer source configured for '{identifier}'", step=identifier)
