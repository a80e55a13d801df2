"""
Mock runner — scripted test double for the subprocess capability.

Used by ``--mock`` runs and by tests. Succeeds for everything unless a
response is scripted for a command (exact match, or by substring).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from provisioner.adapters.base import CommandRunner
from provisioner.core.models.command import CommandResult


@dataclass
class MockCall:
    """One recorded invocation."""

    command: str
    env: dict[str, str] | None
    elevated: bool
    input: bytes | None


class MockCommandRunner(CommandRunner):
    """Universal mock runner.

    Responses are matched exact-first, then by substring in the order
    they were scripted. A scripted list of results is consumed one per
    call (the last one repeats), which models transient failures.
    """

    def __init__(self, default_output: str = "[mock] executed"):
        self._default_output = default_output
        self._exact: dict[str, list[CommandResult]] = {}
        self._contains: list[tuple[str, list[CommandResult]]] = []
        self._call_log: list[MockCall] = []

    @property
    def name(self) -> str:
        return "mock"

    @property
    def call_log(self) -> list[MockCall]:
        """Every call this mock has received."""
        return self._call_log

    @property
    def commands(self) -> list[str]:
        return [c.command for c in self._call_log]

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    def set_result(self, command: str, *results: CommandResult) -> None:
        """Script the result(s) for an exact command."""
        self._exact[command] = list(results)

    def set_failure(self, pattern: str, exit_code: int = 1, output: str = "Mock failure") -> None:
        """Make every command containing *pattern* fail."""
        self._contains.append((pattern, [CommandResult.failure(pattern, exit_code=exit_code, output=output)]))

    def set_sequence(self, pattern: str, *exit_codes: int, output: str = "") -> None:
        """Commands containing *pattern* return these exit codes in turn."""
        self._contains.append(
            (pattern, [CommandResult(command=pattern, exit_code=code, output=output) for code in exit_codes])
        )

    def run(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        elevated: bool = False,
        input: bytes | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        self._call_log.append(MockCall(command, dict(env) if env else None, elevated, input))

        scripted = self._exact.get(command)
        if scripted is None:
            for pattern, results in self._contains:
                if pattern in command:
                    scripted = results
                    break

        if scripted:
            template = scripted.pop(0) if len(scripted) > 1 else scripted[0]
            return template.model_copy(update={"command": command, "elevated": elevated})

        return CommandResult.success(command, output=self._default_output, elevated=elevated, metadata={"mock": True})

    def reset(self) -> None:
        """Clear call log and scripted responses."""
        self._call_log.clear()
        self._exact.clear()
        self._contains.clear()


def mock_verified_fetch(identifier: str) -> bytes:
    """Verified-content stand-in for ``--mock`` runs."""
    return f"# mock installer for {identifier}\n".encode()
