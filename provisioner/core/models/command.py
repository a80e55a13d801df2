"""
CommandResult — the execution contract between the engine and runners.

Runners return a CommandResult for every command they are asked to run.
A non-zero exit is data, not an exception: the engine decides whether
it is retryable, permanent, or tolerable.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class CommandResult(BaseModel):
    """Outcome of one subprocess invocation."""

    command: str
    exit_code: int
    output: str = ""                 # stdout and stderr, interleaved as captured
    elevated: bool = False
    started_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0
    timed_out: bool = False

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Whether the command exited zero."""
        return self.exit_code == 0

    @classmethod
    def success(cls, command: str, output: str = "", **kwargs: Any) -> CommandResult:
        """Create a zero-exit result."""
        return cls(command=command, exit_code=0, output=output, **kwargs)

    @classmethod
    def failure(cls, command: str, exit_code: int = 1, output: str = "", **kwargs: Any) -> CommandResult:
        """Create a failed result."""
        return cls(command=command, exit_code=exit_code, output=output, **kwargs)
