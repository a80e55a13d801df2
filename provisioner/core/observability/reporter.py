"""
Reporter — the narrow presentation interface used by the core.

Phase and step transitions are reported through ``info / warn / error
/ success``. The base class does nothing, so core code runs unchanged in
tests and never depends on what (if anything) gets displayed.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class Reporter:
    """No-op reporter. Subclass and override what you want to show."""

    def info(self, message: str) -> None:
        pass

    def warn(self, message: str) -> None:
        pass

    def error(self, message: str) -> None:
        pass

    def success(self, message: str) -> None:
        pass


NullReporter = Reporter


class LoggingReporter(Reporter):
    """Forward every report to a logger."""

    def __init__(self, log: logging.Logger | None = None):
        self._log = log or logger

    def info(self, message: str) -> None:
        self._log.info(message)

    def warn(self, message: str) -> None:
        self._log.warning(message)

    def error(self, message: str) -> None:
        self._log.error(message)

    def success(self, message: str) -> None:
        self._log.info(message)


class RecordingReporter(Reporter):
    """Keep every message as ``(level, message)``; used by tests and --json."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    def info(self, message: str) -> None:
        self.messages.append(("info", message))

    def warn(self, message: str) -> None:
        self.messages.append(("warn", message))

    def error(self, message: str) -> None:
        self.messages.append(("error", message))

    def success(self, message: str) -> None:
        self.messages.append(("success", message))

    def of_level(self, level: str) -> list[str]:
        return [m for lvl, m in self.messages if lvl == level]
