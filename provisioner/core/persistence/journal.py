"""
Journal — typed append-only NDJSON log.

One JSON object per line. Appends go through the atomic-write
primitive, so a line is either fully present or absent. Readers replay
the whole file and get every line back, including the ones that fail to
parse, so integrity checks can report them by line number instead of
silently skipping them.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from provisioner.core.persistence.atomic import MIN_FREE_BYTES, append_line_atomic, write_atomic

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


@dataclass
class JournalLine(Generic[RecordT]):
    """One replayed line: the raw text, its decoded form, or why it failed."""

    number: int
    raw: str
    data: dict[str, Any] | None = None
    record: RecordT | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.record is not None


def encode_record(record: BaseModel) -> str:
    """Serialize a record as a single compact JSON line (no newline)."""
    return json.dumps(record.model_dump(mode="json"), ensure_ascii=False, separators=(",", ":"))


class Journal(Generic[RecordT]):
    """Append-only log of one pydantic record type."""

    def __init__(self, path: Path, model: type[RecordT], min_free_bytes: int = MIN_FREE_BYTES):
        self._path = path
        self._model = model
        self._min_free_bytes = min_free_bytes

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def append(self, record: RecordT) -> None:
        """Atomically append *record* as a new line."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        append_line_atomic(self._path, encode_record(record), min_free_bytes=self._min_free_bytes)
        logger.debug("Appended %s to %s", type(record).__name__, self._path.name)

    def replay(self) -> Iterator[JournalLine[RecordT]]:
        """Yield every non-blank line, oldest first."""
        if not self._path.is_file():
            return
        with self._path.open("r", encoding="utf-8", errors="replace") as f:
            for number, raw in enumerate(f, start=1):
                raw = raw.rstrip("\n")
                if not raw.strip():
                    continue
                yield self._decode(number, raw)

    def records(self) -> list[RecordT]:
        """All records that parse, oldest first. Corrupt lines are logged."""
        result: list[RecordT] = []
        for line in self.replay():
            if line.record is not None:
                result.append(line.record)
            else:
                logger.warning("Skipping corrupt line %d in %s: %s", line.number, self._path.name, line.error)
        return result

    def line_count(self) -> int:
        """Count non-blank lines, parseable or not."""
        if not self._path.is_file():
            return 0
        with self._path.open("r", encoding="utf-8", errors="replace") as f:
            return sum(1 for line in f if line.strip())

    def rewrite(self, raw_lines: list[str]) -> None:
        """Atomically replace the whole journal with *raw_lines*."""
        content = "".join(line + "\n" for line in raw_lines)
        write_atomic(self._path, content, min_free_bytes=self._min_free_bytes)

    def _decode(self, number: int, raw: str) -> JournalLine[RecordT]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            return JournalLine(number=number, raw=raw, error=f"invalid JSON ({e.msg})")
        if not isinstance(data, dict):
            return JournalLine(number=number, raw=raw, error="not a JSON object")
        try:
            record = self._model.model_validate(data)
        except ValidationError as e:
            return JournalLine(number=number, raw=raw, data=data, error=f"invalid record ({e.error_count()} errors)")
        return JournalLine(number=number, raw=raw, data=data, record=record)
