"""
ExecutionPlan — the resolver's output, consumed by the phase runner.

Built fresh per run and never persisted. Every module of the graph
appears exactly once: either as a PlanEntry with an inclusion reason or
in ``excluded`` with an exclusion reason.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from provisioner.core.models.phase import PHASE_IDS


class InclusionReason(str, Enum):
    EXPLICIT = "explicit"
    DEPENDENCY = "dependency"
    PHASE = "phase"
    DEFAULT = "default"


class ExclusionReason(str, Enum):
    NOT_SELECTED = "not-selected"
    EXPLICITLY_SKIPPED = "explicitly-skipped"
    DISABLED_BY_DEFAULT = "disabled-by-default"
    FILTERED_BY_PHASE = "filtered-by-phase"


@dataclass(frozen=True)
class PlanEntry:
    module_id: str
    phase: str
    reason: InclusionReason
    detail: str = ""   # e.g. "dependency of git"

    def to_dict(self) -> dict[str, str]:
        return {
            "module": self.module_id,
            "phase": self.phase,
            "reason": self.reason.value,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class Exclusion:
    reason: ExclusionReason
    detail: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"reason": self.reason.value, "detail": self.detail}


@dataclass
class ExecutionPlan:
    """Ordered modules to run, plus why everything else is left out."""

    entries: list[PlanEntry] = field(default_factory=list)
    excluded: dict[str, Exclusion] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    no_deps: bool = False

    def __contains__(self, module_id: object) -> bool:
        return any(e.module_id == module_id for e in self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def module_ids(self) -> list[str]:
        return [e.module_id for e in self.entries]

    def for_phase(self, phase_id: str) -> list[PlanEntry]:
        return [e for e in self.entries if e.phase == phase_id]

    def phases(self) -> list[str]:
        """Phases with at least one planned module, in canonical order."""
        used = {e.phase for e in self.entries}
        return [pid for pid in PHASE_IDS if pid in used]

    def entry(self, module_id: str) -> PlanEntry | None:
        for e in self.entries:
            if e.module_id == module_id:
                return e
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "modules": [e.to_dict() for e in self.entries],
            "excluded": {mid: ex.to_dict() for mid, ex in self.excluded.items()},
            "warnings": list(self.warnings),
            "no_deps": self.no_deps,
        }
