"""
Module selection resolver — user intent to a conflict-free ExecutionPlan.

Pure: no I/O. Given the same graph and intent, ``resolve`` returns an
identical plan; every observable ordering comes from the graph's
canonical order or from the order of the command-line values.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass

from provisioner.core.errors import (
    ContradictorySelection,
    SelectionError,
    UnknownModule,
    UnknownPhase,
    UnsatisfiableDependency,
)
from provisioner.core.models.module import ModuleCategory
from provisioner.core.models.phase import normalize_phase
from provisioner.core.services.selection.graph import ModuleGraph
from provisioner.core.services.selection.plan import (
    Exclusion,
    ExclusionReason,
    ExecutionPlan,
    InclusionReason,
    PlanEntry,
)

logger = logging.getLogger(__name__)

NO_DEPS_WARNING = "--no-deps disables dependency closure; install may be incomplete."


@dataclass(frozen=True)
class SelectionIntent:
    """What the user asked for on the command line."""

    only_modules: tuple[str, ...] = ()
    only_phases: tuple[str, ...] = ()
    skip_modules: tuple[str, ...] = ()
    skip_tags: tuple[str, ...] = ()
    skip_categories: tuple[str, ...] = ()
    no_deps: bool = False


@dataclass(frozen=True)
class _SkipRule:
    flag: str      # as typed, e.g. "--skip-tag slow"
    detail: str    # exclusion detail, e.g. "skipped tag slow"


def _canonical(graph: ModuleGraph, name: str, flag: str) -> str:
    mid = graph.canonical_id(name)
    if mid is None:
        raise UnknownModule(name, flag)
    return mid


def _skip_rules(graph: ModuleGraph, intent: SelectionIntent, warnings: list[str]) -> dict[str, _SkipRule]:
    rules: dict[str, _SkipRule] = {}

    for name in intent.skip_modules:
        mid = _canonical(graph, name, "--skip")
        rules.setdefault(mid, _SkipRule(f"--skip {name}", "explicitly skipped"))

    known_tags = set(graph.tags())
    for tag in intent.skip_tags:
        if tag not in known_tags:
            warnings.append(f"No module has tag '{tag}'")
        for m in graph:
            if tag in m.tags:
                rules.setdefault(m.id, _SkipRule(f"--skip-tag {tag}", f"skipped tag {tag}"))

    valid_categories = {c.value for c in ModuleCategory}
    for category in intent.skip_categories:
        if category not in valid_categories:
            raise SelectionError(
                f"Unknown category: {category} (valid: {', '.join(sorted(valid_categories))})"
            )
        for m in graph:
            if m.category.value == category:
                rules.setdefault(m.id, _SkipRule(f"--skip-category {category}", f"skipped category {category}"))

    return rules


def _chain(parent: dict[str, str | None], start: str) -> list[str]:
    chain = [start]
    node = parent.get(start)
    while node is not None:
        chain.append(node)
        node = parent.get(node)
    chain.reverse()
    return chain


def resolve(graph: ModuleGraph, intent: SelectionIntent) -> ExecutionPlan:
    """Compute the ExecutionPlan for *intent* over *graph*.

    Raises:
        UnknownModule / UnknownPhase: a named module or phase does not exist.
        ContradictorySelection: a module is both requested and skipped.
        UnsatisfiableDependency: closure reached a skipped module.
        SelectionError: unknown category.
    """
    warnings: list[str] = []

    # ── Desired set ──────────────────────────────────────────────
    only = [_canonical(graph, name, "--only") for name in intent.only_modules]
    phases: list[str] = []
    if only and intent.only_phases:
        warnings.append("--only-phase is ignored because --only was given")
    elif intent.only_phases:
        for value in intent.only_phases:
            pid = normalize_phase(value)
            if pid is None:
                raise UnknownPhase(value)
            if pid not in phases:
                phases.append(pid)

    skip = _skip_rules(graph, intent, warnings)

    desired: dict[str, tuple[InclusionReason, str]] = {}
    if only:
        for name, mid in zip(intent.only_modules, only):
            if mid in skip:
                raise ContradictorySelection(mid, f"{skip[mid].flag} (requested as --only {name})")
            desired.setdefault(mid, (InclusionReason.EXPLICIT, "explicitly requested"))
    elif phases:
        for m in graph:
            if m.phase in phases and m.id not in skip:
                desired[m.id] = (InclusionReason.PHASE, f"phase {m.phase}")
    else:
        for m in graph:
            if m.default_enabled and m.id not in skip:
                desired[m.id] = (InclusionReason.DEFAULT, "default")

    # ── Dependency closure ───────────────────────────────────────
    included = dict(desired)
    if not intent.no_deps:
        parent: dict[str, str | None] = {mid: None for mid in desired}
        queue = deque(graph.sort(desired))
        while queue:
            current = queue.popleft()
            for dep in graph.get(current).dependencies:
                if dep in skip:
                    chain = _chain(parent, current) + [dep]
                    raise UnsatisfiableDependency(current, dep, chain, skip[dep].flag)
                if dep not in included:
                    included[dep] = (InclusionReason.DEPENDENCY, f"dependency of {current}")
                    parent[dep] = current
                    queue.append(dep)
    else:
        warnings.insert(0, NO_DEPS_WARNING)
        for mid in graph.sort(included):
            for dep in graph.get(mid).dependencies:
                if dep in included:
                    continue
                why = skip[dep].detail if dep in skip else "not selected"
                warnings.append(f"{mid} depends on {dep}, which is not in the plan ({why})")

    # ── Plan ─────────────────────────────────────────────────────
    entries = [
        PlanEntry(mid, graph.get(mid).phase, included[mid][0], included[mid][1])
        for mid in graph.sort(included)
    ]

    excluded: dict[str, Exclusion] = {}
    for m in graph:
        if m.id in included:
            continue
        if m.id in skip:
            excluded[m.id] = Exclusion(ExclusionReason.EXPLICITLY_SKIPPED, skip[m.id].detail)
        elif only:
            excluded[m.id] = Exclusion(ExclusionReason.NOT_SELECTED, "not requested")
        elif phases:
            excluded[m.id] = Exclusion(ExclusionReason.FILTERED_BY_PHASE, f"phase {m.phase} not selected")
        elif not m.default_enabled:
            excluded[m.id] = Exclusion(ExclusionReason.DISABLED_BY_DEFAULT, "disabled by default")
        else:
            excluded[m.id] = Exclusion(ExclusionReason.NOT_SELECTED)

    for w in warnings:
        logger.warning(w)
    logger.info("Resolved plan: %d module(s), %d excluded", len(entries), len(excluded))
    return ExecutionPlan(entries=entries, excluded=excluded, warnings=warnings, no_deps=intent.no_deps)
