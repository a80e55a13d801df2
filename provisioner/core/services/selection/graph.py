"""
Module graph — validated, ordered view of the declared modules.

The manifest's declaration order is the canonical order. Validation
runs once at load time: duplicate ids or aliases, unknown dependencies,
unknown phases, cycles (Kahn's algorithm), and dependencies that would
run after their dependent are all rejected.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from provisioner.core.errors import ModuleGraphError
from provisioner.core.models.module import Module
from provisioner.core.models.phase import PHASE_IDS, get_phase


def validate_modules(modules: list[Module]) -> list[str]:
    """Return a list of structural errors (empty = valid)."""
    errors: list[str] = []
    ids = [m.id for m in modules]
    known = set(ids)

    # Duplicate IDs
    seen: set[str] = set()
    for mid in ids:
        if mid in seen:
            errors.append(f"Duplicate module id: {mid}")
        seen.add(mid)

    # Alias collisions
    alias_owner: dict[str, str] = {}
    for m in modules:
        for alias in m.aliases:
            if alias in known and alias != m.id:
                errors.append(f"Alias '{alias}' of '{m.id}' shadows a module id")
            elif alias in alias_owner and alias_owner[alias] != m.id:
                errors.append(f"Alias '{alias}' is claimed by '{alias_owner[alias]}' and '{m.id}'")
            alias_owner.setdefault(alias, m.id)

    # Phases and missing refs
    for m in modules:
        if get_phase(m.phase) is None:
            errors.append(f"Module '{m.id}' has unknown phase '{m.phase}'")
        for dep in m.dependencies:
            if dep == m.id:
                errors.append(f"Module '{m.id}' depends on itself")
            elif dep not in known:
                errors.append(f"Module '{m.id}' depends on unknown module '{dep}'")

    if errors:
        return errors

    # Cycle detection (Kahn's algorithm)
    in_degree: dict[str, int] = {m.id: len(set(m.dependencies)) for m in modules}
    adj: dict[str, list[str]] = {m.id: [] for m in modules}
    for m in modules:
        for dep in set(m.dependencies):
            adj[dep].append(m.id)

    queue = [mid for mid in ids if in_degree[mid] == 0]
    processed = 0
    while queue:
        node = queue.pop(0)
        processed += 1
        for successor in adj[node]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                queue.append(successor)

    if processed < len(modules):
        stuck = sorted(mid for mid, deg in in_degree.items() if deg > 0)
        errors.append(f"Dependency cycle among: {', '.join(stuck)}")
        return errors

    # Execution order: phases run in sequence, modules in declaration order.
    position = {mid: i for i, mid in enumerate(ids)}
    phase_pos = {pid: i for i, pid in enumerate(PHASE_IDS)}
    by_id = {m.id: m for m in modules}
    for m in modules:
        for dep in m.dependencies:
            d = by_id[dep]
            if phase_pos[d.phase] > phase_pos[m.phase]:
                errors.append(
                    f"Module '{m.id}' (phase {m.phase}) depends on '{dep}' from later phase {d.phase}"
                )
            elif d.phase == m.phase and position[dep] > position[m.id]:
                errors.append(f"Module '{m.id}' is declared before its dependency '{dep}'")

    return errors


class ModuleGraph:
    """Immutable module graph in canonical order."""

    def __init__(self, modules: Iterable[Module]):
        self._modules: tuple[Module, ...] = tuple(modules)
        errors = validate_modules(list(self._modules))
        if errors:
            raise ModuleGraphError(errors)
        self._by_id = {m.id: m for m in self._modules}
        self._position = {m.id: i for i, m in enumerate(self._modules)}
        self._aliases = {a: m.id for m in self._modules for a in m.aliases}

    def __iter__(self) -> Iterator[Module]:
        return iter(self._modules)

    def __len__(self) -> int:
        return len(self._modules)

    def __contains__(self, module_id: object) -> bool:
        return module_id in self._by_id

    @property
    def modules(self) -> tuple[Module, ...]:
        return self._modules

    @property
    def ids(self) -> list[str]:
        return [m.id for m in self._modules]

    def get(self, module_id: str) -> Module:
        return self._by_id[module_id]

    def canonical_id(self, name: str) -> str | None:
        """Resolve a module id or alias."""
        if name in self._by_id:
            return name
        return self._aliases.get(name)

    def sort(self, module_ids: Iterable[str]) -> list[str]:
        """Order ids canonically, dropping duplicates."""
        return sorted(set(module_ids), key=self._position.__getitem__)

    def in_phase(self, phase_id: str) -> list[Module]:
        return [m for m in self._modules if m.phase == phase_id]

    def tags(self) -> list[str]:
        return sorted({t for m in self._modules for t in m.tags})
