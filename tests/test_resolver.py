"""
Tests for module selection — graph validation and the resolver.
"""

import pytest

from provisioner.core.errors import (
    ContradictorySelection,
    ModuleGraphError,
    SelectionError,
    UnknownModule,
    UnknownPhase,
    UnsatisfiableDependency,
)
from provisioner.core.services.selection.graph import ModuleGraph
from provisioner.core.services.selection.plan import ExclusionReason, InclusionReason
from provisioner.core.services.selection.resolver import NO_DEPS_WARNING, SelectionIntent, resolve

# ── Graph validation ────────────────────────────────────────────────


class TestModuleGraph:
    @pytest.fixture(autouse=True)
    def _factory(self, module_factory):
        self.mod = module_factory

    def test_duplicate_id(self):
        with pytest.raises(ModuleGraphError) as exc:
            ModuleGraph([self.mod("cli.a"), self.mod("cli.a")])
        assert "Duplicate module id: cli.a" in exc.value.errors

    def test_unknown_dependency(self):
        with pytest.raises(ModuleGraphError) as exc:
            ModuleGraph([self.mod("cli.a", dependencies=("cli.zzz",))])
        assert "unknown module 'cli.zzz'" in exc.value.errors[0]

    def test_unknown_phase(self):
        with pytest.raises(ModuleGraphError):
            ModuleGraph([self.mod("cli.a", phase="nowhere")])

    def test_cycle(self):
        with pytest.raises(ModuleGraphError) as exc:
            ModuleGraph([
                self.mod("cli.a", dependencies=("cli.b",)),
                self.mod("cli.b", dependencies=("cli.a",)),
            ])
        assert any("cycle" in e for e in exc.value.errors)

    def test_dependency_in_later_phase(self):
        with pytest.raises(ModuleGraphError) as exc:
            ModuleGraph([
                self.mod("base.a", phase="user_setup", dependencies=("lang.b",)),
                self.mod("lang.b", phase="languages"),
            ])
        assert "later phase" in exc.value.errors[0]

    def test_declared_before_dependency(self):
        with pytest.raises(ModuleGraphError):
            ModuleGraph([
                self.mod("cli.a", dependencies=("cli.b",)),
                self.mod("cli.b"),
            ])

    def test_alias_shadowing_id(self):
        with pytest.raises(ModuleGraphError):
            ModuleGraph([self.mod("cli.a", aliases=("cli.b",)), self.mod("cli.b")])

    def test_lookup(self, small_graph):
        assert small_graph.canonical_id("b") == "cli.b"
        assert small_graph.canonical_id("cli.b") == "cli.b"
        assert small_graph.canonical_id("nope") is None
        assert small_graph.sort(["lang.c", "base.a", "lang.c"]) == ["base.a", "lang.c"]
        assert small_graph.tags() == ["critical", "slow"]


# ── Resolver ────────────────────────────────────────────────────────


class TestResolveDefault:
    def test_default_selection(self, small_graph):
        plan = resolve(small_graph, SelectionIntent())
        assert plan.module_ids == ["base.a", "cli.b", "cli.d", "lang.c"]
        assert plan.excluded["lang.e"].reason is ExclusionReason.DISABLED_BY_DEFAULT
        assert all(e.reason is InclusionReason.DEFAULT for e in plan.entries)

    def test_every_module_accounted_for(self, small_graph):
        plan = resolve(small_graph, SelectionIntent(only_modules=("cli.d",)))
        assert set(plan.module_ids) | set(plan.excluded) == set(small_graph.ids)
        assert not set(plan.module_ids) & set(plan.excluded)

    def test_deterministic(self, small_graph):
        intent = SelectionIntent(only_modules=("lang.c", "cli.d"), skip_tags=("nothing",))
        assert resolve(small_graph, intent).to_dict() == resolve(small_graph, intent).to_dict()


class TestResolveOnly:
    def test_closure_pulls_dependencies(self, small_graph):
        """Selecting C pulls B and A, in canonical order."""
        plan = resolve(small_graph, SelectionIntent(only_modules=("lang.c",)))
        assert plan.module_ids == ["base.a", "cli.b", "lang.c"]
        assert plan.entry("lang.c").reason is InclusionReason.EXPLICIT
        assert plan.entry("cli.b").detail == "dependency of lang.c"
        assert plan.entry("base.a").detail == "dependency of cli.b"
        assert plan.excluded["cli.d"].reason is ExclusionReason.NOT_SELECTED

    def test_alias_accepted(self, small_graph):
        assert resolve(small_graph, SelectionIntent(only_modules=("b",))).module_ids == ["base.a", "cli.b"]

    def test_opt_in_module_can_be_requested(self, small_graph):
        plan = resolve(small_graph, SelectionIntent(only_modules=("lang.e",)))
        assert plan.module_ids == ["lang.e"]

    def test_unknown_module(self, small_graph):
        with pytest.raises(UnknownModule) as exc:
            resolve(small_graph, SelectionIntent(only_modules=("nope",)))
        assert exc.value.flag == "--only"

    def test_contradiction(self, small_graph):
        with pytest.raises(ContradictorySelection):
            resolve(small_graph, SelectionIntent(only_modules=("cli.d",), skip_tags=("slow",)))

    def test_skipped_dependency_is_unsatisfiable(self, small_graph):
        """Selecting C while skipping A fails with the chain C -> B -> A."""
        with pytest.raises(UnsatisfiableDependency) as exc:
            resolve(small_graph, SelectionIntent(only_modules=("lang.c",), skip_modules=("base.a",)))
        assert exc.value.chain == ["lang.c", "cli.b", "base.a"]
        assert exc.value.skip_rule == "--skip base.a"

    def test_only_phase_ignored_with_only(self, small_graph):
        plan = resolve(small_graph, SelectionIntent(only_modules=("cli.d",), only_phases=("languages",)))
        assert plan.module_ids == ["cli.d"]
        assert any("--only-phase is ignored" in w for w in plan.warnings)


class TestResolvePhases:
    def test_phase_selection_closes_over_earlier_phases(self, small_graph):
        plan = resolve(small_graph, SelectionIntent(only_phases=("languages",)))
        assert plan.module_ids == ["base.a", "cli.b", "lang.c", "lang.e"]
        assert plan.entry("lang.e").reason is InclusionReason.PHASE
        assert plan.excluded["cli.d"].reason is ExclusionReason.FILTERED_BY_PHASE

    def test_phase_aliases_and_numbers(self, small_graph):
        by_alias = resolve(small_graph, SelectionIntent(only_phases=("cli",)))
        by_number = resolve(small_graph, SelectionIntent(only_phases=("4",)))
        assert by_alias.module_ids == by_number.module_ids == ["base.a", "cli.b", "cli.d"]

    def test_unknown_phase(self, small_graph):
        with pytest.raises(UnknownPhase):
            resolve(small_graph, SelectionIntent(only_phases=("warp",)))


class TestResolveSkips:
    def test_skip_tag(self, small_graph):
        plan = resolve(small_graph, SelectionIntent(skip_tags=("slow",)))
        assert "cli.d" not in plan
        assert plan.excluded["cli.d"].reason is ExclusionReason.EXPLICITLY_SKIPPED
        assert plan.excluded["cli.d"].detail == "skipped tag slow"

    def test_unknown_tag_warns(self, small_graph):
        plan = resolve(small_graph, SelectionIntent(skip_tags=("zzz",)))
        assert "No module has tag 'zzz'" in plan.warnings
        assert len(plan) == 4

    def test_skip_category(self, small_graph):
        plan = resolve(small_graph, SelectionIntent(only_modules=("cli.d",), skip_categories=("lang",)))
        assert plan.excluded["lang.c"].detail == "skipped category lang"

    def test_skip_category_breaks_default_closure(self, small_graph):
        with pytest.raises(UnsatisfiableDependency):
            resolve(small_graph, SelectionIntent(skip_categories=("cli",)))

    def test_unknown_category(self, small_graph):
        with pytest.raises(SelectionError):
            resolve(small_graph, SelectionIntent(skip_categories=("weird",)))

    def test_no_deps_warns_instead_of_closing(self, small_graph):
        plan = resolve(small_graph, SelectionIntent(only_modules=("lang.c",), no_deps=True))
        assert plan.module_ids == ["lang.c"]
        assert plan.warnings[0] == NO_DEPS_WARNING
        assert "lang.c depends on cli.b, which is not in the plan (not selected)" in plan.warnings
        assert plan.to_dict()["no_deps"] is True
