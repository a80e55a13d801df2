"""
Tests for the phase runner — plan execution, ledger recording, failures.
"""

from pathlib import Path

import pytest

from provisioner.adapters.mock import MockCommandRunner
from provisioner.core.engine.runner import PhaseRunner
from provisioner.core.models.module import VerifiedInstaller
from provisioner.core.observability.reporter import RecordingReporter
from provisioner.core.services.change_ledger.ledger import ChangeLedger
from provisioner.core.services.selection.graph import ModuleGraph
from provisioner.core.services.selection.resolver import SelectionIntent, resolve
from provisioner.core.services.state.manager import ResumeOptions, StateManager


class Harness:
    """Everything a PhaseRunner needs, wired to a temp state directory."""

    def __init__(self, state_dir: Path, graph: ModuleGraph, retry, intent=None, runner=None, fetch=None):
        self.graph = graph
        self.runner = runner or MockCommandRunner()
        self.reporter = RecordingReporter()
        self.state = StateManager(state_dir, tool_version="1.0.0", min_free_bytes=0)
        self.state.confirm_resume(ResumeOptions())
        self.ledger = ChangeLedger(state_dir / "ledger", self.runner, min_free_bytes=0)
        self.session = self.ledger.start_session()
        self.plan = resolve(graph, intent or SelectionIntent())
        kwargs = {"verified_fetch": fetch} if fetch else {}
        self.phase_runner = PhaseRunner(
            graph,
            self.plan,
            self.state,
            self.ledger,
            self.session,
            self.runner,
            retry_policy=retry,
            reporter=self.reporter,
            env={"TARGET_USER": "dev"},
            **kwargs,
        )

    def run(self):
        return self.phase_runner.run()

    def change_for(self, module_id: str):
        for entry in self.ledger.list_changes():
            if entry.record.description.startswith(f"Installed {module_id}"):
                return entry.record
        return None


@pytest.fixture
def harness(tmp_state_dir, small_graph, no_wait):
    return Harness(tmp_state_dir, small_graph, no_wait)


# ── Happy path ──────────────────────────────────────────────────────


class TestRunAll:
    def test_runs_plan_in_order(self, harness):
        report = harness.run()

        assert report.ok
        assert harness.runner.commands == [
            "install-base.a", "install-cli.b", "install-cli.d", "install-lang.c",
        ]
        assert report.completed_phases == ["user_setup", "cli_tools", "languages"]
        assert report.phase("agents").status == "empty"
        assert harness.state.state.completed_phases == ["user_setup", "cli_tools", "languages"]

    def test_environment(self, harness):
        harness.run()
        env = harness.runner.call_log[0].env
        assert env["TARGET_USER"] == "dev"
        assert env["PROVISION_MODULE"] == "base.a"

    def test_every_module_recorded_with_dependencies(self, harness):
        report = harness.run()
        assert len(report.changes) == 4

        a = harness.change_for("base.a")
        b = harness.change_for("cli.b")
        c = harness.change_for("lang.c")
        assert a.undo_command == "undo-base.a"
        assert a.category == "base"
        assert b.depends_on == [a.id]
        assert c.depends_on == [b.id]
        assert harness.change_for("cli.d").depends_on == []

    def test_completed_phase_is_skipped_on_resume(self, harness):
        harness.state.phase_start("user_setup")
        harness.state.phase_complete("user_setup")

        report = harness.run()
        assert report.phase("user_setup").status == "skipped"
        assert report.phase("user_setup").detail == "already completed"
        assert "install-base.a" not in harness.runner.commands
        # base.a ran in an earlier session, so cli.b has nothing to link to
        assert harness.change_for("cli.b").depends_on == []


# ── Failures ────────────────────────────────────────────────────────


class TestFailure:
    def test_stops_at_failed_phase(self, harness):
        harness.runner.set_failure("install-cli.d", exit_code=100, output="E: Unable to locate package")

        report = harness.run()

        assert report.exit_code == 1
        assert report.failed_phase == "cli_tools"
        assert report.failed_step == "cli.d"
        assert report.step_exit_code == 100
        assert report.error_output == "E: Unable to locate package"
        assert report.phase("languages") is None
        assert "install-lang.c" not in harness.runner.commands
        assert report.phase("cli_tools").changes == [harness.change_for("cli.b").id]

        state = harness.state.state
        assert state.failed_phase == "cli_tools"
        assert state.failed_step == "cli.d"
        assert state.completed_phases == ["user_setup"]

    def test_remediation_attached(self, harness):
        harness.runner.set_failure("install-cli.b", exit_code=1, output="Permission denied")
        report = harness.run()
        assert report.remediation is not None
        assert report.to_dict()["remediation"] == report.remediation

    def test_error_output_truncated(self, tmp_state_dir, small_graph, no_wait):
        h = Harness(tmp_state_dir, small_graph, no_wait)
        h.phase_runner._max_output = 10
        h.runner.set_failure("install-base.a", output="x" * 50)
        report = h.run()
        assert report.error_output == "x" * 10 + "... [truncated]"

    def test_transient_failure_retried(self, harness):
        harness.runner.set_sequence("install-cli.d", 28, 0)
        assert harness.run().ok
        assert harness.runner.commands.count("install-cli.d") == 2


# ── Module features ─────────────────────────────────────────────────


class TestModuleFeatures:
    def test_installed_check_short_circuits(self, tmp_state_dir, module_factory, no_wait):
        graph = ModuleGraph([module_factory("cli.x", installed_check="command -v x")])
        h = Harness(tmp_state_dir, graph, no_wait)
        report = h.run()
        assert report.already_installed == ["cli.x"]
        assert h.runner.commands == ["command -v x"]
        assert report.changes == []

    def test_optional_failure_is_tolerated(self, tmp_state_dir, module_factory, no_wait):
        graph = ModuleGraph([
            module_factory("cli.x", optional=True),
            module_factory("cli.y"),
        ])
        h = Harness(tmp_state_dir, graph, no_wait)
        h.runner.set_failure("install-cli.x", exit_code=2)

        report = h.run()
        assert report.ok
        assert report.optional_failures == ["cli.x"]
        assert h.state.state.skipped_tools == ["cli.x"]
        assert h.change_for("cli.x") is None
        assert h.change_for("cli.y") is not None

    def test_verify_failure_names_the_step(self, tmp_state_dir, module_factory, no_wait):
        graph = ModuleGraph([module_factory("cli.x", verify=("x --version",))])
        h = Harness(tmp_state_dir, graph, no_wait)
        h.runner.set_failure("x --version", exit_code=127)
        report = h.run()
        assert report.failed_step == "cli.x (verify)"
        assert report.step_exit_code == 127

    def test_verified_installer_piped_to_runner(self, tmp_state_dir, module_factory, no_wait):
        installer = VerifiedInstaller(tool="bun", args=["-s", "--", "--yes"])
        graph = ModuleGraph([module_factory("lang.bun", phase="languages", install=(), verified_installer=installer)])
        fetched: list[str] = []

        def fetch(tool: str) -> bytes:
            fetched.append(tool)
            return b"#!/bin/bash\necho bun\n"

        h = Harness(tmp_state_dir, graph, no_wait, fetch=fetch)
        assert h.run().ok
        assert fetched == ["bun"]
        call = h.runner.call_log[0]
        assert call.command == "bash -s -- --yes"
        assert call.input == b"#!/bin/bash\necho bun\n"

    def test_unconfigured_fetch_fails_phase(self, tmp_state_dir, module_factory, no_wait):
        installer = VerifiedInstaller(tool="bun")
        graph = ModuleGraph([module_factory("lang.bun", phase="languages", install=(), verified_installer=installer)])
        h = Harness(tmp_state_dir, graph, no_wait)
        report = h.run()
        assert report.failed_phase == "languages"
        assert "No verified installer source" in report.error_output
        assert h.runner.call_count == 0

    def test_backups_become_part_of_undo(self, tmp_state_dir, tmp_path, module_factory, no_wait):
        rc = tmp_path / ".zshrc"
        rc.write_text("# mine\n")
        graph = ModuleGraph([
            module_factory("shell.zsh", phase="shell_setup", backup_paths=(str(rc),), undo="chsh -s /bin/bash"),
        ])
        h = Harness(tmp_state_dir, graph, no_wait)
        assert h.run().ok

        record = h.change_for("shell.zsh")
        assert len(record.backups) == 1
        assert record.files_affected == [str(rc.absolute())]
        assert record.undo_command.startswith("cp -p ")
        assert record.undo_command.endswith(" && chsh -s /bin/bash")

    def test_elevated_module(self, tmp_state_dir, module_factory, no_wait):
        graph = ModuleGraph([module_factory("base.pkgs", phase="user_setup", run_as="root", undo="apt-get remove")])
        h = Harness(tmp_state_dir, graph, no_wait)
        h.run()
        assert h.runner.call_log[0].elevated
        assert h.change_for("base.pkgs").undo_requires_elevated_privilege
