"""
Tests for the undo use case — target selection, locking, error collection.
"""

import pytest

from provisioner.adapters.mock import MockCommandRunner
from provisioner.core.observability.reporter import RecordingReporter
from provisioner.core.persistence.lock import SessionLock
from provisioner.core.services.change_ledger.ledger import ChangeLedger
from provisioner.core.use_cases.undo import UndoOptions, list_changes, run_undo, verify_ledger


@pytest.fixture
def seeded(settings):
    """Three changes: lang.bun <- agents.claude, plus an unrelated cli change."""
    ledger = ChangeLedger(settings.ledger_dir, MockCommandRunner(), min_free_bytes=0)
    session = ledger.start_session()
    bun = ledger.record_change(session, "lang", "Installed lang.bun", "rm -rf ~/.bun")
    claude = ledger.record_change(
        session, "agents", "Installed agents.claude", "bun remove -g claude", depends_on=[bun]
    )
    rg = ledger.record_change(session, "cli", "Installed cli.rg", "apt-get remove -y ripgrep")
    ledger.end_session(session)
    return {"bun": bun, "claude": claude, "rg": rg}


class TestRunUndo:
    def test_nothing_requested(self, settings):
        result = run_undo(settings, UndoOptions(), runner=MockCommandRunner())
        assert result.exit_code == 2
        assert "Nothing to undo" in result.error

    def test_explicit_ids_in_given_order(self, settings, seeded):
        runner = MockCommandRunner()
        result = run_undo(settings, UndoOptions(change_ids=(seeded["claude"], seeded["bun"])), runner=runner)
        assert result.exit_code == 0
        assert runner.commands == ["bun remove -g claude", "rm -rf ~/.bun"]

    def test_dependency_refusal_is_collected(self, settings, seeded):
        runner = MockCommandRunner()
        result = run_undo(settings, UndoOptions(change_ids=(seeded["bun"], seeded["rg"])), runner=runner)
        assert result.exit_code == 1
        assert seeded["bun"] in result.errors
        assert runner.commands == ["apt-get remove -y ripgrep"]

    def test_all_newest_first(self, settings, seeded):
        runner = MockCommandRunner()
        result = run_undo(settings, UndoOptions(all=True), runner=runner)
        assert result.exit_code == 0
        assert runner.commands == ["apt-get remove -y ripgrep", "bun remove -g claude", "rm -rf ~/.bun"]
        assert all(e.undone for e in list_changes(settings))

    def test_category(self, settings, seeded):
        runner = MockCommandRunner()
        run_undo(settings, UndoOptions(category="agents"), runner=runner)
        assert runner.commands == ["bun remove -g claude"]

    def test_failing_command_exit_1(self, settings, seeded):
        runner = MockCommandRunner()
        runner.set_failure("ripgrep", exit_code=100)
        result = run_undo(settings, UndoOptions(change_ids=(seeded["rg"],)), runner=runner)
        assert result.exit_code == 1
        assert result.errors[seeded["rg"]] == "undo command exited 100"

    def test_second_undo_reports_already_undone(self, settings, seeded):
        options = UndoOptions(change_ids=(seeded["rg"],))
        run_undo(settings, options, runner=MockCommandRunner())
        result = run_undo(settings, options, runner=MockCommandRunner())
        assert result.exit_code == 0
        assert result.outcomes[0].already_undone

    def test_dry_run(self, settings, seeded):
        runner = MockCommandRunner()
        result = run_undo(settings, UndoOptions(all=True, dry_run=True), runner=runner)
        assert runner.call_count == 0
        assert [o.output for o in result.outcomes][0] == "apt-get remove -y ripgrep"

    def test_force_skips_dependency_gate(self, settings, seeded):
        runner = MockCommandRunner()
        options = UndoOptions(change_ids=(seeded["bun"],), force=True, skip_dependency_check=True)
        assert run_undo(settings, options, runner=runner).exit_code == 0

    def test_runs_as_a_ledger_session(self, settings, seeded):
        ledger_dir = settings.ledger_dir
        (ledger_dir / ".integrity").unlink()
        with (ledger_dir / "changes.jsonl").open("a") as f:
            f.write("{torn line\n")
        reporter = RecordingReporter()

        result = run_undo(settings, UndoOptions(change_ids=(seeded["rg"],)), runner=MockCommandRunner(), reporter=reporter)

        assert result.exit_code == 0
        assert "Removed 1 unparseable ledger line(s)" in reporter.of_level("warn")
        assert (ledger_dir / ".integrity").is_file()
        assert not (ledger_dir / ".session").exists()

    def test_dry_run_leaves_ledger_files_alone(self, settings, seeded):
        changes = settings.ledger_dir / "changes.jsonl"
        with changes.open("a") as f:
            f.write("{torn line\n")
        before = changes.read_text()

        run_undo(settings, UndoOptions(all=True, dry_run=True), runner=MockCommandRunner())

        assert changes.read_text() == before
        assert not (settings.ledger_dir / ".session").exists()

    def test_locked(self, settings, seeded):
        with SessionLock(settings.state_dir):
            result = run_undo(settings, UndoOptions(all=True), runner=MockCommandRunner())
        assert result.exit_code == 2


class TestQueries:
    def test_list_and_verify(self, settings, seeded):
        assert [e.record.category for e in list_changes(settings)] == ["lang", "agents", "cli"]
        assert [e.record.id for e in list_changes(settings, "cli")] == [seeded["rg"]]
        report = verify_ledger(settings)
        assert report.healthy
        assert report.changes_checked == 3

    def test_empty_ledger(self, settings):
        assert list_changes(settings) == []
        assert verify_ledger(settings).healthy
