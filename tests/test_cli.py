"""
Tests for CLI commands — global options, plan, install, status, undo.
"""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from provisioner.main import cli


def _json(result):
    """Parse the JSON document on stdout, ignoring any stderr lines mixed in."""
    text = result.stdout
    start = min(i for i in (text.find("{"), text.find("[")) if i >= 0)
    return json.JSONDecoder().raw_decode(text[start:])[0]


@pytest.fixture
def env(tmp_path: Path) -> dict[str, str]:
    """Isolated state dir, config dir and home for every invocation."""
    home = tmp_path / "home"
    home.mkdir()
    return {
        "PROVISION_STATE_DIR": str(tmp_path / "state"),
        "XDG_CONFIG_HOME": str(tmp_path / "config"),
        "HOME": str(home),
        "PROVISION_CONFIG": "",
        "PROVISION_MANIFEST": "",
        "PROVISION_LOG_FILE": "",
    }


@pytest.fixture
def invoke(env):
    runner = CliRunner()

    def _invoke(*args: str):
        return runner.invoke(cli, list(args), env=env)

    return _invoke


class TestCLIGlobal:
    """Tests for global CLI behavior."""

    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("install", "plan", "modules", "status", "undo", "reset-state"):
            assert command in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "provision" in result.output
        assert "0.1.0" in result.output

    def test_missing_config_file_exits_2(self, invoke, tmp_path: Path):
        result = invoke("-c", str(tmp_path / "absent.yml"), "plan")
        assert result.exit_code == 2


class TestPlanCommand:
    def test_plan_json(self, invoke):
        result = invoke("plan", "--only", "agents.claude", "--json")
        assert result.exit_code == 0
        data = _json(result)
        modules = [m["module"] for m in data["modules"]]
        assert "lang.bun" in modules
        assert modules[-1] == "agents.claude"
        assert data["no_deps"] is False

    def test_plan_text(self, invoke):
        result = invoke("plan", "--only-phase", "languages")
        assert result.exit_code == 0
        assert "Execution plan" in result.output
        assert "Language Runtimes" in result.output

    def test_unknown_module_exits_2(self, invoke):
        result = invoke("plan", "--only", "does-not-exist")
        assert result.exit_code == 2

    def test_contradiction_exits_2(self, invoke):
        result = invoke("plan", "--only", "rg", "--skip", "rg")
        assert result.exit_code == 2


class TestModulesCommand:
    def test_text(self, invoke):
        result = invoke("modules")
        assert result.exit_code == 0
        assert "cli.ripgrep" in result.output
        assert "● default" in result.output

    def test_json(self, invoke):
        result = invoke("modules", "--json")
        data = _json(result)
        by_id = {m["id"]: m for m in data}
        assert by_id["lang.go"]["enabled_by_default"] is False


class TestInstallCommand:
    def test_mock_install_json(self, invoke, env):
        result = invoke("install", "--mock", "--only", "rg", "--json")
        assert result.exit_code == 0
        data = _json(result)
        assert data["exit_code"] == 0
        assert data["decision"] == "fresh"
        assert (Path(env["PROVISION_STATE_DIR"]) / "state.json").is_file()

    def test_mock_install_text(self, invoke):
        result = invoke("install", "--mock", "--only", "rg")
        assert result.exit_code == 0
        assert "Provisioning summary" in result.output

    def test_status_after_install(self, invoke):
        invoke("install", "--mock", "--only", "rg", "--json")
        result = invoke("status", "--json")
        assert result.exit_code == 0
        data = _json(result)
        assert "cli_tools" in data["state"]["completed_phases"]
        assert data["ledger"]["changes"] >= 0

    def test_unknown_skip_phase_exits_2(self, invoke):
        result = invoke("install", "--mock", "--skip-phase", "warp")
        assert result.exit_code == 2

    def test_keep_invalid_state_exits_2(self, invoke, env):
        state_dir = Path(env["PROVISION_STATE_DIR"])
        state_dir.mkdir()
        (state_dir / "state.json").write_text("{broken")
        result = invoke("install", "--mock", "--only", "rg", "--keep-invalid-state")
        assert result.exit_code == 2
        assert (state_dir / "state.json").read_text() == "{broken"


class TestStatusCommand:
    def test_no_installation(self, invoke):
        result = invoke("status")
        assert result.exit_code == 0
        assert "No installation yet." in result.output

    def test_text_after_install(self, invoke):
        invoke("install", "--mock", "--only", "rg")
        result = invoke("status")
        assert "Progress:" in result.output
        assert "Ledger:" in result.output


class TestUndoCommand:
    def test_list_empty(self, invoke):
        result = invoke("undo", "--list")
        assert result.exit_code == 0
        assert "No recorded changes." in result.output

    def test_verify_empty(self, invoke):
        result = invoke("undo", "--verify")
        assert result.exit_code == 0
        assert "Ledger OK" in result.output

    def test_nothing_to_undo_exits_2(self, invoke):
        result = invoke("undo")
        assert result.exit_code == 2

    def test_list_after_install(self, invoke):
        invoke("install", "--mock", "--only-phase", "cli", "--json")
        result = invoke("undo", "--list", "--json")
        assert result.exit_code == 0
        entries = _json(result)
        assert isinstance(entries, list)
        assert all(e["undone"] is False for e in entries)

    def test_unknown_change_id(self, invoke):
        result = invoke("undo", "chg_9999")
        assert result.exit_code == 1


class TestResetStateCommand:
    def test_reset_with_yes(self, invoke):
        invoke("install", "--mock", "--only", "rg", "--json")
        result = invoke("reset-state", "--yes")
        assert result.exit_code == 0
        assert "State reset" in result.output
        assert "Previous state saved to" in result.output

    def test_declined(self, env):
        result = CliRunner().invoke(cli, ["reset-state"], env=env, input="n\n")
        assert result.exit_code == 1
        assert "Aborted." in result.output
