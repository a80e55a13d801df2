"""
Tests for configuration loading — settings file, env overrides, manifest.
"""

import textwrap
from pathlib import Path

import pytest

from provisioner.core.config.loader import find_config_file, load_manifest, load_settings
from provisioner.core.errors import ConfigError
from provisioner.core.models.state import InstallMode
from provisioner.core.services.selection.resolver import SelectionIntent, resolve


@pytest.fixture
def config_yml(tmp_path: Path) -> Path:
    path = tmp_path / "config.yml"
    path.write_text(textwrap.dedent("""\
        state_dir: state
        mode: safe
        target_user: dev
        retry_delays: [0, 1]
        command_timeout: 600
    """))
    return path


# ── Settings ────────────────────────────────────────────────────────


class TestLoadSettings:
    def test_defaults_without_file(self):
        settings = load_settings(environ={"XDG_CONFIG_HOME": "/nonexistent"})
        assert settings.mode is InstallMode.VIBE
        assert settings.retry_delays == [0, 5, 15]
        assert settings.error_output_max_length == 2000
        assert settings.manifest is None

    def test_file_values(self, config_yml: Path):
        settings = load_settings(config_yml, environ={})
        assert settings.mode is InstallMode.SAFE
        assert settings.target_user == "dev"
        assert settings.retry_delays == [0, 1]
        assert settings.command_timeout == 600
        assert settings.state_dir == config_yml.parent / "state"
        assert settings.ledger_dir == config_yml.parent / "state" / "ledger"

    def test_env_overrides_file(self, config_yml: Path, tmp_path: Path):
        env = {"PROVISION_STATE_DIR": str(tmp_path / "elsewhere"), "PROVISION_MANIFEST": "/m.yaml"}
        settings = load_settings(config_yml, environ=env)
        assert settings.state_dir == tmp_path / "elsewhere"
        assert settings.manifest == Path("/m.yaml")

    def test_config_env_var_locates_file(self, config_yml: Path):
        assert find_config_file({"PROVISION_CONFIG": str(config_yml)}) == config_yml
        settings = load_settings(environ={"PROVISION_CONFIG": str(config_yml)})
        assert settings.target_user == "dev"

    def test_xdg_location(self, tmp_path: Path):
        (tmp_path / "provision").mkdir()
        (tmp_path / "provision" / "config.yml").write_text("mode: safe\n")
        assert find_config_file({"XDG_CONFIG_HOME": str(tmp_path)}) == tmp_path / "provision" / "config.yml"

    def test_empty_file_is_defaults(self, tmp_path: Path):
        path = tmp_path / "config.yml"
        path.write_text("")
        assert load_settings(path, environ={}).mode is InstallMode.VIBE

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_settings(tmp_path / "absent.yml", environ={})

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "config.yml"
        path.write_text("mode: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_settings(path, environ={})

    def test_unknown_key(self, tmp_path: Path):
        path = tmp_path / "config.yml"
        path.write_text("colour: blue\n")
        with pytest.raises(ConfigError, match="Invalid settings"):
            load_settings(path, environ={})

    def test_bad_retry_delays(self, tmp_path: Path):
        path = tmp_path / "config.yml"
        path.write_text("retry_delays: []\n")
        with pytest.raises(ConfigError):
            load_settings(path, environ={})

    def test_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / "config.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="Expected a YAML mapping"):
            load_settings(path, environ={})


# ── Manifest ────────────────────────────────────────────────────────


class TestPackagedManifest:
    def test_loads_and_validates(self):
        graph = load_manifest()
        assert len(graph) > 20
        assert graph.ids[0] == "base.system"
        assert graph.canonical_id("rg") == "cli.ripgrep"

    def test_opt_in_modules(self):
        plan = resolve(load_manifest(), SelectionIntent())
        assert "lang.go" not in plan
        assert "cloud.vault" not in plan
        assert "base.system" in plan

    def test_agent_pulls_bun(self):
        plan = resolve(load_manifest(), SelectionIntent(only_modules=("agents.claude",)))
        assert "lang.bun" in plan.module_ids
        assert plan.module_ids[-1] == "agents.claude"

    def test_verified_installers_declared(self):
        graph = load_manifest()
        assert graph.get("lang.bun").verified_installer is not None


class TestLoadManifest:
    def _write(self, tmp_path: Path, body: str) -> Path:
        path = tmp_path / "modules.yaml"
        path.write_text(textwrap.dedent(body))
        return path

    def test_custom_manifest(self, tmp_path: Path):
        path = self._write(tmp_path, """\
            modules:
              - id: cli.a
                category: cli
                phase: cli_tools
                install: ["echo a"]
              - id: cli.b
                category: cli
                phase: cli_tools
                dependencies: [cli.a]
                enabled_by_default: false
        """)
        graph = load_manifest(path)
        assert graph.ids == ["cli.a", "cli.b"]
        assert not graph.get("cli.b").default_enabled

    def test_missing_modules_list(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="'modules' list"):
            load_manifest(self._write(tmp_path, "version: 1\n"))

    def test_unknown_category(self, tmp_path: Path):
        path = self._write(tmp_path, """\
            modules:
              - id: cli.a
                category: gadgets
                phase: cli_tools
        """)
        with pytest.raises(ConfigError, match="Invalid module cli.a"):
            load_manifest(path)

    def test_unknown_field(self, tmp_path: Path):
        path = self._write(tmp_path, """\
            modules:
              - id: cli.a
                category: cli
                phase: cli_tools
                colour: red
        """)
        with pytest.raises(ConfigError):
            load_manifest(path)

    def test_cycle_is_config_error(self, tmp_path: Path):
        path = self._write(tmp_path, """\
            modules:
              - id: cli.a
                category: cli
                phase: cli_tools
                dependencies: [cli.b]
              - id: cli.b
                category: cli
                phase: cli_tools
                dependencies: [cli.a]
        """)
        with pytest.raises(ConfigError, match="Invalid module graph"):
            load_manifest(path)
