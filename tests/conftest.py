"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest

from provisioner.adapters.mock import MockCommandRunner
from provisioner.core.models.module import Module
from provisioner.core.models.settings import Settings
from provisioner.core.reliability.retry import RetryPolicy
from provisioner.core.services.selection.graph import ModuleGraph


def make_module(module_id: str, phase: str = "cli_tools", **kwargs) -> Module:
    """Build a Module with sensible defaults for tests."""
    kwargs.setdefault("category", module_id.split(".", 1)[0] if "." in module_id else "tools")
    kwargs.setdefault("install", (f"install-{module_id}",))
    return Module(id=module_id, phase=phase, **kwargs)


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def tmp_state_dir(tmp_path: Path) -> Path:
    """Return a temporary directory for state files."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def settings(tmp_state_dir: Path) -> Settings:
    """Settings pointing at the temporary state directory, no retry waits."""
    return Settings(state_dir=tmp_state_dir, retry_delays=[0], min_free_bytes=0)


@pytest.fixture
def mock_runner() -> MockCommandRunner:
    return MockCommandRunner()


@pytest.fixture
def no_wait() -> RetryPolicy:
    """Three attempts, never sleeps."""
    return RetryPolicy(delays=(0, 0, 0), sleep=lambda _: None)


@pytest.fixture
def small_graph() -> ModuleGraph:
    """A -> B -> C chain plus an independent D and an opt-in E.

    base.a (user_setup) <- cli.b (cli_tools) <- lang.c (languages)
    cli.d (cli_tools, tag slow), lang.e (languages, disabled by default)
    """
    return ModuleGraph([
        make_module("base.a", phase="user_setup", tags=frozenset({"critical"}), undo="undo-base.a"),
        make_module("cli.b", phase="cli_tools", dependencies=("base.a",), aliases=("b",), undo="undo-cli.b"),
        make_module("cli.d", phase="cli_tools", tags=frozenset({"slow"}), undo="undo-cli.d"),
        make_module("lang.c", phase="languages", dependencies=("cli.b",), undo="undo-lang.c"),
        make_module("lang.e", phase="languages", default_enabled=False, undo="undo-lang.e"),
    ])


@pytest.fixture
def module_factory():
    """The ``make_module`` helper, as a fixture."""
    return make_module
