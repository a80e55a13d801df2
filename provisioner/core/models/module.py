"""
Module model — one installable node of the declared module graph.

Modules are declared in the YAML manifest and never persisted. Category
is a closed enum and tags are a constrained string type, so a typo in
the manifest fails at load time instead of silently matching nothing.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

Tag = Annotated[str, StringConstraints(pattern=r"^[a-z0-9][a-z0-9_.-]*$", max_length=64)]
ModuleId = Annotated[str, StringConstraints(pattern=r"^[a-z0-9][a-z0-9_.-]*$", max_length=96)]


class ModuleCategory(str, Enum):
    """Closed set of module categories; categories partition the graph."""

    BASE = "base"
    USERS = "users"
    FILESYSTEM = "filesystem"
    SHELL = "shell"
    CLI = "cli"
    LANG = "lang"
    TOOLS = "tools"
    AGENTS = "agents"
    DB = "db"
    CLOUD = "cloud"
    STACK = "stack"
    FINALIZE = "finalize"


class RunAs(str, Enum):
    CURRENT = "current"
    ROOT = "root"


class VerifiedInstaller(BaseModel):
    """Upstream installer fetched through the verified-content collaborator."""

    model_config = ConfigDict(extra="forbid")

    tool: str                       # identifier passed to the verified fetch
    runner: str = "bash"            # interpreter the content is piped into
    args: list[str] = Field(default_factory=list)


class Module(BaseModel):
    """A declared, installable module."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    # ── Graph ────────────────────────────────────────────────────
    id: ModuleId
    category: ModuleCategory
    phase: str
    dependencies: tuple[ModuleId, ...] = ()
    tags: frozenset[Tag] = frozenset()
    default_enabled: bool = Field(default=True, alias="enabled_by_default")
    aliases: tuple[str, ...] = ()

    # ── Description ──────────────────────────────────────────────
    description: str = ""
    optional: bool = False           # failure is a warning, not a phase failure

    # ── Execution ────────────────────────────────────────────────
    run_as: RunAs = RunAs.CURRENT
    installed_check: str | None = None
    verified_installer: VerifiedInstaller | None = None
    install: tuple[str, ...] = ()
    verify: tuple[str, ...] = ()
    undo: str = ""
    backup_paths: tuple[str, ...] = ()

    @property
    def elevated(self) -> bool:
        return self.run_as is RunAs.ROOT
