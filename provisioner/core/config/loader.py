"""
Configuration loader — settings file and module manifest.

Reads YAML, validates against pydantic schemas, and returns typed
objects. Every failure is a ConfigError with the offending path in the
message.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from provisioner.core.data import DEFAULT_MANIFEST
from provisioner.core.errors import ConfigError, ModuleGraphError
from provisioner.core.models.module import Module
from provisioner.core.models.settings import Settings
from provisioner.core.services.selection.graph import ModuleGraph

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.yml"
APP_DIR = "provision"

ENV_CONFIG = "PROVISION_CONFIG"
ENV_STATE_DIR = "PROVISION_STATE_DIR"
ENV_MANIFEST = "PROVISION_MANIFEST"


def find_config_file(environ: Mapping[str, str] | None = None) -> Path | None:
    """Locate config.yml: $PROVISION_CONFIG, then $XDG_CONFIG_HOME/provision/.

    Returns:
        Path to the config file, or None if there is none.
    """
    env = os.environ if environ is None else environ
    explicit = env.get(ENV_CONFIG)
    if explicit:
        return Path(explicit).expanduser()

    xdg = env.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    candidate = base / APP_DIR / CONFIG_FILE
    if candidate.is_file():
        return candidate
    return None


def _read_yaml(path: Path) -> Any:
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e


def load_settings(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Load settings from *path* (or the discovered config file) plus env overrides.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid.
    """
    env = os.environ if environ is None else environ
    if path is None:
        path = find_config_file(env)

    data: dict[str, Any] = {}
    if path is not None:
        logger.debug("Loading settings from %s", path)
        loaded = _read_yaml(path)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Expected a YAML mapping in {path}, got {type(loaded).__name__}")
        data = dict(loaded)
        # Relative paths in the file are relative to the file.
        for key in ("state_dir", "manifest", "log_file"):
            value = data.get(key)
            if isinstance(value, str) and not Path(value).expanduser().is_absolute():
                data[key] = str(path.parent / value)

    if env.get(ENV_STATE_DIR):
        data["state_dir"] = env[ENV_STATE_DIR]
    if env.get(ENV_MANIFEST):
        data["manifest"] = env[ENV_MANIFEST]

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings{f' in {path}' if path else ''}: {e}") from e

    logger.debug("State directory: %s", settings.state_dir)
    return settings


def load_manifest(path: Path | None = None) -> ModuleGraph:
    """Load and validate the module manifest into a ModuleGraph.

    Args:
        path: Manifest YAML. None = the packaged default manifest.

    Raises:
        ConfigError: unreadable file, bad schema, or invalid graph.
    """
    path = path or DEFAULT_MANIFEST
    data = _read_yaml(path)
    if not isinstance(data, dict) or not isinstance(data.get("modules"), list):
        raise ConfigError(f"Expected a mapping with a 'modules' list in {path}")

    modules: list[Module] = []
    for i, entry in enumerate(data["modules"]):
        try:
            modules.append(Module.model_validate(entry))
        except ValidationError as e:
            label = entry.get("id", f"#{i + 1}") if isinstance(entry, dict) else f"#{i + 1}"
            raise ConfigError(f"Invalid module {label} in {path}: {e}") from e

    try:
        graph = ModuleGraph(modules)
    except ModuleGraphError as e:
        raise ConfigError(f"Invalid module graph in {path}: {e}") from e

    logger.info("Loaded %d modules from %s", len(graph), path)
    return graph
