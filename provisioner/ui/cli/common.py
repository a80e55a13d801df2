"""
Shared CLI helpers: settings loading, selection flags, JSON output.
"""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from typing import Any

import click

from provisioner.core.errors import ConfigError
from provisioner.core.models.settings import Settings
from provisioner.core.observability.logging_config import resolve_level, setup_logging
from provisioner.core.services.selection.resolver import SelectionIntent


def load_settings_or_exit(ctx: click.Context) -> Settings:
    """Load settings once per invocation; exit 2 on a config error."""
    obj = ctx.find_root().obj
    if obj.get("settings") is not None:
        return obj["settings"]

    from provisioner.core.config.loader import load_settings

    try:
        settings = load_settings(obj.get("config_path"))
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(e.exit_code)

    # A log file from the settings file applies unless the env already set one.
    if settings.log_file and not obj.get("log_file_from_env"):
        setup_logging(
            level=resolve_level(obj.get("debug", False), obj.get("verbose", False), obj.get("quiet", False)),
            log_file=settings.log_file,
            quiet_third_party=not obj.get("debug", False),
        )

    obj["settings"] = settings
    return settings


def emit_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def selection_options(fn: Callable) -> Callable:
    """Attach the resolver flags shared by ``install`` and ``plan``."""
    options = [
        click.option("--only", "only_modules", multiple=True, metavar="MODULE",
                     help="Install only this module (and its dependencies). Repeatable."),
        click.option("--only-phase", "only_phases", multiple=True, metavar="PHASE",
                     help="Install only modules of this phase (id, number or alias). Repeatable."),
        click.option("--skip", "skip_modules", multiple=True, metavar="MODULE",
                     help="Never install this module. Repeatable."),
        click.option("--skip-tag", "skip_tags", multiple=True, metavar="TAG",
                     help="Skip every module with this tag. Repeatable."),
        click.option("--skip-category", "skip_categories", multiple=True, metavar="CATEGORY",
                     help="Skip every module of this category. Repeatable."),
        click.option("--no-deps", is_flag=True,
                     help="Do not pull in dependencies (may leave the install incomplete)."),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def intent_from(params: dict[str, Any]) -> SelectionIntent:
    return SelectionIntent(
        only_modules=tuple(params.get("only_modules", ())),
        only_phases=tuple(params.get("only_phases", ())),
        skip_modules=tuple(params.get("skip_modules", ())),
        skip_tags=tuple(params.get("skip_tags", ())),
        skip_categories=tuple(params.get("skip_categories", ())),
        no_deps=bool(params.get("no_deps", False)),
    )
