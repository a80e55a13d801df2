"""
Click-backed Reporter for the terminal.
"""

from __future__ import annotations

import click

from provisioner.core.observability.reporter import Reporter


class ClickReporter(Reporter):
    """Print core progress with click.secho.

    Errors and warnings go to stderr so ``--json`` stdout stays clean.
    """

    def __init__(self, quiet: bool = False, json_mode: bool = False):
        self._quiet = quiet
        self._json = json_mode

    def info(self, message: str) -> None:
        if self._quiet or self._json:
            return
        click.echo(f"   {message}")

    def warn(self, message: str) -> None:
        click.secho(f"⚠️  {message}", fg="yellow", err=True)

    def error(self, message: str) -> None:
        click.secho(f"❌ {message}", fg="red", err=True)

    def success(self, message: str) -> None:
        if self._quiet or self._json:
            return
        click.secho(f"✅ {message}", fg="green")
