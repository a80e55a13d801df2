"""
CLI command for the undo engine.

Thin wrapper over ``provisioner.core.use_cases.undo``.
"""

from __future__ import annotations

import sys

import click

from provisioner.ui.cli.common import emit_json, load_settings_or_exit
from provisioner.ui.cli.reporter import ClickReporter


@click.command()
@click.argument("change_ids", nargs=-1)
@click.option("--all", "undo_all", is_flag=True, help="Undo every live change, newest first.")
@click.option("--category", default=None, help="Undo every live change of this category, newest first.")
@click.option("--dry-run", is_flag=True, help="Show the undo commands without running them.")
@click.option("--force", is_flag=True, help="Ignore checksum, backup and dependency checks.")
@click.option("--list", "list_only", is_flag=True, help="List recorded changes and exit.")
@click.option("--verify", "verify_only", is_flag=True, help="Check ledger integrity and exit.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def undo(
    ctx: click.Context,
    change_ids: tuple[str, ...],
    undo_all: bool,
    category: str | None,
    dry_run: bool,
    force: bool,
    list_only: bool,
    verify_only: bool,
    as_json: bool,
) -> None:
    """Undo recorded changes.

    Examples:

        provision undo chg_0007

        provision undo --category agents --dry-run

        provision undo --list
    """
    from provisioner.core.use_cases.undo import UndoOptions, list_changes, run_undo, verify_ledger

    settings = load_settings_or_exit(ctx)

    if list_only:
        entries = list_changes(settings, category)
        if as_json:
            emit_json([e.to_dict() for e in entries])
            return
        if not entries:
            click.echo("No recorded changes.")
            return
        click.secho(f"\n📒 Changes ({len(entries)})", fg="cyan", bold=True)
        for entry in entries:
            r = entry.record
            if entry.undone:
                click.secho(f"   ↺ {r.id} ", fg="white", nl=False)
            else:
                click.secho(f"   ● {r.id} ", fg="green", nl=False)
            label = " (undone)" if entry.undone else ""
            click.echo(f"[{r.category}] {r.description}{label}  {r.timestamp}")
        click.echo()
        return

    if verify_only:
        report = verify_ledger(settings)
        if as_json:
            emit_json(report.to_dict())
        elif report.healthy:
            click.secho(
                f"✅ Ledger OK ({report.changes_checked} changes, {report.undos_checked} undos)",
                fg="green",
                bold=True,
            )
        else:
            click.secho(f"❌ {report.error_count} integrity problem(s):", fg="red", bold=True)
            for issue in report.issues:
                ref = f" {issue.change_id}" if issue.change_id else ""
                click.echo(f"   • {issue.file}:{issue.line}{ref} [{issue.kind}] {issue.detail}")
        sys.exit(0 if report.healthy else 1)

    options = UndoOptions(
        change_ids=change_ids,
        all=undo_all,
        category=category,
        force=force,
        skip_dependency_check=force,
        dry_run=dry_run,
    )
    quiet = ctx.find_root().obj.get("quiet", False)
    result = run_undo(settings, options, reporter=ClickReporter(quiet=quiet, json_mode=as_json))

    if as_json:
        emit_json(result.to_dict())
        sys.exit(result.exit_code)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        sys.exit(result.exit_code)

    done = [o for o in result.outcomes if o.ok and not o.dry_run and not o.already_undone]
    if not dry_run and not quiet:
        click.secho(f"   Undone: {len(done)}  Failed: {len(result.errors)}", bold=True)
    sys.exit(result.exit_code)
