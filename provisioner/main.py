"""
provision — CLI entrypoint.

Usage:
    provision --help
    provision install
    provision plan --only lang.bun
    provision undo --list
"""

from __future__ import annotations

import os
import signal
import sys
from pathlib import Path

import click

from provisioner import __version__
from provisioner.core.observability.logging_config import (
    ENV_FILE,
    ENV_FILE_LEVEL,
    resolve_level,
    setup_logging,
)
from provisioner.ui.cli.common import emit_json, intent_from, load_settings_or_exit, selection_options
from provisioner.ui.cli.reporter import ClickReporter

_STATUS_ICONS = {
    "completed": ("✓", "green"),
    "skipped": ("⊘", "yellow"),
    "failed": ("✗", "red"),
    "empty": ("·", "white"),
    "pending": ("○", "white"),
}


@click.group()
@click.version_option(version=__version__, prog_name="provision")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to config.yml (default: $PROVISION_CONFIG or ~/.config/provision/config.yml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """provision — resumable, undoable machine provisioning."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["log_file_from_env"] = bool(os.environ.get(ENV_FILE))

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(
        level=resolve_level(debug, verbose, quiet),
        log_file=os.environ.get(ENV_FILE),
        log_file_level=os.environ.get(ENV_FILE_LEVEL),
        quiet_third_party=not debug,
    )


def _raise_interrupt(signum: int, frame: object) -> None:
    raise KeyboardInterrupt


@cli.command()
@selection_options
@click.option("--skip-phase", "skip_phases", multiple=True, metavar="PHASE", help="Mark a phase as skipped. Repeatable.")
@click.option("--resume", "force_resume", is_flag=True, help="Resume without asking.")
@click.option("--force-reinstall", is_flag=True, help="Back up the state file and start fresh.")
@click.option("--interactive", is_flag=True, help="Ask whether to resume, start fresh or abort.")
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Reset an unreadable state file without asking.")
@click.option("--keep-invalid-state", is_flag=True, help="Abort instead of resetting an unreadable state file.")
@click.option("--mode", type=click.Choice(["vibe", "safe"]), default=None, help="Install mode (default from config).")
@click.option("--mock", is_flag=True, help="Use the mock runner (no real execution).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def install(
    ctx: click.Context,
    skip_phases: tuple[str, ...],
    force_resume: bool,
    force_reinstall: bool,
    interactive: bool,
    assume_yes: bool,
    keep_invalid_state: bool,
    mode: str | None,
    mock: bool,
    as_json: bool,
    **selection: object,
) -> None:
    """Provision this machine, resuming where the last run stopped.

    Examples:

        provision install

        provision install --only-phase languages --skip-tag slow

        provision install --only lang.bun --mock
    """
    from provisioner.core.models.state import InstallMode
    from provisioner.core.services.state.manager import InvalidStatePolicy, ResumeOptions
    from provisioner.core.use_cases.install import InstallOptions, run_install

    settings = load_settings_or_exit(ctx)
    quiet = ctx.obj.get("quiet", False)

    if keep_invalid_state:
        policy = InvalidStatePolicy.ABORT
    elif assume_yes:
        policy = InvalidStatePolicy.RESET
    else:
        policy = InvalidStatePolicy.PROMPT

    def confirm_reset(status, detail: str) -> bool:
        return click.confirm(
            f"State file is {status.value.replace('_', ' ')} ({detail}). Back it up and start fresh?",
            default=True,
        )

    options = InstallOptions(
        intent=intent_from(selection),
        resume=ResumeOptions(
            force_reinstall=force_reinstall,
            force_resume=force_resume,
            interactive=interactive,
        ),
        skip_phases=skip_phases,
        invalid_state_policy=policy,
        mode=InstallMode(mode) if mode else None,
        mock=mock,
    )

    signal.signal(signal.SIGTERM, _raise_interrupt)
    interactive_tty = sys.stdin.isatty() and not as_json
    result = run_install(
        settings,
        options,
        reporter=ClickReporter(quiet=quiet, json_mode=as_json),
        prompt=lambda text: click.prompt(text, default="r"),
        confirm_reset=confirm_reset if interactive_tty else None,
    )

    if as_json:
        emit_json(result.to_dict())
        sys.exit(result.exit_code)

    report = result.report
    if report is not None and not quiet:
        label = "[mock] " if mock else ""
        click.secho(f"\n⚡ {label}Provisioning summary", fg="cyan", bold=True)
        for phase in report.phases:
            if phase.status == "empty":
                continue
            icon, color = _STATUS_ICONS.get(phase.status, ("?", "white"))
            click.secho(f"   {icon} {phase.name}", fg=color, nl=False)
            extra = f" ({phase.detail})" if phase.detail else ""
            changes = f"  {len(phase.changes)} change(s)" if phase.changes else ""
            click.echo(f"{extra}{changes}")
        if report.optional_failures:
            click.secho(f"   Optional modules skipped: {', '.join(report.optional_failures)}", fg="yellow")
        click.echo()

    if result.rollback is not None:
        rb = result.rollback
        color = "yellow" if rb.failed else "white"
        click.secho(
            f"   Rolled back {len(rb.recovered)}/{len(rb.attempted)} change(s)",
            fg=color,
            err=True,
        )
        for cid, err in rb.errors.items():
            click.echo(f"     • {cid}: {err}", err=True)
        if rb.failed:
            click.echo(f"     Ledger: {rb.ledger_path}", err=True)

    sys.exit(result.exit_code)


@cli.command()
@selection_options
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def plan(ctx: click.Context, as_json: bool, **selection: object) -> None:
    """Show what install would run, and why."""
    from provisioner.core.config.loader import load_manifest
    from provisioner.core.errors import ConfigError, SelectionError
    from provisioner.core.models.phase import PHASES
    from provisioner.core.services.selection.resolver import resolve

    settings = load_settings_or_exit(ctx)
    try:
        graph = load_manifest(settings.manifest)
        result = resolve(graph, intent_from(selection))
    except (ConfigError, SelectionError) as e:
        if as_json:
            emit_json({"error": str(e)})
        else:
            click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(e.exit_code)

    if as_json:
        emit_json(result.to_dict())
        return

    for warning in result.warnings:
        click.secho(f"⚠️  {warning}", fg="yellow", err=True)

    click.secho(f"\n📋 Execution plan: {len(result)} module(s)", fg="cyan", bold=True)
    for phase in PHASES:
        entries = result.for_phase(phase.id)
        if not entries:
            continue
        click.secho(f"   {phase.position}. {phase.name}", bold=True)
        for entry in entries:
            click.echo(f"     • {entry.module_id}  ({entry.detail})")

    if ctx.obj.get("verbose") and result.excluded:
        click.echo()
        click.secho("   Excluded:", fg="white", bold=True)
        for mid, exclusion in result.excluded.items():
            click.echo(f"     ⊘ {mid}  ({exclusion.detail or exclusion.reason.value})")
    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def modules(ctx: click.Context, as_json: bool) -> None:
    """List available modules grouped by phase."""
    from provisioner.core.config.loader import load_manifest
    from provisioner.core.errors import ConfigError
    from provisioner.core.models.phase import PHASES

    settings = load_settings_or_exit(ctx)
    try:
        graph = load_manifest(settings.manifest)
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(e.exit_code)

    if as_json:
        emit_json([m.model_dump(mode="json", by_alias=True) for m in graph])
        return

    for phase in PHASES:
        members = graph.in_phase(phase.id)
        if not members:
            continue
        click.secho(f"\n   {phase.position}. {phase.name} [{phase.id}]", fg="cyan", bold=True)
        for m in members:
            marker = "●" if m.default_enabled else "○"
            click.secho(f"     {marker} {m.id}", fg="green" if m.default_enabled else "white", nl=False)
            notes = []
            if m.optional:
                notes.append("optional")
            if m.aliases:
                notes.append(f"alias: {', '.join(m.aliases)}")
            if m.dependencies:
                notes.append(f"needs: {', '.join(m.dependencies)}")
            click.echo(f"  {m.description}" + (f"  ({'; '.join(notes)})" if notes else ""))
    click.echo("\n   ● default   ○ opt-in\n")


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show installation progress and ledger summary."""
    from provisioner.core.models.phase import PHASES, phase_name
    from provisioner.core.use_cases.status import get_status

    settings = load_settings_or_exit(ctx)
    result = get_status(settings)

    if as_json:
        emit_json(result.to_dict())
        return

    summary = result.summary
    assert summary is not None
    click.secho(f"\n📋 State: {result.state_path}", fg="cyan", bold=True)
    if summary.state is None:
        if summary.exists:
            click.secho(f"   State file is {summary.status.value.replace('_', ' ')}", fg="red")
        else:
            click.echo("   No installation yet.")
        click.echo()
        return

    s = summary.state
    click.echo(f"   Mode: {s.mode.value}   Version: {s.tool_version or 'unknown'}   Started: {s.started_at}")
    click.secho(f"   Progress: {len(s.completed_phases)}/{len(PHASES)} phases", bold=True)
    for phase in PHASES:
        if s.is_completed(phase.id):
            duration = s.phase_durations.get(phase.id)
            timing = f" ({duration}s)" if duration is not None else ""
            click.secho(f"     ✓ {phase.name}{timing}", fg="green")
        elif s.is_skipped(phase.id):
            click.secho(f"     ⊘ {phase.name} (skipped)", fg="yellow")
        elif s.failed_phase == phase.id:
            click.secho(f"     ✗ {phase.name} (failed at {s.failed_step or 'unknown step'})", fg="red")
        elif s.current_phase == phase.id:
            click.secho(f"     ▶ {phase.name} (in progress: {s.current_step or '-'})", fg="cyan")
        else:
            click.echo(f"     ○ {phase.name}")

    if s.failed_phase and s.failed_error:
        click.echo()
        click.secho(f"   Last error in {phase_name(s.failed_phase)}:", fg="red")
        for line in s.failed_error.splitlines()[:5]:
            click.echo(f"     │ {line}")
    if s.skipped_tools:
        click.secho(f"   Skipped optional tools: {', '.join(s.skipped_tools)}", fg="yellow")

    click.echo()
    click.secho(
        f"   Ledger: {result.changes_total} change(s), {result.changes_undone} undone",
        bold=True,
    )
    click.echo()


@cli.command("reset-state")
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
def reset_state(ctx: click.Context, assume_yes: bool) -> None:
    """Back up the state file and start over. The change ledger is kept."""
    from provisioner.core.errors import PersistenceError, SessionLocked
    from provisioner.core.persistence.lock import SessionLock
    from provisioner.core.services.state.manager import StateManager

    settings = load_settings_or_exit(ctx)
    if not assume_yes and not click.confirm("Reset installation state?", default=False):
        click.echo("Aborted.")
        sys.exit(1)

    try:
        with SessionLock(settings.state_dir):
            manager = StateManager(
                settings.state_dir,
                tool_version=__version__,
                mode=settings.mode,
                target_user=settings.target_user,
                min_free_bytes=settings.min_free_bytes,
            )
            backup = manager.reset()
    except (SessionLocked, PersistenceError) as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(e.exit_code)

    click.secho("✅ State reset", fg="green", bold=True)
    if backup is not None:
        click.echo(f"   Previous state saved to {backup}")


# ── Register sub-commands from provisioner/ui/cli/ ────────────────

from provisioner.ui.cli.undo import undo

cli.add_command(undo)


if __name__ == "__main__":
    cli()
