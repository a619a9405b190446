"""
Command Line Interface entry point using Typer.
"""
from pathlib import Path
from typing import List, Optional

import typer

from . import __version__
from .audit import RunLog, get_run_log
from .catalog import CATALOG, resolve_directories, resolve_files
from .config import resolve_config
from .errors import AppBackupError
from .models import RunSummary
from .ui import (
    console,
    icon,
    render_error,
    render_mirror_status,
    render_progress,
    render_status,
    render_summary,
    render_table,
    render_warning,
    styled,
)

app = typer.Typer(
    help=(
        "[bold cyan]APP-BACKUP[/]\n\n"
        "Encrypted backup and restore of the essential profile files of "
        "Chrome, Firefox and Termius through a git repository."
    ),
    no_args_is_help=True,
    rich_markup_mode="rich",
)

ConfigOption = typer.Option(None, "--config", "-c", help="Path to a configuration file.")
AppsOption = typer.Option(None, "--app", "-a", help="Limit the run to this application (repeatable).")


def _orchestrator(config_path: Optional[Path]):
    from .engine import Orchestrator

    loaded = resolve_config(config_path)
    for warning in loaded.warnings:
        render_warning(warning)
    return Orchestrator(loaded.config, run_log=RunLog())

def _finish(summary: RunSummary) -> None:
    render_summary(summary)
    if not summary.ok:
        raise typer.Exit(1)

def _fail(e: AppBackupError) -> None:
    if e.summary is not None:
        render_summary(e.summary)
    render_error(str(e), e.hint)
    raise typer.Exit(1)

@app.command(name="backup")
def backup(
    force: bool = typer.Option(False, "--force", "-f", help="Proceed even if an application is running."),
    push: bool = typer.Option(False, "--push", "-p", help="Commit and push artifacts to the remote."),
    apps: Optional[List[str]] = AppsOption,
    config: Optional[Path] = ConfigOption,
):
    """Back up essential application files into encrypted artifacts."""
    try:
        orchestrator = _orchestrator(config)
        render_status("backup", "Backing up application profiles...", style="bold cyan")
        with render_progress("Archiving and encrypting..."):
            summary = orchestrator.backup(apps, force=force, push=push)
    except AppBackupError as e:
        _fail(e)
    _finish(summary)

@app.command(name="restore")
def restore(
    force: bool = typer.Option(False, "--force", "-f", help="Proceed even if an application is running."),
    pull: bool = typer.Option(False, "--pull", "-p", help="Pull the latest artifacts before restoring."),
    apps: Optional[List[str]] = AppsOption,
    config: Optional[Path] = ConfigOption,
):
    """Restore application files from encrypted artifacts, snapshotting what they replace."""
    try:
        orchestrator = _orchestrator(config)
        render_status("restore", "Restoring application profiles...", style="bold cyan")
        with render_progress("Decrypting and merging..."):
            summary = orchestrator.restore(apps, force=force, pull=pull)
    except AppBackupError as e:
        _fail(e)
    _finish(summary)

@app.command(name="status")
def status(config: Optional[Path] = ConfigOption):
    """Compare the local backup repository with its remote."""
    try:
        orchestrator = _orchestrator(config)
        with render_progress("Checking remote..."):
            mirror_status = orchestrator.status()
    except AppBackupError as e:
        _fail(e)
    render_mirror_status(mirror_status)

@app.command(name="apps")
def list_apps():
    """List the applications this tool knows how to back up."""
    home = Path.home()
    rows = []
    for spec in CATALOG.values():
        root = spec.live_root(home)
        entries = len(spec.files) + len(spec.patterns) + len(spec.directories)
        found = len(resolve_files(spec, root)) + len(resolve_directories(spec, root))
        extra = "Safe Storage key" if spec.safe_storage else ""
        rows.append([spec.name, spec.display_name, f"~/{spec.profile_dir}", f"{found}/{entries}", extra])
    render_table("Applications", ["Name", "Application", "Profile", "Found", "Extra"], rows)

@app.command(name="doctor")
def run_doctor(config: Optional[Path] = ConfigOption):
    """Check external tools, keyring access and configuration."""
    from .doctor import run_diagnostics

    with render_progress("Running diagnostic checks..."):
        results = run_diagnostics(config)
    rows = [[styled(r.status), r.name, r.detail] for r in results]
    render_table(f"{icon('doctor')} Doctor", ["Status", "Check", "Details"], rows)
    if any(r.status == "fail" for r in results):
        raise typer.Exit(1)

@app.command(name="log")
def show_log(last_n: int = typer.Option(50, "--last", "-n", help="Number of recent events to show")):
    """Show recent run-log events."""
    events = get_run_log(last_n)
    if not events:
        render_status("info", "No run events found.")
        return
    rows = [[e.get("timestamp", ""), e.get("event", ""), str(e.get("details", ""))] for e in events]
    render_table("Run Log", ["Timestamp", "Event", "Details"], rows)

@app.command(name="version")
def version():
    """Show the installed version."""
    console.print(f"app-backup [bold cyan]{__version__}[/]")

if __name__ == "__main__":
    app()
