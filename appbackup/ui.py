"""
Rich terminal output helpers, with an ASCII fallback for limited terminals.
"""
import sys
from contextlib import contextmanager
from typing import Dict, Generator, List, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table
from rich.text import Text

from .models import MirrorStatus, RunSummary
from .utils import human_size

try:
    "\U0001f4e6".encode(sys.stdout.encoding or "utf-8")
    HAS_UNICODE = True
except (UnicodeEncodeError, LookupError, AttributeError):
    HAS_UNICODE = False

ICONS: Dict[str, str] = {
    "backup": "\U0001f4e6",
    "restore": "\U0001f4e5",
    "encrypt": "\U0001f510",
    "sync": "\U0001f504",
    "key": "\U0001f511",
    "guard": "\U0001f6e1",
    "success": "✅",
    "error": "❌",
    "warn": "⚠️",
    "info": "ℹ️",
    "doctor": "\U0001fa7a",
}

ASCII_ICONS: Dict[str, str] = {
    "backup": "[BAK]",
    "restore": "[RST]",
    "encrypt": "[SEC]",
    "sync": "[SYN]",
    "key": "[KEY]",
    "guard": "[GRD]",
    "success": "[OK]",
    "error": "[ERR]",
    "warn": "[WARN]",
    "info": "[INF]",
    "doctor": "[DOC]",
}

STATUS_STYLES = {
    "success": "green",
    "skipped": "yellow",
    "failed": "red",
    "pass": "green",
    "warn": "yellow",
    "fail": "red",
}


def icon(name: str) -> str:
    return ICONS.get(name, "") if HAS_UNICODE else ASCII_ICONS.get(name, "")

console = Console(width=120)
err_console = Console(stderr=True, width=120)

def render_status(action: str, message: str, style: str = "white") -> None:
    """Print a single line status update."""
    console.print(f"{icon(action)} [{style}]{message}[/]")

def render_error(message: str, hint: Optional[str] = None) -> None:
    """Print a styled error panel, with remediation guidance when available."""
    body = Text(message, style="red")
    if hint:
        body.append(f"\n\n{hint}", style="dim")
    err_console.print()
    err_console.print(Panel(body, border_style="red", expand=False, title=f"{icon('error')} ERROR"))

def render_warning(message: str) -> None:
    console.print(f"{icon('warn')} [yellow]{message}[/]")

def render_table(title: str, headers: List[str], rows: List[List[str]]) -> None:
    """Render a structured Rich Table."""
    console.print()
    table = Table(
        title=title,
        border_style="cyan",
        header_style="bold magenta",
        box=box.ROUNDED if HAS_UNICODE else box.ASCII,
    )
    if headers:
        table.add_column(headers[0], no_wrap=True)
        for h in headers[1:]:
            table.add_column(h, justify="left", overflow="fold")
    for r in rows:
        table.add_row(*r)
    console.print(table)

def styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/]"

def render_summary(summary: RunSummary) -> None:
    """Per-application outcome table followed by run-level warnings."""
    rows = [[o.app, styled(o.status), o.detail] for o in summary.outcomes]
    render_table(f"{summary.operation.capitalize()} summary", ["Application", "Status", "Detail"], rows)
    for warning in summary.warnings:
        render_warning(warning)
    if summary.ok:
        render_status("success", f"{summary.operation.capitalize()} complete", style="bold green")
    else:
        render_status("error", f"{summary.operation.capitalize()} finished with failures", style="bold red")

def render_mirror_status(status: MirrorStatus) -> None:
    style = "green" if status.up_to_date else "yellow"
    render_status("sync", status.message, style=style)
    if status.remote_commits:
        console.print("[bold]Commits on remote:[/]")
        for line in status.remote_commits:
            console.print(f"  [cyan]{line}[/]")
    if status.local_files:
        rows = [[name, human_size(size)] for name, size in status.local_files]
        render_table("Local backups", ["Artifact", "Size"], rows)
    elif status.present:
        render_warning("No backup artifacts in the local repository")

@contextmanager
def render_progress(title: str = "Working...") -> Generator[Progress, None, None]:
    """Spinner for steps whose length is unknown up front."""
    progress = Progress(
        SpinnerColumn(spinner_name="dots2", style="cyan"),
        TextColumn("[bold blue]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    )
    with progress:
        progress.add_task(title, total=None)
        yield progress
