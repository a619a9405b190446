"""
Process guard: refuses to touch a profile while its application is running.
"""
import os
from typing import Iterable, List, Optional, Tuple

import psutil

from .errors import AppsRunningError
from .models import AppSpec

# (process name, joined command line)
ProcessInfo = Tuple[str, str]


def scan_processes() -> List[ProcessInfo]:
    """Snapshot the process table, skipping our own process."""
    own_pid = os.getpid()
    table: List[ProcessInfo] = []
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        info = proc.info
        if info.get("pid") == own_pid:
            continue
        cmdline = info.get("cmdline") or []
        table.append((info.get("name") or "", " ".join(cmdline)))
    return table

def matches(spec: AppSpec, process: ProcessInfo) -> bool:
    name, cmdline = process
    if name in spec.process_names:
        return True
    return any(marker in cmdline for marker in spec.process_patterns)

def check_running(apps: Iterable[AppSpec], processes: Optional[Iterable[ProcessInfo]] = None) -> List[str]:
    """Display names of the given applications that currently have a live process."""
    table = list(processes) if processes is not None else scan_processes()
    return [spec.display_name for spec in apps if any(matches(spec, p) for p in table)]

def enforce(
    apps: Iterable[AppSpec],
    force: bool,
    processes: Optional[Iterable[ProcessInfo]] = None,
) -> Optional[str]:
    """
    Raise AppsRunningError when a target application is running.
    With force, return a warning message instead.
    """
    running = check_running(apps, processes)
    if not running:
        return None
    if not force:
        raise AppsRunningError(running)
    return f"Apps running ({', '.join(running)}) - continuing with --force"
