"""
Core utilities for AppBackup.
"""
import os
import shutil
import signal
import sys
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from .errors import PathTraversalError

CHUNK_SIZE = 1024 * 1024


def is_windows() -> bool:
    """Return True if running on Windows."""
    return sys.platform == "win32"

def secure_erase(path: Path) -> bool:
    """
    Overwrite a file with random bytes, then unlink it.
    Returns True when the overwrite succeeded, False when only a plain unlink
    was possible. Copy-on-write and journaling filesystems may keep old blocks
    regardless, so this is hardening rather than a guarantee.
    """
    if not path.is_file() or path.is_symlink():
        path.unlink(missing_ok=True)
        return False

    overwritten = False
    try:
        remaining = path.stat().st_size
        with path.open("r+b") as f:
            while remaining > 0:
                chunk = min(remaining, CHUNK_SIZE)
                f.write(os.urandom(chunk))
                remaining -= chunk
            f.flush()
            os.fsync(f.fileno())
        overwritten = True
    except OSError:
        overwritten = False
    path.unlink(missing_ok=True)
    return overwritten

def secure_erase_tree(root: Path) -> int:
    """Securely erase every file below root and remove the tree. Returns files overwritten."""
    if not root.exists():
        return 0
    count = 0
    for dirpath, _, files in os.walk(root, topdown=False):
        for name in files:
            if secure_erase(Path(dirpath) / name):
                count += 1
    shutil.rmtree(root, ignore_errors=True)
    return count

@contextmanager
def secure_temp_dir(prefix: str = "appbackup_") -> Generator[Path, None, None]:
    """Provide an owner-only temporary directory that is shredded on every exit path."""
    temp_dir = Path(tempfile.mkdtemp(prefix=prefix))
    try:
        if not is_windows():
            temp_dir.chmod(0o700)
        yield temp_dir
    finally:
        secure_erase_tree(temp_dir)

@contextmanager
def termination_as_exit() -> Generator[None, None, None]:
    """
    Turn SIGTERM into SystemExit for the duration of the block so that cleanup
    scopes run. SIGINT already surfaces as KeyboardInterrupt.
    """
    if is_windows():
        yield
        return

    def handler(signum: Any, frame: Any) -> None:
        raise SystemExit(128 + signum)

    previous = signal.signal(signal.SIGTERM, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)

def validate_path(path: str | Path, base_dir: str | Path) -> Path:
    """
    Resolve a path and ensure it falls strictly under the base_dir to prevent directory traversal.
    """
    resolved_path = Path(path).resolve()
    resolved_base = Path(base_dir).resolve()

    if resolved_path != resolved_base and resolved_base not in resolved_path.parents:
        raise PathTraversalError(f"Path '{path}' escapes base directory '{base_dir}'.")
    return resolved_path

def files_equal(a: Path, b: Path) -> bool:
    """Byte-compare two files, short-circuiting on size."""
    if a.stat().st_size != b.stat().st_size:
        return False
    with a.open("rb") as fa, b.open("rb") as fb:
        while True:
            ca = fa.read(65536)
            cb = fb.read(65536)
            if ca != cb:
                return False
            if not ca:
                return True

def human_size(nbytes: int) -> str:
    """Convert bytes to a human-readable string (e.g. 1.2 MiB)."""
    if nbytes == 0:
        return "0 B"
    suffixes = ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]
    i = 0
    size = float(nbytes)
    while size >= 1024 and i < len(suffixes) - 1:
        size /= 1024.0
        i += 1
    if i == 0:
        return f"{int(size)} {suffixes[i]}"
    return f"{size:.1f} {suffixes[i]}"

def timestamp_id() -> str:
    """Return a YYYYMMDD-HHMMSS formatted string."""
    return time.strftime("%Y%m%d-%H%M%S")
