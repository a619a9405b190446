"""
Deterministic archive builder.

Archives are gzip'd tarballs whose bytes depend only on the staged file
names and contents: entries are sorted, timestamps and ownership are fixed and
the gzip header carries no name or wall-clock time. Identical inputs therefore
produce identical ciphertext inputs and diff-friendly commits.
"""
import gzip
import os
import shutil
import tarfile
from pathlib import Path
from typing import Iterable, List

from .catalog import match_patterns, resolve_directories
from .errors import NoFilesFound, PathTraversalError, RestoreExtractionError
from .models import AppSpec
from .utils import validate_path

# 2024-01-01T00:00:00Z
ARCHIVE_MTIME = 1704067200
ARCHIVE_MODE = 0o600


def stage_files(root: Path, relative_paths: Iterable[str], staging: Path) -> List[str]:
    """File-list mode: copy the listed files that exist under root into staging."""
    staged: List[str] = []
    for rel in relative_paths:
        src = root / rel
        if not src.is_file():
            continue
        dst = staging / rel
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dst)
        staged.append(rel)
    return staged

def stage_patterns(root: Path, patterns: Iterable[str], staging: Path) -> List[str]:
    """Pattern mode: copy the regular files matching any glob pattern into staging."""
    return stage_files(root, match_patterns(root, patterns), staging)

def stage_tree(root: Path, rel_dir: str, staging: Path) -> List[str]:
    """Copy every regular file below root/rel_dir, symlinks excluded."""
    found: List[str] = []
    for dirpath, _, filenames in os.walk(root / rel_dir):
        for name in filenames:
            src = Path(dirpath) / name
            if src.is_file() and not src.is_symlink():
                found.append(src.relative_to(root).as_posix())
    return stage_files(root, sorted(found), staging)

def stage_app(spec: AppSpec, root: Path, staging: Path) -> List[str]:
    """
    Copy the essential files of spec from root into staging.
    Raises NoFilesFound when nothing in the catalog entry exists.
    """
    staged = stage_files(root, spec.files, staging)
    staged.extend(stage_patterns(root, spec.patterns, staging))
    for rel_dir in resolve_directories(spec, root):
        staged.extend(stage_tree(root, rel_dir, staging))
    if not staged:
        raise NoFilesFound(spec.display_name)
    return sorted(set(staged))

def list_entries(staging: Path) -> List[str]:
    entries: List[str] = []
    for dirpath, _, filenames in os.walk(staging):
        for name in filenames:
            path = Path(dirpath) / name
            if path.is_file() and not path.is_symlink():
                entries.append(path.relative_to(staging).as_posix())
    return sorted(entries)

def build_archive(staging: Path, dest: Path) -> Path:
    """Package every regular file below staging into a reproducible .tar.gz at dest."""
    entries = list_entries(staging)
    with dest.open("wb") as raw:
        with gzip.GzipFile(filename="", mode="wb", fileobj=raw, compresslevel=6, mtime=ARCHIVE_MTIME) as gz:
            with tarfile.open(fileobj=gz, mode="w", format=tarfile.GNU_FORMAT) as tar:
                for rel in entries:
                    path = staging / rel
                    info = tarfile.TarInfo(name=rel)
                    info.size = path.stat().st_size
                    info.mtime = ARCHIVE_MTIME
                    info.mode = ARCHIVE_MODE
                    info.uid = info.gid = 0
                    info.uname = info.gname = ""
                    with path.open("rb") as f:
                        tar.addfile(info, f)
    return dest

def extract_archive(archive: Path, dest: Path) -> List[str]:
    """
    Extract regular files from archive into dest.
    Links, devices and members escaping dest are rejected.
    """
    dest.mkdir(parents=True, exist_ok=True)
    extracted: List[str] = []
    try:
        with tarfile.open(archive, mode="r:gz") as tar:
            for member in tar:
                target = validate_path(dest / member.name, dest)
                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if not member.isfile():
                    raise PathTraversalError(f"Refusing non-regular archive member '{member.name}'")
                f_in = tar.extractfile(member)
                if f_in is None:
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with f_in, target.open("wb") as f_out:
                    shutil.copyfileobj(f_in, f_out)
                target.chmod(member.mode & 0o777 or ARCHIVE_MODE)
                extracted.append(target.relative_to(dest.resolve()).as_posix())
    except PathTraversalError:
        raise
    except (tarfile.TarError, OSError, EOFError) as e:
        raise RestoreExtractionError(f"Failed to extract {archive.name}: {e}") from e
    return sorted(extracted)
