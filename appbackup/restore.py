"""
Restore merger.
Decrypts an artifact, installs any carried Safe Storage key, snapshots the live
files about to change and merges the backup over the live profile. Files the
backup does not contain are never touched.
"""
import configparser
import re
import shutil
from pathlib import Path
from typing import List, NamedTuple, Optional, Tuple

from .archive import extract_archive, list_entries
from .crypto import AgeEngine
from .errors import KeyImportFailure, RestoreExtractionError
from .keys import KeyProvider
from .keystore import SafeStorageKeyring, import_key, take_key_file
from .models import AppSpec, RestoreReport
from .utils import files_equal, secure_erase, secure_erase_tree, timestamp_id, validate_path

SNAPSHOT_INFIX = ".backup-essential."


class MergeItem(NamedTuple):
    source: Path
    target: str  # Relative to the live profile root

def _profile_from_pointer(root: Path, pointer: str) -> Optional[str]:
    """
    The default profile named in a profiles.ini style file, if it exists on disk.
    Install sections win over Default=1 profiles, which win over the first profile.
    """
    ini = root / pointer
    if not ini.is_file():
        return None
    parser = configparser.ConfigParser(strict=False, interpolation=None)
    try:
        parser.read(ini, encoding="utf-8")
    except configparser.Error:
        return None

    candidates: List[str] = []
    profiles = [parser[s] for s in parser.sections() if s.startswith("Profile")]
    for section in parser.sections():
        if section.startswith("Install") and parser[section].get("default"):
            candidates.append(parser[section]["default"])
    candidates.extend(p["path"] for p in profiles if p.get("default") == "1" and p.get("path"))
    candidates.extend(p["path"] for p in profiles if p.get("path"))

    for rel in candidates:
        if Path(rel).is_absolute() or ".." in Path(rel).parts:
            continue
        if (root / rel).is_dir():
            return Path(rel).as_posix()
    return None

def find_profile(spec: AppSpec, root: Path) -> Optional[str]:
    """Locate the profile directory of a multi-profile application under root."""
    if not spec.profile_glob or not root.is_dir():
        return None
    if spec.profile_pointer:
        named = _profile_from_pointer(root, spec.profile_pointer)
        if named:
            return named
    matches = sorted(p.name for p in root.glob(spec.profile_glob) if p.is_dir())
    return matches[0] if matches else None

def plan_merge(spec: AppSpec, scratch: Path, live_root: Path) -> List[MergeItem]:
    """
    Map every extracted file onto its live destination.
    A backed-up profile directory is remapped onto the profile that already
    exists locally; pointer files are only restored when there is none.
    """
    entries = list_entries(scratch)
    if not spec.profile_glob:
        plan = [MergeItem(scratch / rel, rel) for rel in entries]
    else:
        backup_profile = find_profile(spec, scratch)
        if backup_profile is None:
            raise RestoreExtractionError(f"No {spec.display_name} profile directory found in backup")
        local_profile = find_profile(spec, live_root)
        fresh = local_profile is None
        target_profile = backup_profile if fresh else local_profile

        prefix = backup_profile + "/"
        plan = []
        for rel in entries:
            if rel.startswith(prefix):
                plan.append(MergeItem(scratch / rel, f"{target_profile}/{rel[len(prefix):]}"))
            elif rel in spec.pointer_files and fresh:
                plan.append(MergeItem(scratch / rel, rel))

    for item in plan:
        validate_path(live_root / item.target, live_root)
    return plan

def _snapshot_key(live_root: Path, candidate: Path) -> Optional[Tuple[str, int]]:
    pattern = re.escape(live_root.name + SNAPSHOT_INFIX) + r"(\d{8}-\d{6})(?:\.(\d+))?"
    m = re.fullmatch(pattern, candidate.name)
    if not m or not candidate.is_dir():
        return None
    return m.group(1), int(m.group(2) or 0)

def list_snapshots(live_root: Path) -> List[Path]:
    """Snapshot directories of live_root, oldest first."""
    parent = live_root.parent
    if not parent.is_dir():
        return []
    keyed = []
    for candidate in parent.iterdir():
        key = _snapshot_key(live_root, candidate)
        if key is not None:
            keyed.append((key, candidate))
    return [path for _, path in sorted(keyed)]

def _new_snapshot_dir(live_root: Path, stamp: str) -> Path:
    base = live_root.parent / f"{live_root.name}{SNAPSHOT_INFIX}{stamp}"
    candidate = base
    counter = 0
    while candidate.exists():
        counter += 1
        candidate = base.with_name(f"{base.name}.{counter}")
    candidate.mkdir(mode=0o700)
    return candidate

def snapshot_existing(plan: List[MergeItem], live_root: Path, stamp: Optional[str] = None) -> Optional[Path]:
    """
    Copy every live file the merge would change into a timestamped sibling
    directory. Returns None when nothing would change.
    """
    if not live_root.is_dir():
        return None
    changed = []
    for item in plan:
        live = live_root / item.target
        if live.is_file() and not files_equal(live, item.source):
            changed.append(item.target)
    if not changed:
        return None

    snapshot_dir = _new_snapshot_dir(live_root, stamp or timestamp_id())
    for rel in changed:
        dst = snapshot_dir / rel
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(live_root / rel, dst)
    return snapshot_dir

def prune_snapshots(live_root: Path, keep: int, protect: Optional[Path] = None) -> List[Path]:
    """
    Delete all but the newest `keep` snapshots of live_root.
    The protected snapshot survives even when keep is 0.
    """
    snapshots = list_snapshots(live_root)
    others = [s for s in snapshots if s != protect]
    slots = max(keep - (1 if protect in snapshots else 0), 0)
    doomed = others[:max(len(others) - slots, 0)]
    for path in doomed:
        shutil.rmtree(path)
    return doomed

def apply_merge(plan: List[MergeItem], live_root: Path) -> int:
    """Copy planned files into place, creating directories as needed."""
    for item in plan:
        dst = live_root / item.target
        dst.parent.mkdir(parents=True, exist_ok=True)
        existed = dst.exists()
        shutil.copyfile(item.source, dst)
        if not existed:
            dst.chmod(item.source.stat().st_mode & 0o777)
    return len(plan)

def restore_app(
    spec: AppSpec,
    artifact: Path,
    live_root: Path,
    engine: AgeEngine,
    identity: KeyProvider,
    scratch: Path,
    retention: int,
    keyring: Optional[SafeStorageKeyring] = None,
    stamp: Optional[str] = None,
) -> RestoreReport:
    """
    Restore one application from its encrypted artifact.

    Decryption, key-provider and extraction errors propagate and leave the
    live profile untouched. A failed Safe Storage key import is reported in
    the result and the files are still merged.
    """
    work = scratch / spec.name
    work.mkdir(parents=True, exist_ok=True)
    archive = work / spec.archive_name
    extracted = work / "files"
    warnings: List[str] = []
    key_status = None

    try:
        engine.decrypt(artifact, identity, archive)
        extract_archive(archive, extracted)
        secure_erase(archive)

        carried = take_key_file(extracted)
        if spec.safe_storage:
            if carried is None:
                warnings.append(f"No {spec.display_name} Safe Storage key in backup")
            elif keyring is None:
                key_status = "skipped"
                warnings.append("No OS keyring available; Safe Storage key not imported")
            else:
                try:
                    key_status = import_key(spec, carried, keyring)
                except KeyImportFailure as e:
                    key_status = "failed"
                    warnings.append(f"Safe Storage key import failed: {e}")

        plan = plan_merge(spec, extracted, live_root)
        snapshot = snapshot_existing(plan, live_root, stamp)
        pruned = prune_snapshots(live_root, retention, protect=snapshot)
        restored = apply_merge(plan, live_root)
    finally:
        secure_erase_tree(work)

    return RestoreReport(
        app=spec.name,
        target=str(live_root),
        restored=restored,
        snapshot=str(snapshot) if snapshot else None,
        pruned=[str(p) for p in pruned],
        key_imported=key_status,
        warnings=warnings,
    )
