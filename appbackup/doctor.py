"""
Environment diagnostics: external tools, keyring, configuration and mirror.
"""
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

from .errors import AppBackupError
from .models import DoctorCheck

REQUIRED_TOOLS = (
    ("age", "Encrypts and decrypts profile archives", "fail"),
    ("git", "Synchronizes the backup repository", "fail"),
    ("git-lfs", "Stores artifacts over the LFS threshold", "warn"),
    ("op", "Reads the identity key from 1Password", "warn"),
)


def _tool_version(binary: str) -> str:
    try:
        result = subprocess.run([binary, "--version"], capture_output=True, text=True, check=False, timeout=10)
    except (OSError, subprocess.TimeoutExpired):
        return ""
    lines = (result.stdout or result.stderr).strip().splitlines()
    return lines[0] if lines else ""

def check_tools(which=shutil.which) -> List[DoctorCheck]:
    checks: List[DoctorCheck] = []
    for binary, purpose, missing_status in REQUIRED_TOOLS:
        path = which(binary)
        if path:
            version = _tool_version(path)
            checks.append(DoctorCheck(name=binary, status="pass", detail=version or path))
        else:
            checks.append(DoctorCheck(name=binary, status=missing_status, detail=f"Not found on PATH. {purpose}."))
    return checks

def check_keyring() -> DoctorCheck:
    try:
        import keyring

        kr = keyring.get_keyring()
    except Exception as e:  # keyring backends raise arbitrary errors during discovery
        return DoctorCheck(name="OS keyring", status="warn", detail=str(e))
    name = kr.__class__.__name__
    status = "pass" if kr.__module__.endswith("SecretService") else "warn"
    detail = name if status == "pass" else f"{name}: Chrome Safe Storage keys need the Secret Service backend"
    return DoctorCheck(name="OS keyring", status=status, detail=detail)

def check_config(config_path: Optional[Path] = None) -> List[DoctorCheck]:
    from .config import resolve_config

    try:
        loaded = resolve_config(config_path)
    except AppBackupError as e:
        return [DoctorCheck(name="Configuration", status="fail", detail=str(e))]

    config = loaded.config
    checks = [DoctorCheck(name="Configuration", status="warn" if loaded.warnings else "pass",
                          detail="; ".join([str(loaded.path), *loaded.warnings]))]
    identity = config.identity
    if identity.kind == "file":
        present = identity.resolved.is_file()
        checks.append(DoctorCheck(
            name="Identity key", status="pass" if present else "fail",
            detail=str(identity.resolved) if present else f"{identity.resolved} does not exist",
        ))
    else:
        checks.append(DoctorCheck(name="Identity key", status="pass", detail=f"Secret manager: {identity.reference}"))

    mirror = config.mirror_path
    if (mirror / ".git").exists():
        checks.append(DoctorCheck(name="Local repository", status="pass", detail=str(mirror)))
    else:
        checks.append(DoctorCheck(name="Local repository", status="warn",
                                  detail=f"{mirror} not cloned yet; the first --push or --pull clones it"))
    return checks

def run_diagnostics(config_path: Optional[Path] = None) -> List[DoctorCheck]:
    """Run every check; nothing here raises."""
    return [*check_tools(), check_keyring(), *check_config(config_path)]
