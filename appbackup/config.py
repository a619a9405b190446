"""
Configuration discovery and validation for AppBackup.

Two formats are accepted: a JSON file in the AppBackup config directory, and
the shell-style KEY=VALUE file written by system configuration tooling
(including its older browser-only location and variable names).
"""
import json
import os
import shlex
import sys
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from pydantic import ValidationError

from .errors import ConfigInvalid
from .models import Config

APP_NAME = "appbackup"
CONFIG_ENV = "APPBACKUP_CONFIG"
SHELL_CONFIG_PATHS = (
    Path("~/.config/app-backup/config"),
    Path("~/.config/browser-backup/config"),
)

# Shell variable -> JSON key. Earlier entries win when both spellings are set.
SHELL_KEYS = (
    ("APP_BACKUP_REPO", "repo_url"),
    ("BROWSER_BACKUP_REPO", "repo_url"),
    ("AGE_RECIPIENT", "age_recipient"),
    ("AGE_KEY_1PASSWORD", "age_key_secret_ref"),
    ("AGE_KEY_PATH", "age_key_path"),
    ("LOCAL_REPO_PATH", "local_repo_path"),
    ("BACKUP_RETENTION", "backup_retention"),
    ("LFS_THRESHOLD", "lfs_threshold"),
)


class LoadedConfig(NamedTuple):
    config: Config
    path: Path
    warnings: List[str]


def get_config_dir() -> Path:
    """Returns the platform-specific configuration directory."""
    if sys.platform == "win32":
        appdata = os.getenv("APPDATA")
        base_dir = Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
    else:
        # XDG Base Directory specification
        xdg_config = os.getenv("XDG_CONFIG_HOME")
        base_dir = Path(xdg_config) if xdg_config else Path.home() / ".config"

    config_dir = base_dir / APP_NAME
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir

def candidate_paths() -> List[Path]:
    """Config locations in lookup order, excluding an explicit --config path."""
    paths: List[Path] = []
    env_path = os.getenv(CONFIG_ENV)
    if env_path:
        paths.append(Path(os.path.expanduser(env_path)))
    paths.append(get_config_dir() / "config.json")
    paths.extend(Path(os.path.expanduser(str(p))) for p in SHELL_CONFIG_PATHS)
    return paths

def find_config(path: Optional[Path] = None) -> Path:
    if path is not None:
        path = Path(os.path.expanduser(str(path)))
        if not path.is_file():
            raise ConfigInvalid(f"Configuration file not found: {path}")
        return path
    for candidate in candidate_paths():
        if candidate.is_file():
            return candidate
    searched = ", ".join(str(p) for p in candidate_paths())
    raise ConfigInvalid(f"No configuration found. Looked in: {searched}")

def parse_shell_config(text: str) -> Dict[str, str]:
    """
    Parse KEY=VALUE lines as a POSIX shell would quote them.
    `export` prefixes and comments are ignored; $VARS and ~ are expanded.
    """
    variables: Dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), 1):
        try:
            tokens = shlex.split(line, comments=True)
        except ValueError as e:
            raise ConfigInvalid(f"Line {lineno}: {e}") from e
        if tokens and tokens[0] == "export":
            tokens = tokens[1:]
        for token in tokens:
            name, sep, value = token.partition("=")
            if not sep or not name.isidentifier():
                raise ConfigInvalid(f"Line {lineno}: expected KEY=VALUE, got '{token}'")
            variables[name] = os.path.expanduser(os.path.expandvars(value))
    return variables

def shell_to_raw(variables: Dict[str, str]) -> Dict[str, str]:
    raw: Dict[str, str] = {}
    for var, key in SHELL_KEYS:
        if variables.get(var) and key not in raw:
            raw[key] = variables[var]
    return raw

def read_raw(path: Path) -> Dict[str, object]:
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigInvalid(f"{path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigInvalid(f"{path} must contain a JSON object")
        return data
    return dict(shell_to_raw(parse_shell_config(text)))

def build_config(raw: Dict[str, object]) -> LoadedConfig:
    """
    Validate raw settings and resolve the identity-key source once.
    The returned path is empty; load_config fills it in.
    """
    warnings: List[str] = []
    data = {k: v for k, v in raw.items() if v not in (None, "")}

    if not data.get("repo_url"):
        raise ConfigInvalid("Backup repository URL is not configured (repo_url / APP_BACKUP_REPO)")
    if not data.get("age_recipient"):
        raise ConfigInvalid("Age recipient is not configured (age_recipient / AGE_RECIPIENT)")

    secret_ref = data.pop("age_key_secret_ref", None)
    key_path = data.pop("age_key_path", None)
    if secret_ref:
        data["identity"] = {"kind": "secret-manager", "reference": secret_ref}
        if key_path:
            warnings.append(f"Both a secret-manager reference and age_key_path are set; ignoring {key_path}")
    elif key_path:
        data["identity"] = {"kind": "file", "path": key_path}
    else:
        raise ConfigInvalid("No identity key configured: set age_key_secret_ref or age_key_path")

    try:
        config = Config.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigInvalid(f"Invalid configuration: {problems}") from e
    return LoadedConfig(config, Path(), warnings)

def resolve_config(path: Optional[Path] = None) -> LoadedConfig:
    """Locate, parse and validate the configuration, keeping any warnings."""
    found = find_config(path)
    loaded = build_config(read_raw(found))
    return loaded._replace(path=found)

def load_config(path: Optional[Path] = None) -> Config:
    return resolve_config(path).config
