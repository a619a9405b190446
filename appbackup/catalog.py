"""
Essential-file catalog: the minimum per-application file set needed to bring
logins, saved credentials, sync state and open sessions across machines.
Caches, history, extensions and themes are deliberately absent.
"""
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import ConfigInvalid
from .models import AppSpec

CHROME = AppSpec(
    name="chrome",
    display_name="Chrome",
    profile_dir=".config/google-chrome",
    files=(
        "Default/Cookies",
        "Default/Cookies-journal",
        "Default/Login Data",
        "Default/Login Data-journal",
        "Default/Web Data",
        "Default/Web Data-journal",
        "Default/Preferences",
        "Default/Secure Preferences",
        "Default/Current Session",
        "Default/Current Tabs",
        "Default/Last Session",
        "Default/Last Tabs",
        "Default/Bookmarks",
        "Default/Favicons",
        "Default/Favicons-journal",
        "Local State",
    ),
    process_names=("chrome",),
    safe_storage=True,
)

# Firefox keeps its data under a randomly named profile directory per install.
FIREFOX = AppSpec(
    name="firefox",
    display_name="Firefox",
    profile_dir=".mozilla/firefox",
    patterns=(
        "*.default*/cookies.sqlite",
        "*.default*/cookies.sqlite-wal",
        "*.default*/logins.json",
        "*.default*/key4.db",
        "*.default*/cert9.db",
        "*.default*/prefs.js",
        "*.default*/sessionstore.jsonlz4",
        "*.default*/sessionstore-backups/recovery.jsonlz4",
        "*.default*/signons.sqlite",
        "*.default*/formhistory.sqlite",
        "*.default*/places.sqlite",
        "*.default*/favicons.sqlite",
        "profiles.ini",
        "installs.ini",
    ),
    # The kernel truncates process names to 15 characters.
    process_names=("firefox", "firefox-bin", ".firefox-wrapped", ".firefox-wrappe"),
    profile_glob="*.default*",
    profile_pointer="profiles.ini",
    pointer_files=("profiles.ini", "installs.ini"),
)

# Electron app: cookies plus the leveldb stores holding hosts, keys and auth tokens.
TERMIUS = AppSpec(
    name="termius",
    display_name="Termius",
    profile_dir=".config/Termius",
    files=(
        "Cookies",
        "Cookies-journal",
        "Preferences",
        "Network Persistent State",
    ),
    directories=(
        "Local Storage/leveldb",
        "IndexedDB/file__0.indexeddb.leveldb",
    ),
    process_patterns=("Termius",),
)

CATALOG: Dict[str, AppSpec] = {spec.name: spec for spec in (CHROME, FIREFOX, TERMIUS)}


def get_app(name: str) -> AppSpec:
    try:
        return CATALOG[name.lower()]
    except KeyError:
        known = ", ".join(CATALOG)
        raise ConfigInvalid(f"Unknown application '{name}'. Known applications: {known}.") from None

def select_apps(names: Optional[Iterable[str]] = None) -> List[AppSpec]:
    """Return catalog entries in catalog order; all of them when names is empty."""
    if not names:
        return list(CATALOG.values())
    wanted = {get_app(n).name for n in names}
    return [spec for spec in CATALOG.values() if spec.name in wanted]

def match_patterns(root: Path, patterns: Iterable[str]) -> List[str]:
    """Regular files under root matching any glob pattern; `*` never crosses `/`."""
    found = set()
    for pattern in patterns:
        for match in root.glob(pattern):
            if match.is_file():
                found.add(match.relative_to(root).as_posix())
    return sorted(found)

def resolve_files(spec: AppSpec, root: Path) -> List[str]:
    """
    Resolve the literal files and glob patterns of spec against root.
    Only existing regular files are returned, as sorted POSIX relative paths.
    """
    found = {rel for rel in spec.files if (root / rel).is_file()}
    found.update(match_patterns(root, spec.patterns))
    return sorted(found)

def resolve_directories(spec: AppSpec, root: Path) -> List[str]:
    """Catalog directories of spec that exist under root."""
    return [rel for rel in spec.directories if (root / rel).is_dir()]
