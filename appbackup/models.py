"""
Pydantic v2 data models for AppBackup.
"""
import os
from pathlib import Path, PurePosixPath
from typing import Annotated, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_RETENTION = 3
LFS_THRESHOLD = 100 * 1024 * 1024  # 100 MiB


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)

def _check_relative(value: str) -> str:
    path = PurePosixPath(value)
    if not value or path.is_absolute() or ".." in path.parts:
        raise ValueError(f"'{value}' must be a relative path inside the profile directory")
    return value

class AppSpec(FrozenModel):
    """Essential files for one application, relative to its profile directory."""
    name: str = Field(..., pattern=r"^[a-z0-9_-]+$")
    display_name: str
    profile_dir: str  # Relative to $HOME
    files: Tuple[str, ...] = ()
    patterns: Tuple[str, ...] = ()
    directories: Tuple[str, ...] = ()
    process_names: Tuple[str, ...] = ()
    process_patterns: Tuple[str, ...] = ()
    safe_storage: bool = False
    profile_glob: Optional[str] = None
    profile_pointer: Optional[str] = None
    pointer_files: Tuple[str, ...] = ()

    @field_validator("profile_dir", "files", "patterns", "directories", "pointer_files")
    @classmethod
    def validate_relative(cls, v):
        if isinstance(v, str):
            return _check_relative(v)
        return tuple(_check_relative(item) for item in v)

    @property
    def artifact_name(self) -> str:
        return f"{self.name}-profile.tar.gz.age"

    @property
    def archive_name(self) -> str:
        return f"{self.name}-profile.tar.gz"

    def live_root(self, home: Path) -> Path:
        return home / self.profile_dir

class SecretManagerKey(FrozenModel):
    kind: Literal["secret-manager"] = "secret-manager"
    reference: str = Field(..., min_length=1)

class FileKey(FrozenModel):
    kind: Literal["file"] = "file"
    path: str = Field(..., min_length=1)

    @property
    def resolved(self) -> Path:
        return Path(os.path.expanduser(self.path))

IdentitySource = Annotated[Union[SecretManagerKey, FileKey], Field(discriminator="kind")]

class Config(FrozenModel):
    repo_url: str = Field(..., min_length=1)
    age_recipient: str
    identity: IdentitySource
    local_repo_path: str = "~/.local/share/app-backup"
    backup_retention: int = Field(DEFAULT_RETENTION, ge=0)
    lfs_threshold: int = Field(LFS_THRESHOLD, gt=0)

    @field_validator("age_recipient")
    @classmethod
    def validate_recipient(cls, v: str) -> str:
        from .crypto import parse_recipient

        v = v.strip()
        parse_recipient(v)
        return v

    @property
    def mirror_path(self) -> Path:
        return Path(os.path.expanduser(self.local_repo_path))

class AppOutcome(FrozenModel):
    app: str
    status: Literal["success", "skipped", "failed"]
    detail: str = ""

class RunSummary(FrozenModel):
    operation: Literal["backup", "restore"]
    outcomes: List[AppOutcome] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(o.status != "failed" for o in self.outcomes)

class RestoreReport(FrozenModel):
    app: str
    target: str
    restored: int
    snapshot: Optional[str] = None
    pruned: List[str] = Field(default_factory=list)
    key_imported: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)

class SyncResult(FrozenModel):
    cloned: bool = False
    committed: bool = False
    pushed: bool = False
    lfs_configured: bool = False
    message: str = ""

class MirrorStatus(FrozenModel):
    present: bool
    remote_reachable: bool = False
    up_to_date: Optional[bool] = None
    remote_commits: List[str] = Field(default_factory=list)
    local_files: List[Tuple[str, int]] = Field(default_factory=list)
    message: str = ""

class DoctorCheck(FrozenModel):
    name: str
    status: Literal["pass", "warn", "fail"]
    detail: str
