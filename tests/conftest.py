import shutil
from pathlib import Path
from typing import Dict, Optional

import pytest
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from appbackup.archive import build_archive
from appbackup.audit import RunLog
from appbackup.crypto import format_recipient
from appbackup.errors import ArtifactNotFound, DecryptionFailure, KeyImportFailure
from appbackup.models import Config, FileKey
from appbackup.utils import secure_erase

FAKE_HEADER = b"fake-age-v1\n"


class FakeKeyring:
    """In-memory Secret Service stand-in keyed by attribute sets."""

    def __init__(self):
        self.items: Dict[frozenset, str] = {}
        self.stores = 0

    def search(self, attributes):
        return self.items.get(frozenset(attributes.items()))

    def store(self, label, attributes, value):
        self.stores += 1
        self.items[frozenset(attributes.items())] = value

class ReadOnlyKeyring(FakeKeyring):
    def store(self, label, attributes, value):
        raise KeyImportFailure("collection is locked")

class FakeEngine:
    """Reversible stand-in for age: prefixes a header instead of encrypting."""

    def __init__(self):
        self.decrypt_calls = 0

    def encrypt(self, archive: Path, recipient: str, dest: Path) -> Path:
        dest.write_bytes(FAKE_HEADER + archive.read_bytes())
        secure_erase(archive)
        return dest

    def decrypt(self, artifact: Path, identity, dest: Path) -> Path:
        if not artifact.is_file():
            raise ArtifactNotFound(f"Backup not found: {artifact}")
        identity.get_identity_key()
        self.decrypt_calls += 1
        data = artifact.read_bytes()
        if not data.startswith(FAKE_HEADER):
            raise DecryptionFailure(f"Failed to decrypt {artifact.name}: bad header")
        dest.write_bytes(data[len(FAKE_HEADER):])
        return dest

class StaticKeyProvider:
    def __init__(self, key: bytes = b"AGE-SECRET-KEY-1TEST", error: Optional[Exception] = None):
        self.key = key
        self.error = error
        self.calls = 0

    def get_identity_key(self) -> bytes:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.key


def write_tree(root: Path, files: Dict[str, bytes]) -> None:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)

def read_tree(root: Path) -> Dict[str, bytes]:
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*")) if p.is_file()
    }

def make_artifact(tmp_path: Path, name: str, files: Dict[str, bytes], engine: FakeEngine) -> Path:
    """Build a fake-encrypted artifact holding files."""
    staging = tmp_path / f"staging-{name}"
    write_tree(staging, files)
    archive = build_archive(staging, tmp_path / f"{name}.tar.gz")
    shutil.rmtree(staging)
    return engine.encrypt(archive, "unused", tmp_path / f"{name}-profile.tar.gz.age")


@pytest.fixture
def recipient() -> str:
    return format_recipient(X25519PrivateKey.generate().public_key())

@pytest.fixture
def config(tmp_path: Path, recipient: str) -> Config:
    return Config(
        repo_url=str(tmp_path / "remote.git"),
        age_recipient=recipient,
        identity=FileKey(path=str(tmp_path / "key.txt")),
        local_repo_path=str(tmp_path / "mirror"),
        backup_retention=2,
    )

@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()

@pytest.fixture
def key_provider() -> StaticKeyProvider:
    return StaticKeyProvider()

@pytest.fixture
def keyring() -> FakeKeyring:
    return FakeKeyring()

@pytest.fixture
def run_log(tmp_path: Path) -> RunLog:
    return RunLog(tmp_path / "run.jsonl")

@pytest.fixture
def git_env(tmp_path: Path, monkeypatch):
    """Isolate git from the user's global configuration."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    gitconfig = tmp_path / "gitconfig"
    gitconfig.write_text(
        "[user]\n\tname = Test\n\temail = test@example.com\n"
        "[init]\n\tdefaultBranch = main\n"
        "[commit]\n\tgpgsign = false\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(gitconfig))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    return gitconfig
