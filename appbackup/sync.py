"""
Remote synchronization through a local git mirror of the backup repository.
"""
import os
import shutil
import subprocess
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Tuple

from .errors import RemoteUnavailable, TransportFailure
from .models import LFS_THRESHOLD, MirrorStatus, SyncResult

LFS_ATTRIBUTE = "*.age filter=lfs diff=lfs merge=lfs -text"
LFS_MARKER = "*.age filter=lfs"
REMOTE_BRANCHES = ("origin/main", "origin/master")


def ensure_lfs_tracking(repo_dir: Path) -> bool:
    """
    Route *.age files through git LFS via .gitattributes.
    Returns True if the attribute line was added, False if it was already present.
    """
    attributes = repo_dir / ".gitattributes"
    existing = attributes.read_text(encoding="utf-8") if attributes.exists() else ""
    if LFS_MARKER in existing:
        return False
    prefix = "" if not existing or existing.endswith("\n") else "\n"
    with attributes.open("a", encoding="utf-8") as f:
        f.write(f"{prefix}{LFS_ATTRIBUTE}\n")
    return True

def copy_into(artifact: Path, directory: Path) -> Path:
    """Copy an artifact next to its final name, then rename it into place."""
    dest = directory / artifact.name
    partial = directory / f".{artifact.name}.partial"
    try:
        shutil.copyfile(artifact, partial)
        os.replace(partial, dest)
    except BaseException:
        partial.unlink(missing_ok=True)
        raise
    return dest


class GitMirror:
    """A working copy of the backup repository. One operation at a time."""

    def __init__(self, path: Path, repo_url: str, git: str = "git"):
        self.path = path
        self.repo_url = repo_url
        self.git = git

    @property
    def exists(self) -> bool:
        return (self.path / ".git").exists()

    def _run(self, args: List[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(args, capture_output=True, text=True, check=False)
        except OSError as e:
            raise TransportFailure(f"Cannot run {self.git}: {e}") from e

    def _git(self, *args: str, check: bool = True, error=TransportFailure) -> subprocess.CompletedProcess:
        result = self._run([self.git, "-C", str(self.path), *args])
        if check and result.returncode != 0:
            raise error(f"git {' '.join(args)} failed: {result.stderr.strip()}")
        return result

    def _discard_partials(self) -> None:
        if self.path.is_dir():
            for leftover in self.path.glob(".*.partial"):
                leftover.unlink()

    def clone(self) -> None:
        """
        Clone the remote into the mirror path. Artifacts staged there by an
        earlier unpushed backup are carried over into the fresh checkout.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        holding = None
        self._discard_partials()
        if self.path.is_dir() and any(self.path.iterdir()):
            if any(not p.name.endswith(".age") for p in self.path.iterdir()):
                raise TransportFailure(f"{self.path} exists and is not a git checkout")
            holding = Path(tempfile.mkdtemp(prefix=".appbackup_staged_", dir=self.path.parent))
            for staged in self.path.glob("*.age"):
                os.replace(staged, holding / staged.name)
            self.path.rmdir()

        try:
            result = self._run([self.git, "clone", self.repo_url, str(self.path)])
            if result.returncode != 0:
                raise RemoteUnavailable(f"git clone {self.repo_url} failed: {result.stderr.strip()}")
        finally:
            if holding is not None:
                self.path.mkdir(parents=True, exist_ok=True)
                for staged in holding.iterdir():
                    os.replace(staged, self.path / staged.name)
                holding.rmdir()

    def _has_head(self) -> bool:
        return self._git("rev-parse", "--verify", "-q", "HEAD", check=False).returncode == 0

    def _remote_has_branches(self) -> bool:
        result = self._git("ls-remote", "--heads", "origin", error=RemoteUnavailable)
        return bool(result.stdout.strip())

    def update(self) -> bool:
        """
        Clone when missing; otherwise drop uncommitted leftovers of an interrupted
        run and rebase onto the remote. Returns True when a clone happened.
        """
        if not self.exists:
            self.clone()
            return True
        self._discard_partials()
        if self._has_head():
            self._git("reset", "--hard", "HEAD")
        if self._remote_has_branches():
            self._git("pull", "--rebase", error=RemoteUnavailable)
        return False

    def pull(self) -> SyncResult:
        cloned = self.update()
        return SyncResult(cloned=cloned, message="Cloned repository" if cloned else "Updated repository")

    def stage(self, artifacts: Iterable[Path]) -> List[Path]:
        """Place artifacts in the mirror directory without committing."""
        self.path.mkdir(parents=True, exist_ok=True)
        return [copy_into(a, self.path) for a in artifacts]

    def _lfs_install(self) -> bool:
        return self._git("lfs", "install", "--local", check=False).returncode == 0

    def push(self, artifacts: Iterable[Path], lfs_threshold: int = LFS_THRESHOLD) -> SyncResult:
        """
        Update the mirror, copy artifacts in, promote oversized ones to LFS, commit
        and push. A failed push keeps the local commit for a later retry.
        """
        cloned = self.update()

        lfs_configured = False
        for artifact in artifacts:
            dest = copy_into(artifact, self.path)
            if dest.stat().st_size > lfs_threshold and ensure_lfs_tracking(self.path):
                lfs_configured = True

        notes: List[str] = []
        if lfs_configured and not self._lfs_install():
            notes.append("git-lfs is not installed; large artifacts are committed inline")

        self._git("add", "-A")
        if self._git("diff", "--staged", "--quiet", check=False).returncode == 0:
            notes.insert(0, "No changes to commit")
            return SyncResult(cloned=cloned, lfs_configured=lfs_configured, message="; ".join(notes))

        self._git("commit", "-m", f"Backup {datetime.now():%Y-%m-%d %H:%M}")
        try:
            self._git("push", "-u", "origin", "HEAD")
        except TransportFailure as e:
            notes.insert(0, f"Committed locally, push failed: {e}")
            return SyncResult(cloned=cloned, committed=True, lfs_configured=lfs_configured, message="; ".join(notes))

        notes.insert(0, "Pushed to remote")
        return SyncResult(cloned=cloned, committed=True, pushed=True, lfs_configured=lfs_configured, message="; ".join(notes))

    def local_files(self) -> List[Tuple[str, int]]:
        if not self.path.is_dir():
            return []
        return [(p.name, p.stat().st_size) for p in sorted(self.path.glob("*.age")) if p.is_file()]

    def status(self) -> MirrorStatus:
        """Compare the mirror with its remote; degrade to local files when the remote is unusable."""
        if not self.exists:
            return MirrorStatus(
                present=False,
                local_files=self.local_files(),
                message="Local repository not found. Run 'app-backup restore --pull' to clone.",
            )

        local_files = self.local_files()
        if self._git("remote", "get-url", "origin", check=False).returncode != 0:
            return MirrorStatus(present=True, local_files=local_files, message="No remote 'origin' configured")
        if self._git("fetch", "origin", check=False).returncode != 0:
            return MirrorStatus(
                present=True, local_files=local_files,
                message="Unable to reach remote; showing local status only",
            )

        for branch in REMOTE_BRANCHES:
            remote = self._git("rev-parse", "--verify", "-q", branch, check=False)
            if remote.returncode == 0:
                break
        else:
            return MirrorStatus(
                present=True, remote_reachable=True, local_files=local_files,
                message="Remote branch not found (origin/main or origin/master)",
            )

        remote_head = remote.stdout.strip()
        if self._has_head():
            counts = self._git("rev-list", "--left-right", "--count", f"HEAD...{remote_head}").stdout.split()
            ahead, behind = int(counts[0]), int(counts[1])
            revisions = f"HEAD..{remote_head}"
        else:
            # unborn HEAD: cloned from a remote that was empty at the time
            ahead, behind = 0, 1
            revisions = remote_head

        if ahead == 0 and behind == 0:
            return MirrorStatus(
                present=True, remote_reachable=True, up_to_date=True,
                local_files=local_files, message="App profiles are up to date",
            )

        commits: List[str] = []
        if behind:
            log = self._git("log", "--oneline", revisions)
            commits = [line for line in log.stdout.splitlines() if line.strip()]
        if behind and ahead:
            message = f"Local and remote have diverged ({ahead} local, {len(commits)} remote commits)"
        elif behind:
            message = "Remote has newer profiles. Run 'app-backup restore --pull' to update."
        else:
            message = f"{ahead} local commit(s) not yet pushed. Run 'app-backup backup --push'."
        return MirrorStatus(
            present=True, remote_reachable=True, up_to_date=False,
            remote_commits=commits, local_files=local_files, message=message,
        )
