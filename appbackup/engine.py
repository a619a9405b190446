"""
Orchestrator: config -> process guard -> per-application pipeline -> sync.

Each application is an independent unit of failure. Errors that make the
whole run pointless (apps running, identity key unavailable) abort it and
carry the partial summary on the exception.
"""
from pathlib import Path
from typing import Iterable, List, Optional

from .archive import build_archive, stage_app
from .audit import RunLog
from .catalog import select_apps
from .crypto import AgeEngine, sha256_file
from .errors import (
    AppBackupError,
    AppsRunningError,
    KeyExportFailure,
    KeyProviderError,
    NoFilesFound,
    TransportFailure,
)
from .guard import ProcessInfo, enforce
from .keys import KeyProvider, provider_for
from .keystore import SafeStorageKeyring, SecretServiceKeyring, export_key, write_key_file
from .models import AppOutcome, AppSpec, Config, MirrorStatus, RunSummary
from .restore import restore_app
from .sync import GitMirror
from .utils import human_size, secure_erase_tree, secure_temp_dir, termination_as_exit, timestamp_id


def _not_processed(specs: List[AppSpec]) -> List[AppOutcome]:
    return [AppOutcome(app=s.name, status="skipped", detail="Not processed") for s in specs]


class Orchestrator:
    def __init__(
        self,
        config: Config,
        keyring: Optional[SafeStorageKeyring] = None,
        engine: Optional[AgeEngine] = None,
        key_provider: Optional[KeyProvider] = None,
        processes: Optional[List[ProcessInfo]] = None,
        home: Optional[Path] = None,
        run_log: Optional[RunLog] = None,
        mirror: Optional[GitMirror] = None,
    ):
        self.config = config
        self.keyring = keyring if keyring is not None else SecretServiceKeyring()
        self.engine = engine or AgeEngine(recipient=config.age_recipient)
        self.key_provider = key_provider or provider_for(config)
        self.processes = processes
        self.home = home or Path.home()
        self.run_log = run_log or RunLog()
        self.mirror = mirror or GitMirror(config.mirror_path, config.repo_url)

    def _guard(self, operation: str, specs: List[AppSpec], force: bool, warnings: List[str]) -> None:
        try:
            override = enforce(specs, force, self.processes)
        except AppsRunningError as e:
            self.run_log.log(f"{operation}_refused", running=e.apps)
            e.summary = RunSummary(operation=operation, outcomes=_not_processed(specs))
            raise
        if override:
            warnings.append(override)
            self.run_log.log("guard_overridden", operation=operation, message=override)

    # Backup

    def _backup_app(self, spec: AppSpec, scratch: Path, warnings: List[str]) -> Path:
        work = scratch / spec.name
        staging = work / "staging"
        staging.mkdir(parents=True)

        stage_app(spec, spec.live_root(self.home), staging)
        if spec.safe_storage:
            try:
                value = export_key(spec, self.keyring)
            except KeyExportFailure as e:
                value = None
                warnings.append(f"{spec.display_name}: Safe Storage key not exported ({e})")
            else:
                if not value:
                    warnings.append(f"{spec.display_name}: no Safe Storage key found in the keyring")
            if value:
                write_key_file(staging, value)

        archive = build_archive(staging, work / spec.archive_name)
        secure_erase_tree(staging)
        return self.engine.encrypt(archive, self.config.age_recipient, work / spec.artifact_name)

    def backup(self, apps: Optional[Iterable[str]] = None, force: bool = False, push: bool = False) -> RunSummary:
        """Back up the selected applications and push or stage the artifacts."""
        specs = select_apps(apps)
        warnings: List[str] = []
        self._guard("backup", specs, force, warnings)
        self.run_log.log("backup_started", apps=[s.name for s in specs], push=push)

        outcomes: List[AppOutcome] = []
        with termination_as_exit(), secure_temp_dir() as scratch:
            artifacts: List[Path] = []
            for spec in specs:
                try:
                    artifact = self._backup_app(spec, scratch, warnings)
                except NoFilesFound as e:
                    outcomes.append(AppOutcome(app=spec.name, status="skipped", detail=str(e)))
                    self.run_log.log("app_skipped", app=spec.name, reason=str(e))
                    continue
                except (AppBackupError, OSError) as e:
                    outcomes.append(AppOutcome(app=spec.name, status="failed", detail=str(e)))
                    self.run_log.log("app_failed", app=spec.name, error=str(e))
                    continue
                size = human_size(artifact.stat().st_size)
                artifacts.append(artifact)
                outcomes.append(AppOutcome(app=spec.name, status="success", detail=f"Encrypted ({size})"))
                self.run_log.log(
                    "app_backed_up", app=spec.name, artifact=artifact.name, size=size, sha256=sha256_file(artifact),
                )

            if artifacts:
                outcomes.extend(self._sync(artifacts, push, warnings))

        summary = RunSummary(operation="backup", outcomes=outcomes, warnings=warnings)
        self.run_log.log("backup_finished", ok=summary.ok)
        return summary

    def _sync(self, artifacts: List[Path], push: bool, warnings: List[str]) -> List[AppOutcome]:
        if not push:
            try:
                self.mirror.stage(artifacts)
            except OSError as e:
                self.run_log.log("sync_failed", error=str(e))
                return [AppOutcome(app="remote", status="failed", detail=f"Staging artifacts failed: {e}")]
            warnings.append(f"Artifacts staged in {self.mirror.path}; run with --push to upload")
            self.run_log.log("artifacts_staged", path=str(self.mirror.path), count=len(artifacts))
            return []
        try:
            result = self.mirror.push(artifacts, self.config.lfs_threshold)
        except TransportFailure as e:
            self.run_log.log("sync_failed", error=str(e))
            return [AppOutcome(app="remote", status="failed", detail=str(e))]
        self.run_log.log("sync", **result.model_dump())
        status = "failed" if result.committed and not result.pushed else "success"
        return [AppOutcome(app="remote", status=status, detail=result.message)]

    # Restore

    def restore(self, apps: Optional[Iterable[str]] = None, force: bool = False, pull: bool = False) -> RunSummary:
        """Restore the selected applications from the local mirror, optionally pulling first."""
        specs = select_apps(apps)
        warnings: List[str] = []
        self._guard("restore", specs, force, warnings)
        self.run_log.log("restore_started", apps=[s.name for s in specs], pull=pull)

        if pull:
            try:
                result = self.mirror.pull()
                self.run_log.log("sync", **result.model_dump())
            except TransportFailure as e:
                self.run_log.log("sync_failed", error=str(e))
                if not self.mirror.exists:
                    e.summary = RunSummary(operation="restore", outcomes=_not_processed(specs), warnings=warnings)
                    raise
                warnings.append(f"Pull failed, restoring from the local copy: {e}")

        outcomes: List[AppOutcome] = []
        stamp = timestamp_id()
        with termination_as_exit(), secure_temp_dir() as scratch:
            for index, spec in enumerate(specs):
                artifact = self.mirror.path / spec.artifact_name
                try:
                    report = restore_app(
                        spec,
                        artifact,
                        spec.live_root(self.home),
                        self.engine,
                        self.key_provider,
                        scratch,
                        self.config.backup_retention,
                        self.keyring,
                        stamp=stamp,
                    )
                except KeyProviderError as e:
                    outcomes.append(AppOutcome(app=spec.name, status="failed", detail=str(e)))
                    outcomes.extend(_not_processed(specs[index + 1:]))
                    self.run_log.log("restore_aborted", app=spec.name, error=str(e))
                    e.summary = RunSummary(operation="restore", outcomes=outcomes, warnings=warnings)
                    raise
                except (AppBackupError, OSError) as e:
                    outcomes.append(AppOutcome(app=spec.name, status="failed", detail=str(e)))
                    self.run_log.log("app_failed", app=spec.name, error=str(e))
                    continue

                detail = f"{report.restored} files restored"
                if report.snapshot:
                    detail += f"; previous files saved to {report.snapshot}"
                if report.key_imported:
                    detail += f"; Safe Storage key {report.key_imported}"
                outcomes.append(AppOutcome(app=spec.name, status="success", detail=detail))
                warnings.extend(f"{spec.display_name}: {w}" for w in report.warnings)
                self.run_log.log("app_restored", **report.model_dump())

        summary = RunSummary(operation="restore", outcomes=outcomes, warnings=warnings)
        self.run_log.log("restore_finished", ok=summary.ok)
        return summary

    def status(self) -> MirrorStatus:
        return self.mirror.status()
