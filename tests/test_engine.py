import json

import pytest

from appbackup.engine import Orchestrator
from appbackup.errors import AppsRunningError, SecretUnavailable, TransportFailure
from appbackup.keystore import SAFE_STORAGE_ATTRIBUTES
from appbackup.restore import list_snapshots
from appbackup.sync import GitMirror

from .conftest import FakeEngine, FakeKeyring, StaticKeyProvider, read_tree, write_tree

CHROME_FILES = {"Default/Cookies": b"cookie jar", "Default/Login Data": b"logins", "Local State": b"{}"}
TERMIUS_FILES = {"Cookies": b"termius", "Local Storage/leveldb/000005.ldb": b"hosts"}


@pytest.fixture
def laptop(tmp_path):
    home = tmp_path / "laptop"
    write_tree(home / ".config/google-chrome", CHROME_FILES)
    write_tree(home / ".config/Termius", TERMIUS_FILES)
    return home

def orchestrator(config, home, engine, run_log, keyring=None, key_provider=None, processes=()):
    return Orchestrator(
        config,
        keyring=keyring if keyring is not None else FakeKeyring(),
        engine=engine,
        key_provider=key_provider or StaticKeyProvider(),
        processes=list(processes),
        home=home,
        run_log=run_log,
    )

def events(run_log):
    return [json.loads(line)["event"] for line in run_log.log_file.read_text().splitlines()]


def test_backup_stages_artifacts_and_skips_missing_apps(config, laptop, engine, run_log):
    summary = orchestrator(config, laptop, engine, run_log).backup()

    assert [(o.app, o.status) for o in summary.outcomes] == [
        ("chrome", "success"), ("firefox", "skipped"), ("termius", "success"),
    ]
    assert summary.ok
    assert sorted(p.name for p in config.mirror_path.iterdir()) == [
        "chrome-profile.tar.gz.age", "termius-profile.tar.gz.age",
    ]
    assert "no Safe Storage key" in " ".join(summary.warnings)
    assert events(run_log)[0] == "backup_started"
    assert events(run_log)[-1] == "backup_finished"

def test_running_app_blocks_all_side_effects(config, laptop, engine, run_log):
    runner = orchestrator(config, laptop, engine, run_log, processes=[("chrome", "/opt/google/chrome/chrome")])
    with pytest.raises(AppsRunningError) as exc:
        runner.backup()

    assert exc.value.apps == ["Chrome"]
    assert all(o.status == "skipped" for o in exc.value.summary.outcomes)
    assert not config.mirror_path.exists()
    assert events(run_log) == ["backup_refused"]

def test_force_proceeds_with_warning(config, laptop, engine, run_log):
    runner = orchestrator(config, laptop, engine, run_log, processes=[("chrome", "")])
    summary = runner.backup(["chrome"], force=True)
    assert summary.ok
    assert summary.warnings[0] == "Apps running (Chrome) - continuing with --force"

def test_backup_then_restore_on_another_machine(tmp_path, config, laptop, engine, run_log):
    laptop_keyring = FakeKeyring()
    laptop_keyring.store("Chrome Safe Storage", SAFE_STORAGE_ATTRIBUTES, "peanuts")
    orchestrator(config, laptop, engine, run_log, keyring=laptop_keyring).backup(["chrome", "termius"])

    desktop = tmp_path / "desktop"
    write_tree(desktop / ".config/google-chrome", {"Default/Cookies": b"stale", "Default/Extensions/x": b"ext"})
    desktop_keyring = FakeKeyring()
    summary = orchestrator(config, desktop, engine, run_log, keyring=desktop_keyring).restore(["chrome", "termius"])

    assert summary.ok, summary.outcomes
    assert read_tree(desktop / ".config/google-chrome") == {**CHROME_FILES, "Default/Extensions/x": b"ext"}
    assert read_tree(desktop / ".config/Termius") == TERMIUS_FILES
    assert desktop_keyring.search(SAFE_STORAGE_ATTRIBUTES) == "peanuts"
    [snapshot] = list_snapshots(desktop / ".config/google-chrome")
    assert read_tree(snapshot) == {"Default/Cookies": b"stale"}

def test_missing_artifact_fails_only_that_app(config, laptop, engine, run_log):
    orchestrator(config, laptop, engine, run_log).backup(["termius"])
    summary = orchestrator(config, laptop, engine, run_log).restore(["chrome", "termius"])
    assert [(o.app, o.status) for o in summary.outcomes] == [("chrome", "failed"), ("termius", "success")]
    assert not summary.ok

def test_locked_secret_manager_aborts_restore(config, laptop, engine, run_log):
    orchestrator(config, laptop, engine, run_log).backup()
    provider = StaticKeyProvider(error=SecretUnavailable("1Password is locked"))
    runner = orchestrator(config, laptop, engine, run_log, key_provider=provider)

    with pytest.raises(SecretUnavailable) as exc:
        runner.restore(["chrome", "termius"])

    assert provider.calls == 1
    assert [(o.app, o.status) for o in exc.value.summary.outcomes] == [("chrome", "failed"), ("termius", "skipped")]
    assert "restore_aborted" in events(run_log)

def test_pull_failure_without_mirror_aborts(config, laptop, engine, run_log):
    with pytest.raises(TransportFailure):
        orchestrator(config, laptop, engine, run_log).restore(pull=True)

def test_staging_failure_marks_remote_failed(config, laptop, engine, run_log, monkeypatch):
    def disk_full(self, artifacts):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(GitMirror, "stage", disk_full)
    summary = orchestrator(config, laptop, engine, run_log).backup(["chrome"])

    assert [(o.app, o.status) for o in summary.outcomes] == [("chrome", "success"), ("remote", "failed")]
    assert "No space left" in summary.outcomes[-1].detail
    assert "sync_failed" in events(run_log)

class InterruptedEngine(FakeEngine):
    def __init__(self):
        super().__init__()
        self.scratch = []

    def encrypt(self, archive, recipient, dest):
        self.scratch.append(dest.parent.parent)
        raise KeyboardInterrupt

def test_interrupt_removes_scratch_directory(config, laptop, run_log):
    engine = InterruptedEngine()
    with pytest.raises(KeyboardInterrupt):
        orchestrator(config, laptop, engine, run_log).backup(["chrome"])

    assert len(engine.scratch) == 1
    assert not engine.scratch[0].exists()
    assert not config.mirror_path.exists()
