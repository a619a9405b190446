import os

import psutil
import pytest

from appbackup.catalog import CHROME, FIREFOX, TERMIUS
from appbackup.errors import AppsRunningError
from appbackup.guard import check_running, enforce, scan_processes

APPS = [CHROME, FIREFOX, TERMIUS]


@pytest.mark.parametrize("process, expected", [
    (("chrome", "/opt/google/chrome/chrome --type=renderer"), ["Chrome"]),
    ((".firefox-wrappe", "/nix/store/abc-firefox/bin/.firefox-wrapped"), ["Firefox"]),
    (("firefox-bin", ""), ["Firefox"]),
    (("electron", "/opt/Termius/termius-app --no-sandbox /opt/Termius/resources/app.asar"), ["Termius"]),
    (("chromedriver", "chromedriver --port=9515"), []),
    (("bash", "bash -c vim notes-about-firefox.txt"), []),
])
def test_check_running(process, expected):
    assert check_running(APPS, [process]) == expected

def test_enforce_blocks_without_force():
    with pytest.raises(AppsRunningError) as exc:
        enforce(APPS, force=False, processes=[("chrome", ""), ("firefox", "")])
    assert exc.value.apps == ["Chrome", "Firefox"]
    assert "--force" in exc.value.hint

def test_enforce_warns_with_force():
    warning = enforce([CHROME], force=True, processes=[("chrome", "")])
    assert warning == "Apps running (Chrome) - continuing with --force"
    assert enforce([CHROME], force=False, processes=[]) is None

class _Proc:
    def __init__(self, pid, name, cmdline):
        self.info = {"pid": pid, "name": name, "cmdline": cmdline}

def test_scan_processes_skips_self(monkeypatch):
    procs = [
        _Proc(os.getpid(), "python", ["python", "-m", "pytest", "chrome"]),
        _Proc(1, "systemd", None),
        _Proc(4242, "chrome", ["/opt/google/chrome/chrome"]),
    ]
    monkeypatch.setattr(psutil, "process_iter", lambda attrs: iter(procs))
    assert scan_processes() == [("systemd", ""), ("chrome", "/opt/google/chrome/chrome")]
