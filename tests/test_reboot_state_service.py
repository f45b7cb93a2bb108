"""Tests for the Windows reboot-state source and the installer probe."""

from types import SimpleNamespace

import psutil
import pytest

from wu_runner.services import reboot_state_service
from wu_runner.services.reboot_state_service import ProcessProbe, WindowsRebootState


def _proc(name, pid=100):
    return SimpleNamespace(info={"name": name}, pid=pid)


class _VanishedProc:
    pid = 7

    @property
    def info(self):
        raise psutil.NoSuchProcess(self.pid)


def test_probe_finds_installer_case_insensitively(monkeypatch) -> None:
    monkeypatch.setattr(
        psutil, "process_iter", lambda attrs=None: [_proc("svchost.exe"), _proc("tiworker.EXE")]
    )

    assert ProcessProbe().is_running() is True


def test_probe_reports_absent_installer(monkeypatch) -> None:
    monkeypatch.setattr(
        psutil, "process_iter", lambda attrs=None: [_proc("explorer.exe"), _proc(None)]
    )

    assert ProcessProbe().is_running() is False


def test_probe_skips_vanished_processes(monkeypatch) -> None:
    monkeypatch.setattr(
        psutil, "process_iter", lambda attrs=None: [_VanishedProc(), _proc("TiWorker.exe")]
    )

    assert ProcessProbe().is_running() is True


def test_native_flag_comes_from_powershell(monkeypatch) -> None:
    seen = []

    def fake_run(script_text, timeout=None):
        seen.append(script_text)
        return {"reboot_required": True}

    monkeypatch.setattr(reboot_state_service, "run_powershell_json", fake_run)

    assert WindowsRebootState().reboot_required() is True
    assert "Microsoft.Update.SystemInfo" in seen[0]


class _FakeKey:
    def __init__(self, names):
        self.names = names

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class _FakeWinreg:
    HKEY_LOCAL_MACHINE = object()

    def __init__(self, names=None):
        self.names = names
        self.opened = []

    def OpenKey(self, hive, path):
        self.opened.append(path)
        if self.names is None:
            raise FileNotFoundError(path)
        return _FakeKey(self.names)

    def EnumKey(self, key, index):
        if index >= len(key.names):
            raise OSError("No more data is available")
        return key.names[index]


def test_pending_packages_lists_subkeys(monkeypatch) -> None:
    fake = _FakeWinreg(["Package_1", "Package_2"])
    monkeypatch.setattr(reboot_state_service, "winreg", fake)

    assert WindowsRebootState().pending_packages() == ["Package_1", "Package_2"]
    assert fake.opened == [reboot_state_service.PACKAGES_PENDING_KEY]


def test_missing_pending_key_means_no_packages(monkeypatch) -> None:
    monkeypatch.setattr(reboot_state_service, "winreg", _FakeWinreg(None))

    assert WindowsRebootState().pending_packages() == []


def test_pending_packages_requires_registry(monkeypatch) -> None:
    monkeypatch.setattr(reboot_state_service, "winreg", None)

    with pytest.raises(RuntimeError, match="registry"):
        WindowsRebootState().pending_packages()
