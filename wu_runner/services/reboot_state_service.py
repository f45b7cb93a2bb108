"""Host reboot state and the Windows Modules Installer probe.

The native reboot flag comes from ``Microsoft.Update.SystemInfo``; pending
component servicing packages are read from the registry; the installer probe
scans the process table with psutil.
"""

import logging
from typing import List, Optional

import psutil

from ..subprocess_utils import run_powershell_json

try:
    import winreg  # type: ignore
except ImportError:  # Non-Windows systems have no registry
    winreg = None  # type: ignore

logger = logging.getLogger(__name__)

PACKAGES_PENDING_KEY = (
    r"SOFTWARE\Microsoft\Windows\CurrentVersion\Component Based Servicing\PackagesPending"
)

INSTALLER_PROCESS_NAME = "TiWorker.exe"

_REBOOT_REQUIRED_SCRIPT = """
$systemInfo = New-Object -ComObject 'Microsoft.Update.SystemInfo'
[pscustomobject]@{ reboot_required = [bool]$systemInfo.RebootRequired } | ConvertTo-Json
"""


class WindowsRebootState:
    """RebootStateSource for a Windows host."""

    def __init__(self, timeout: Optional[float] = 120):
        self.timeout = timeout

    def reboot_required(self) -> bool:
        data = run_powershell_json(_REBOOT_REQUIRED_SCRIPT, timeout=self.timeout)
        return bool(data.get("reboot_required"))

    def pending_packages(self) -> List[str]:
        """Return the subkey names under PackagesPending (empty when absent)."""
        if winreg is None:
            raise RuntimeError("The registry is only available on Windows")
        try:
            key = winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, PACKAGES_PENDING_KEY)
        except FileNotFoundError:
            return []
        names: List[str] = []
        with key:
            index = 0
            while True:
                try:
                    names.append(winreg.EnumKey(key, index))
                except OSError:
                    break
                index += 1
        return names


class ProcessProbe:
    """InstallerProcessProbe matching a process name case-insensitively."""

    def __init__(self, process_name: str = INSTALLER_PROCESS_NAME):
        self.process_name = process_name

    def is_running(self) -> bool:
        wanted = self.process_name.lower()
        for proc in psutil.process_iter(["name"]):
            try:
                name = proc.info.get("name") or ""
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if name.lower() == wanted:
                logger.debug(f"{self.process_name} is running (pid {proc.pid})")
                return True
        return False
