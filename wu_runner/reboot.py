"""Reboot-pending detection.

Combines the host's reboot-required flag, pending component servicing packages and
an explicit force flag into a single decision. When a reboot is owed the process
exits with ``EXIT_REBOOT_REQUIRED`` once the Windows Modules Installer has been
gone for a while, so the outer scheduler can restart the machine and re-run us.
"""

import logging
import sys
import time
from typing import List, Protocol

from .debounce import Clock, Sleep, uptime, wait_until_stable
from .models import EXIT_REBOOT_REQUIRED
from .sentry_config import add_breadcrumb

logger = logging.getLogger(__name__)

INSTALLER_DEBOUNCE_SECONDS = 15


class RebootStateSource(Protocol):
    def reboot_required(self) -> bool: ...

    def pending_packages(self) -> List[str]: ...


class InstallerProcessProbe(Protocol):
    def is_running(self) -> bool: ...


class RebootDetector:
    def __init__(
        self,
        state: RebootStateSource,
        probe: InstallerProcessProbe,
        clock: Clock = uptime,
        sleep: Sleep = time.sleep,
        debounce_seconds: int = INSTALLER_DEBOUNCE_SECONDS,
    ):
        self.state = state
        self.probe = probe
        self.clock = clock
        self.sleep = sleep
        self.debounce_seconds = debounce_seconds

    def reboot_required(self, force_reboot: bool = False) -> bool:
        """Return True when any reboot source says a restart is owed."""
        if force_reboot:
            return True
        if self.state.reboot_required():
            logger.info("The system reports that a reboot is required.")
            return True
        pending = self.state.pending_packages()
        if pending:
            logger.info(
                f"There are {len(pending)} pending component servicing package(s)."
            )
            return True
        return False

    def wait_for_installer_exit(self) -> None:
        wait_until_stable(
            lambda: not self.probe.is_running(),
            self.debounce_seconds,
            clock=self.clock,
            sleep=self.sleep,
        )

    def check_and_exit_if_reboot_required(self, force_reboot: bool = False) -> None:
        """Exit the process with code 101 if a reboot is required, else return."""
        if not self.reboot_required(force_reboot):
            return
        logger.info("Pending Windows updates require a reboot.")
        logger.info("Waiting for the Windows Modules Installer to exit...")
        add_breadcrumb(
            "Reboot required", category="reboot", level="info", forced=force_reboot
        )
        self.wait_for_installer_exit()
        logger.info("Exiting with reboot required.")
        sys.exit(EXIT_REBOOT_REQUIRED)
