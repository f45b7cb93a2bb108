"""Search, download and install orchestration.

One run walks the phases below and always ends in the reboot detector:

  1) Exit early (101) if the host already owes a reboot from a previous run
  2) Search until the service reports success (retried every 5 seconds)
  3) Filter candidates and queue them, up to the update limit
  4) Download the queue (retried every 5 seconds, partial success tolerated)
  5) Install what was downloaded, then exit 101 if a reboot is needed

Returning normally means there is nothing left to do (exit code 0).
"""

from __future__ import annotations

import logging
import time
from typing import List, Optional, Protocol, Sequence, Tuple

from .debounce import Sleep
from .filters import FilterRule, include
from .models import (
    DownloadResult,
    InstallResult,
    ResultCode,
    RunState,
    SearchResult,
    Update,
)
from .reboot import RebootDetector
from .sentry_config import add_breadcrumb, create_phase_span

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_CRITERIA = "BrowseOnly=0 and IsInstalled=0"
DEFAULT_UPDATE_LIMIT = 1000

RETRY_DELAY_SECONDS = 5
# Requesting a download right after a search fails intermittently on older hosts.
PRE_DOWNLOAD_PAUSE_SECONDS = 30

# WUA DownloadPriority: 3 = dpHigh, 4 = dpExtraHigh (not supported up to 6.1)
DOWNLOAD_PRIORITY_HIGH = 3
DOWNLOAD_PRIORITY_EXTRA_HIGH = 4
EXTRA_HIGH_PRIORITY_MIN_VERSION = (6, 1)


class UpdateService(Protocol):
    def search(self, criteria: str) -> SearchResult: ...

    def accept_eula(self, update: Update) -> None: ...

    def download(self, updates: List[Update], priority: int) -> DownloadResult: ...

    def install(self, updates: List[Update]) -> InstallResult: ...


def download_priority(os_version: Sequence[int]) -> int:
    """Highest download priority the host version supports."""
    if tuple(os_version[:2]) > EXTRA_HIGH_PRIORITY_MIN_VERSION:
        return DOWNLOAD_PRIORITY_EXTRA_HIGH
    return DOWNLOAD_PRIORITY_HIGH


def parse_os_version(version: str) -> Tuple[int, ...]:
    """Parse ``platform.version()`` output such as ``10.0.19045``."""
    parts = []
    for piece in version.split("."):
        if not piece.isdigit():
            break
        parts.append(int(piece))
    return tuple(parts) or (0, 0)


class UpdateOrchestrator:
    def __init__(
        self,
        service: UpdateService,
        detector: RebootDetector,
        rules: List[FilterRule],
        search_criteria: str = DEFAULT_SEARCH_CRITERIA,
        update_limit: int = DEFAULT_UPDATE_LIMIT,
        os_version: Sequence[int] = (10, 0),
        sleep: Sleep = time.sleep,
    ):
        self.service = service
        self.detector = detector
        self.rules = rules
        self.search_criteria = search_criteria
        self.update_limit = update_limit
        self.os_version = tuple(os_version)
        self.sleep = sleep

    def run(self) -> RunState:
        state = RunState()
        self.detector.check_and_exit_if_reboot_required()

        candidates = self.search()
        self.accumulate(candidates, state)
        self.sleep(PRE_DOWNLOAD_PAUSE_SECONDS)
        self.download(state)
        self.install(state)
        return state

    def search(self) -> List[Update]:
        """Search until the service succeeds and return the candidate updates."""
        logger.info("Searching for Windows updates...")
        with create_phase_span("search", criteria=self.search_criteria):
            while True:
                try:
                    result = self.service.search(self.search_criteria)
                except Exception as e:
                    logger.info(f"Search for Windows updates raised an error: {e}")
                    result = SearchResult(ResultCode.FAILED)
                if result.result_code == ResultCode.SUCCEEDED:
                    return result.updates
                logger.info(
                    f"Search for Windows updates failed with '{result.result_code.label}'. "
                    "Retrying..."
                )
                add_breadcrumb(
                    "Search retry",
                    category="search",
                    level="warning",
                    result_code=result.result_code.label,
                )
                self.sleep(RETRY_DELAY_SECONDS)

    def accumulate(self, candidates: List[Update], state: RunState) -> None:
        for update in candidates:
            if not include(self.rules, update):
                logger.info(f"Skipped (filter) Windows update {update.describe()}")
                continue

            if update.can_request_user_input:
                logger.warning(
                    f"Warning The update '{update.title}' has the "
                    "CanRequestUserInput property set (if the install hangs you "
                    "might need to exclude it with the filter "
                    f"'exclude:update.title == {update.title!r}')"
                )

            if not update.eula_accepted:
                self.service.accept_eula(update)

            state.to_download.append(update)
            state.download_size += update.max_download_size
            logger.info(f"Found Windows update {update.describe()}")

            if len(state.to_download) >= self.update_limit:
                logger.info(
                    f"Update limit of {self.update_limit} reached; the remaining "
                    "updates will be handled after a reboot."
                )
                state.reboot_required = True
                break

    def download(self, state: RunState) -> None:
        if state.to_download:
            priority = download_priority(self.os_version)
            logger.info(
                f"Downloading Windows updates ({len(state.to_download)} updates; "
                f"{state.download_size_mb:.1f} MB)..."
            )
            with create_phase_span("download", updates=len(state.to_download)):
                while True:
                    try:
                        result = self.service.download(state.to_download, priority)
                    except Exception as e:
                        logger.info(f"Download Windows updates raised an error: {e}")
                        result = DownloadResult(ResultCode.FAILED)
                    if result.result_code == ResultCode.SUCCEEDED:
                        break
                    if result.result_code == ResultCode.SUCCEEDED_WITH_ERRORS:
                        logger.info(
                            "Download Windows updates succeeded with errors. "
                            "Will retry after the next reboot."
                        )
                        state.reboot_required = True
                        break
                    logger.info(
                        f"Download Windows updates failed with "
                        f"'{result.result_code.label}'. Retrying..."
                    )
                    add_breadcrumb(
                        "Download retry",
                        category="download",
                        level="warning",
                        result_code=result.result_code.label,
                    )
                    self.sleep(RETRY_DELAY_SECONDS)

        for update in state.to_download:
            if update.is_downloaded:
                logger.info(f"Downloaded Windows update: {update.title}")
                state.to_install.append(update)
            else:
                logger.info(f"Windows update was not downloaded: {update.title}")

    def install(self, state: RunState) -> None:
        if not state.to_install:
            self.detector.check_and_exit_if_reboot_required(state.reboot_required)
            if not state.reboot_required:
                logger.info("No Windows updates found")
            return

        logger.info("Installing Windows updates...")
        with create_phase_span("install", updates=len(state.to_install)):
            result = self.service.install(state.to_install)
        logger.info(f"Install Windows updates result: {result.result_code.label}")
        for update in state.to_install:
            code: Optional[ResultCode] = result.update_results.get(update.update_id)
            logger.info(
                f"Installed Windows update ({(code or result.result_code).label}): "
                f"{update.title}"
            )
        add_breadcrumb(
            "Install finished",
            category="install",
            level="info",
            result_code=result.result_code.label,
            reboot_required=result.reboot_required,
        )
        self.detector.check_and_exit_if_reboot_required(
            result.reboot_required or state.reboot_required
        )
