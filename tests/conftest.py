"""Shared fakes for the update runner tests."""

from datetime import datetime
from typing import Iterable, List, Optional, Set

import pytest

from wu_runner.models import (
    DownloadResult,
    InstallResult,
    ResultCode,
    SearchResult,
    Update,
)
from wu_runner.reboot import RebootDetector


class FakeClock:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeRebootState:
    def __init__(self, reboot_required: bool = False, pending: Optional[List[str]] = None):
        self.flag = reboot_required
        self.pending = pending or []
        self.flag_queries = 0

    def reboot_required(self) -> bool:
        self.flag_queries += 1
        return self.flag

    def pending_packages(self) -> List[str]:
        return list(self.pending)


class FakeProbe:
    """Reports the installer as running for the first ``running_polls`` polls."""

    def __init__(self, running_polls: int = 0):
        self.running_polls = running_polls
        self.polls = 0

    def is_running(self) -> bool:
        self.polls += 1
        return self.polls <= self.running_polls


class FakeUpdateService:
    def __init__(
        self,
        updates: List[Update],
        search_codes: Iterable[ResultCode] = (ResultCode.SUCCEEDED,),
        download_codes: Iterable[ResultCode] = (ResultCode.SUCCEEDED,),
        not_downloaded: Iterable[str] = (),
        install_result: Optional[InstallResult] = None,
    ):
        self.updates = updates
        self.search_codes = list(search_codes)
        self.download_codes = list(download_codes)
        self.not_downloaded: Set[str] = set(not_downloaded)
        self.install_result = install_result or InstallResult(ResultCode.SUCCEEDED)
        self.accepted: List[str] = []
        self.downloads: List[List[str]] = []
        self.installed: List[List[str]] = []
        self.priorities: List[int] = []
        self.search_calls = 0

    def search(self, criteria: str) -> SearchResult:
        self.search_calls += 1
        code = self.search_codes.pop(0) if len(self.search_codes) > 1 else self.search_codes[0]
        if isinstance(code, Exception):
            raise code
        return SearchResult(code, list(self.updates) if code == ResultCode.SUCCEEDED else [])

    def accept_eula(self, update: Update) -> None:
        self.accepted.append(update.update_id)
        update.eula_accepted = True

    def download(self, updates: List[Update], priority: int) -> DownloadResult:
        self.downloads.append([u.update_id for u in updates])
        self.priorities.append(priority)
        code = (
            self.download_codes.pop(0) if len(self.download_codes) > 1 else self.download_codes[0]
        )
        if isinstance(code, Exception):
            raise code
        for update in updates:
            update.is_downloaded = update.update_id not in self.not_downloaded
        return DownloadResult(code)

    def install(self, updates: List[Update]) -> InstallResult:
        self.installed.append([u.update_id for u in updates])
        return self.install_result


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_update():
    counter = {"n": 0}

    def _make(title: Optional[str] = None, **kwargs) -> Update:
        counter["n"] += 1
        n = counter["n"]
        kwargs.setdefault("last_deployment_change_time", datetime(2024, 1, n % 28 + 1))
        kwargs.setdefault("max_download_size", 10 * 1024 * 1024)
        return Update(update_id=f"id-{n}", title=title or f"Update {n}", **kwargs)

    return _make


@pytest.fixture
def reboot_state() -> FakeRebootState:
    return FakeRebootState()


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def detector(reboot_state, probe, clock) -> RebootDetector:
    return RebootDetector(reboot_state, probe, clock=clock, sleep=clock.sleep)


@pytest.fixture
def fake_service_cls():
    return FakeUpdateService


@pytest.fixture
def fake_reboot_state_cls():
    return FakeRebootState


@pytest.fixture
def fake_probe_cls():
    return FakeProbe
