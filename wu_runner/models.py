"""Data model shared by the update orchestrator and its collaborators.

Updates and phase results are produced by the update service adapter and consumed
by the orchestrator within a single run. Nothing here is persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Dict, List, Optional

# Process exit codes understood by the outer scheduler.
EXIT_OK = 0
EXIT_FATAL = 1
EXIT_REBOOT_REQUIRED = 101


class ResultCode(IntEnum):
    """Outcome of a search, download or install operation (WUA OperationResultCode)."""

    NOT_STARTED = 0
    IN_PROGRESS = 1
    SUCCEEDED = 2
    SUCCEEDED_WITH_ERRORS = 3
    FAILED = 4
    ABORTED = 5

    @property
    def label(self) -> str:
        return _RESULT_LABELS[self]

    @classmethod
    def parse(cls, value: Optional[int]) -> "ResultCode":
        """Map a raw result code to the enum, treating unknown values as FAILED."""
        try:
            return cls(int(value))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return cls.FAILED


_RESULT_LABELS: Dict[ResultCode, str] = {
    ResultCode.NOT_STARTED: "NotStarted",
    ResultCode.IN_PROGRESS: "InProgress",
    ResultCode.SUCCEEDED: "Succeeded",
    ResultCode.SUCCEEDED_WITH_ERRORS: "SucceededWithErrors",
    ResultCode.FAILED: "Failed",
    ResultCode.ABORTED: "Aborted",
}


@dataclass
class Update:
    """A single update offered by the update service."""

    update_id: str
    title: str
    last_deployment_change_time: Optional[datetime] = None
    max_download_size: int = 0
    can_request_user_input: bool = False
    eula_accepted: bool = True
    is_downloaded: bool = False
    kb_article_ids: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)

    @property
    def size_mb(self) -> float:
        return self.max_download_size / (1024 * 1024)

    def describe(self) -> str:
        """Short ``(date; size) title`` form used in progress lines."""
        date = (
            self.last_deployment_change_time.strftime("%Y-%m-%d")
            if self.last_deployment_change_time
            else "unknown date"
        )
        return f"({date}; {self.size_mb:.1f} MB): {self.title}"


@dataclass
class SearchResult:
    result_code: ResultCode
    updates: List[Update] = field(default_factory=list)


@dataclass
class DownloadResult:
    result_code: ResultCode


@dataclass
class InstallResult:
    result_code: ResultCode
    reboot_required: bool = False
    # update_id -> per-update outcome, when the service reports it
    update_results: Dict[str, ResultCode] = field(default_factory=dict)


@dataclass
class RunState:
    """Mutable state of one orchestrator run."""

    to_download: List[Update] = field(default_factory=list)
    to_install: List[Update] = field(default_factory=list)
    download_size: int = 0
    reboot_required: bool = False

    @property
    def download_size_mb(self) -> float:
        return self.download_size / (1024 * 1024)
