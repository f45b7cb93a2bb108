"""Windows Update Agent (WUA) adapter driven through PowerShell.

Each phase runs a PowerShell script that opens a ``Microsoft.Update.Session``,
does its work with the COM searcher/downloader/installer, and prints a JSON
object. COM objects cannot outlive the script, so the download and install
scripts re-run the last search and pick the updates by ``UpdateID``.

Search script output:
  {
    result_code: int,
    updates: [
      { update_id, title, last_deployment_change_time (ISO), max_download_size,
        can_request_user_input, eula_accepted, kb_article_ids: [], categories: [] }
    ]
  }

Download script output:
  { result_code: int, updates: [ { update_id, is_downloaded } ] }

Install script output:
  { result_code: int, reboot_required: bool, updates: [ { update_id, result_code } ] }
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from ..models import DownloadResult, InstallResult, ResultCode, SearchResult, Update
from ..sentry_config import add_breadcrumb
from ..subprocess_utils import ps_string_array, quote_ps_string, run_powershell_json

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_APPLICATION_ID = "wu-runner"

# Opens a session and searches; shared by every phase script.
_SEARCH_PS = """
$session = New-Object -ComObject 'Microsoft.Update.Session'
$session.ClientApplicationID = {client_id}
$searcher = $session.CreateUpdateSearcher()
$searchResult = $searcher.Search({criteria})
"""

# Builds an UpdateColl from the search result limited to $ids.
_SELECT_PS = """
$ids = {ids}
$accept = {accept}
$selected = New-Object -ComObject 'Microsoft.Update.UpdateColl'
foreach ($u in $searchResult.Updates) {{
  $id = $u.Identity.UpdateID
  if ($ids -contains $id) {{
    if (($accept -contains $id) -and -not $u.EulaAccepted) {{ $u.AcceptEula() }}
    [void]$selected.Add($u)
  }}
}}
"""

_SEARCH_SCRIPT = (
    _SEARCH_PS
    + """
$items = @()
foreach ($u in $searchResult.Updates) {{
  $items += [pscustomobject]@{{
    update_id = $u.Identity.UpdateID
    title = $u.Title
    last_deployment_change_time = $u.LastDeploymentChangeTime.ToString('s')
    max_download_size = [int64]$u.MaxDownloadSize
    can_request_user_input = [bool]$u.InstallationBehavior.CanRequestUserInput
    eula_accepted = [bool]$u.EulaAccepted
    kb_article_ids = @($u.KBArticleIDs)
    categories = @($u.Categories | ForEach-Object {{ $_.Name }})
  }}
}}
[pscustomobject]@{{ result_code = [int]$searchResult.ResultCode; updates = @($items) }} | ConvertTo-Json -Depth 6
"""
)

_DOWNLOAD_SCRIPT = (
    _SEARCH_PS
    + _SELECT_PS
    + """
$downloader = $session.CreateUpdateDownloader()
$downloader.Updates = $selected
$downloader.Priority = {priority}
$downloadResult = $downloader.Download()
$items = @()
foreach ($u in $selected) {{
  $items += [pscustomobject]@{{ update_id = $u.Identity.UpdateID; is_downloaded = [bool]$u.IsDownloaded }}
}}
[pscustomobject]@{{ result_code = [int]$downloadResult.ResultCode; updates = @($items) }} | ConvertTo-Json -Depth 4
"""
)

_INSTALL_SCRIPT = (
    _SEARCH_PS
    + _SELECT_PS
    + """
$installer = $session.CreateUpdateInstaller()
$installer.Updates = $selected
$installResult = $installer.Install()
$items = @()
for ($i = 0; $i -lt $selected.Count; $i++) {{
  $items += [pscustomobject]@{{
    update_id = $selected.Item($i).Identity.UpdateID
    result_code = [int]$installResult.GetUpdateResult($i).ResultCode
  }}
}}
[pscustomobject]@{{
  result_code = [int]$installResult.ResultCode
  reboot_required = [bool]$installResult.RebootRequired
  updates = @($items)
}} | ConvertTo-Json -Depth 4
"""
)


def _as_list(value: Any) -> List[Any]:
    """ConvertTo-Json collapses single-element arrays in some PowerShell versions."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.debug(f"Unparseable deployment date: {value}")
        return None


def parse_update(item: Dict[str, Any]) -> Update:
    return Update(
        update_id=str(item.get("update_id") or ""),
        title=str(item.get("title") or ""),
        last_deployment_change_time=_parse_date(item.get("last_deployment_change_time")),
        max_download_size=int(item.get("max_download_size") or 0),
        can_request_user_input=bool(item.get("can_request_user_input")),
        eula_accepted=bool(item.get("eula_accepted", True)),
        kb_article_ids=[str(kb) for kb in _as_list(item.get("kb_article_ids"))],
        categories=[str(c) for c in _as_list(item.get("categories"))],
    )


class WindowsUpdateService:
    """UpdateService backed by the Windows Update Agent COM API."""

    def __init__(
        self,
        client_application_id: str = DEFAULT_CLIENT_APPLICATION_ID,
        timeout: Optional[float] = None,
    ):
        self.client_application_id = client_application_id
        self.timeout = timeout
        self._criteria: Optional[str] = None
        self._accepted: Set[str] = set()

    def _session_script(self, template: str, **values: str) -> str:
        if self._criteria is None:
            raise RuntimeError("search() must be called before download or install")
        return template.format(
            client_id=quote_ps_string(self.client_application_id),
            criteria=quote_ps_string(self._criteria),
            **values,
        )

    def _selection(self, updates: Iterable[Update]) -> Dict[str, str]:
        ids = [u.update_id for u in updates]
        return {
            "ids": ps_string_array(ids),
            "accept": ps_string_array([i for i in ids if i in self._accepted]),
        }

    def search(self, criteria: str) -> SearchResult:
        self._criteria = criteria
        script = _SEARCH_SCRIPT.format(
            client_id=quote_ps_string(self.client_application_id),
            criteria=quote_ps_string(criteria),
        )
        data = run_powershell_json(script, timeout=self.timeout)
        updates = [parse_update(item) for item in _as_list(data.get("updates"))]
        add_breadcrumb(
            "Windows Update search finished",
            category="search",
            level="info",
            count=len(updates),
        )
        return SearchResult(ResultCode.parse(data.get("result_code")), updates)

    def accept_eula(self, update: Update) -> None:
        """Record the EULA acceptance; it is applied by the download script."""
        self._accepted.add(update.update_id)
        update.eula_accepted = True

    def download(self, updates: List[Update], priority: int) -> DownloadResult:
        script = self._session_script(
            _DOWNLOAD_SCRIPT, priority=str(int(priority)), **self._selection(updates)
        )
        data = run_powershell_json(script, timeout=self.timeout)
        downloaded = {
            str(item.get("update_id")): bool(item.get("is_downloaded"))
            for item in _as_list(data.get("updates"))
        }
        for update in updates:
            update.is_downloaded = downloaded.get(update.update_id, False)
        return DownloadResult(ResultCode.parse(data.get("result_code")))

    def install(self, updates: List[Update]) -> InstallResult:
        script = self._session_script(_INSTALL_SCRIPT, **self._selection(updates))
        data = run_powershell_json(script, timeout=self.timeout)
        return InstallResult(
            result_code=ResultCode.parse(data.get("result_code")),
            reboot_required=bool(data.get("reboot_required")),
            update_results={
                str(item.get("update_id")): ResultCode.parse(item.get("result_code"))
                for item in _as_list(data.get("updates"))
            },
        )


__all__ = ["WindowsUpdateService", "parse_update"]
