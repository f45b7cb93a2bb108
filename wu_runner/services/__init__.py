"""Windows adapters for the update service, reboot state and process table."""

from .reboot_state_service import ProcessProbe, WindowsRebootState
from .windows_update_service import WindowsUpdateService

__all__ = ["ProcessProbe", "WindowsRebootState", "WindowsUpdateService"]
