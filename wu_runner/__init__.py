"""Windows Update runner for unattended image builds.

Searches, filters, downloads and installs updates, then reports through the exit
code whether the host must reboot before the runner is invoked again.
"""

__version__ = "1.0.0"
