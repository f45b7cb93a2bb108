"""Sentry configuration and utilities for error tracking and performance monitoring.

All Sentry-related logic for the update runner lives here. Tracking is only active
once ``init_sentry`` has been called with a DSN (``WU_RUNNER_SENTRY_DSN``);
every helper is a no-op otherwise.
"""

import logging
import os
import platform
import sys
from contextlib import contextmanager
from typing import Any, Dict, Optional

import psutil
import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

from . import __version__

logger = logging.getLogger(__name__)

# Global flag to track if Sentry has been initialized
_sentry_initialized = False


def detect_environment(configured: Optional[str] = None) -> str:
    """Return 'development' or 'production'.

    Detection logic:
    1. An explicitly configured value (``WU_RUNNER_ENV``)
    2. A source checkout (``.git`` next to the package) is development
    3. Default to 'production', since the runner mostly runs inside image builds
    """
    env_var = (configured or "").lower()
    if env_var in ("development", "dev"):
        return "development"
    elif env_var in ("production", "prod"):
        return "production"

    checkout = os.path.join(os.path.dirname(os.path.dirname(__file__)), ".git")
    if not getattr(sys, "frozen", False) and os.path.isdir(checkout):
        return "development"
    return "production"


def get_system_context() -> Dict[str, Any]:
    """Collect system information attached to every Sentry event.

    Returns:
        Dict[str, Any]: OS, Python, uptime and memory details for the host.
    """
    context: Dict[str, Any] = {
        "os": {
            "name": platform.system(),
            "version": platform.version(),
            "release": platform.release(),
            "architecture": platform.machine(),
        },
        "python": {
            "version": platform.python_version(),
            "implementation": platform.python_implementation(),
        },
        "host": {"hostname": platform.node()},
    }

    try:
        context["boot_time"] = psutil.boot_time()
    except Exception as e:
        logger.debug(f"Failed to collect boot time: {e}")

    try:
        mem = psutil.virtual_memory()
        context["memory"] = {
            "total_gb": round(mem.total / (1024**3), 2),
            "available_gb": round(mem.available / (1024**3), 2),
            "percent_used": mem.percent,
        }
    except Exception as e:
        logger.debug(f"Failed to collect memory info: {e}")
        context["memory"] = {"error": str(e)}

    try:
        usage = psutil.disk_usage(os.environ.get("SystemDrive", "C:") + "\\")
        context["system_drive"] = {
            "free_gb": round(usage.free / (1024**3), 2),
            "percent_used": usage.percent,
        }
    except Exception as e:
        logger.debug(f"Failed to collect disk info: {e}")

    return context


def init_sentry(
    dsn: Optional[str],
    environment: Optional[str] = None,
    traces_sample_rate: float = 1.0,
    send_system_info: bool = True,
) -> bool:
    """Initialize the Sentry SDK for the update runner.

    Safe to call multiple times; only the first successful call initializes.

    Args:
        dsn: Sentry DSN; tracking stays disabled when empty
        environment: Configured environment name, see ``detect_environment``
        traces_sample_rate: Performance monitoring sample rate, 0.0-1.0
        send_system_info: Whether to attach host details to events

    Returns:
        bool: True if Sentry is initialized
    """
    global _sentry_initialized

    if not dsn:
        logger.debug("Sentry is disabled (no DSN configured)")
        return False

    if _sentry_initialized:
        return True

    try:
        system_context = get_system_context() if send_system_info else {}

        def before_send(event, hint):
            """Attach host context and stable fingerprints to every event."""
            if system_context:
                event.setdefault("contexts", {})["system_info"] = system_context
                event.setdefault("tags", {})["os_version"] = system_context.get(
                    "os", {}
                ).get("version", "unknown")

            # Group failures by phase instead of by traceback location
            transaction = event.get("transaction", "")
            if transaction.startswith("phase.") and event.get("fingerprint") in (
                None,
                ["{{ default }}"],
            ):
                exc_values = (event.get("exception") or {}).get("values") or []
                error_type = exc_values[-1].get("type", "") if exc_values else ""
                event["fingerprint"] = [transaction, error_type]
            return event

        sentry_sdk.init(
            dsn=dsn,
            environment=detect_environment(environment),
            traces_sample_rate=traces_sample_rate,
            send_default_pii=False,
            before_send=before_send,
            integrations=[
                LoggingIntegration(
                    level=logging.INFO,  # breadcrumbs only
                    event_level=None,
                ),
            ],
            release=f"wu-runner@{__version__}",
        )

        _sentry_initialized = True
        logger.debug("Sentry initialized")
        return True

    except Exception as e:
        logger.warning(f"Failed to initialize Sentry: {e}")
        return False


def capture_run_exception(
    exception: BaseException,
    phase: str,
    extra_context: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """Report a fatal exception with the phase it happened in.

    Returns:
        Optional[str]: Event ID if the error was captured, None otherwise
    """
    if not _sentry_initialized:
        return None

    try:
        with sentry_sdk.new_scope() as scope:
            scope.fingerprint = [phase, exception.__class__.__name__]
            if extra_context:
                for key, value in extra_context.items():
                    scope.set_context(key, value)
            scope.set_tag("phase", phase)
            scope.set_tag("error_type", exception.__class__.__name__)
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.debug(f"Failed to capture exception: {e}")
        return None


@contextmanager
def create_phase_span(phase: str, **data: Any):
    """Wrap one orchestrator phase (search, download, install) in a transaction.

    Yields the transaction, or None when Sentry is disabled.

    Example:
        >>> with create_phase_span("download", updates=3) as span:
        ...     result = service.download(updates, priority)
    """
    if not _sentry_initialized:
        yield None
        return

    with sentry_sdk.start_transaction(op="phase", name=f"phase.{phase}") as transaction:
        for key, value in data.items():
            transaction.set_data(key, value)
        yield transaction


def add_breadcrumb(message: str, category: str = "info", level: str = "info", **data):
    """Add a breadcrumb to the current Sentry scope.

    Args:
        message: Human-readable message describing the event
        category: Category of the breadcrumb (e.g., 'search', 'download', 'reboot')
        level: Severity level ('debug', 'info', 'warning', 'error', 'critical')
        **data: Additional key-value data to attach to the breadcrumb
    """
    if not _sentry_initialized:
        return

    try:
        sentry_sdk.add_breadcrumb(
            category=category, message=message, level=level, data=data
        )
    except Exception as e:
        logger.debug(f"Failed to add breadcrumb: {e}")
