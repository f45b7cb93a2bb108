"""Entry point for the Windows Update runner.

Runs one update cycle and reports the outcome through the exit code:

  0    nothing left to do
  1    fatal error (the message and traceback are printed)
  101  a reboot is required; reboot and run again

Progress goes to stdout as plain lines so the image-build log shows it live.
"""

import ctypes
import logging
import os
import platform
import sys
import traceback
from typing import List, Optional

from .config import ConfigError, RunnerConfig, load_config
from .models import EXIT_FATAL, EXIT_OK
from .orchestrator import UpdateOrchestrator, parse_os_version
from .reboot import RebootDetector
from .sentry_config import add_breadcrumb, capture_run_exception, init_sentry
from .services import ProcessProbe, WindowsRebootState, WindowsUpdateService

_DEFAULT_LOG_FMT = "%(message)s"

logger = logging.getLogger("wu_runner")


def configure_logging(log_file: Optional[str] = None) -> None:
    """Send message-only log lines to stdout, and optionally to ``log_file``."""
    reconfigure = getattr(sys.stdout, "reconfigure", None)
    if callable(reconfigure):
        try:
            reconfigure(line_buffering=True)
        except (ValueError, OSError):
            pass
    logging.basicConfig(
        level=logging.INFO, stream=sys.stdout, format=_DEFAULT_LOG_FMT, force=True
    )
    if log_file:
        dirpath = os.path.dirname(log_file)
        if dirpath:
            os.makedirs(dirpath, exist_ok=True)
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setFormatter(logging.Formatter(_DEFAULT_LOG_FMT))
        logging.getLogger().addHandler(fh)


def flush_logs() -> None:
    """Flush all logging handlers and stdio so an outer pipeline sees every line."""
    for h in logging.getLogger().handlers:
        try:
            h.flush()
        except (ValueError, OSError):
            pass
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.flush()
        except (ValueError, OSError):
            pass


def is_admin() -> bool:
    """Return True if the current process is running with administrator rights."""
    try:
        return bool(ctypes.windll.shell32.IsUserAnAdmin())  # type: ignore[attr-defined]
    except (AttributeError, OSError):
        return False


def report_fatal(error: BaseException) -> None:
    """Print the error and its traceback, one prefixed line at a time."""
    logger.error(f"ERROR: {error}")
    trail = "".join(
        traceback.format_exception(type(error), error, error.__traceback__)
    )
    for line in trail.splitlines():
        if line.strip():
            logger.error(f"ERROR EXCEPTION: {line}")
    flush_logs()


def build_detector() -> RebootDetector:
    return RebootDetector(WindowsRebootState(), ProcessProbe())


def build_orchestrator(config: RunnerConfig, detector: RebootDetector) -> UpdateOrchestrator:
    return UpdateOrchestrator(
        service=WindowsUpdateService(config.client_application_id),
        detector=detector,
        rules=config.filter_rules(),
        search_criteria=config.search_criteria,
        update_limit=config.update_limit,
        os_version=parse_os_version(platform.version()),
    )


def check_host() -> None:
    if os.name != "nt":
        raise RuntimeError("The Windows Update runner is only supported on Windows.")
    if not is_admin():
        raise RuntimeError("The Windows Update runner must be run as Administrator.")


def run(config: RunnerConfig) -> int:
    """Run one update cycle. Exits with 101 from inside when a reboot is needed."""
    check_host()

    detector = build_detector()
    if config.only_check_for_reboot_required:
        detector.check_and_exit_if_reboot_required()
        logger.info("No reboot is required.")
        return EXIT_OK

    build_orchestrator(config, detector).run()
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> None:
    """Entrypoint: parse configuration, run one cycle, exit with the protocol code."""
    try:
        config = load_config(argv)
    except ConfigError as e:
        configure_logging()
        report_fatal(e)
        sys.exit(EXIT_FATAL)

    try:
        configure_logging(config.log_file)
    except OSError as e:
        configure_logging()
        logger.warning(f"Failed to initialize log file '{config.log_file}': {e}")

    if init_sentry(config.sentry_dsn, environment=config.environment):
        add_breadcrumb("Update runner starting", category="lifecycle", level="info")

    try:
        code = run(config)
    except Exception as e:  # noqa: BLE001
        capture_run_exception(e, phase="run")
        report_fatal(e)
        sys.exit(EXIT_FATAL)
    finally:
        flush_logs()
    sys.exit(code)


if __name__ == "__main__":
    main()
