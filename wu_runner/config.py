"""Command line and environment configuration for the update runner.

Every option has an environment variable fallback so image-build templates can
configure the runner without touching its command line. Variables are read from
the process environment and from an optional ``.env`` file in the working
directory; command line values win.

  WU_RUNNER_SEARCH_CRITERIA        search criteria string
  WU_RUNNER_FILTERS                filter rules, one ``action:predicate`` per line
  WU_RUNNER_UPDATE_LIMIT           maximum updates queued per run
  WU_RUNNER_CLIENT_APPLICATION_ID  client identifier reported to Windows Update
  WU_RUNNER_SENTRY_DSN             enables error reporting when set
  WU_RUNNER_ENV                    Sentry environment (development/production)
"""

import argparse
import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from dotenv import load_dotenv

from .filters import DEFAULT_FILTERS, FilterRule, parse_filter_rules
from .orchestrator import DEFAULT_SEARCH_CRITERIA, DEFAULT_UPDATE_LIMIT
from .services.windows_update_service import DEFAULT_CLIENT_APPLICATION_ID

ENV_PREFIX = "WU_RUNNER_"


class ConfigError(ValueError):
    """Invalid command line or environment configuration."""


class _ArgumentParser(argparse.ArgumentParser):
    """Argument parser that reports bad values as ConfigError instead of exiting 2."""

    def error(self, message: str):
        raise ConfigError(f"Invalid command line: {message}")


@dataclass
class RunnerConfig:
    search_criteria: str = DEFAULT_SEARCH_CRITERIA
    filters: List[str] = field(default_factory=lambda: list(DEFAULT_FILTERS))
    update_limit: int = DEFAULT_UPDATE_LIMIT
    only_check_for_reboot_required: bool = False
    client_application_id: str = DEFAULT_CLIENT_APPLICATION_ID
    log_file: Optional[str] = None
    sentry_dsn: Optional[str] = None
    environment: Optional[str] = None

    def filter_rules(self) -> List[FilterRule]:
        return parse_filter_rules(self.filters)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="wu-runner",
        description=(
            "Search, download and install Windows updates. Exits with 0 when done, "
            "101 when a reboot is required before running again, 1 on error."
        ),
    )
    parser.add_argument(
        "--search-criteria",
        dest="search_criteria",
        default=None,
        help=f"Windows Update search criteria (default: '{DEFAULT_SEARCH_CRITERIA}').",
    )
    parser.add_argument(
        "--filter",
        dest="filters",
        action="append",
        default=None,
        metavar="ACTION:PREDICATE",
        help=(
            "Filter rule, repeatable and evaluated in order; first match wins. "
            "ACTION is include or exclude, PREDICATE a Python expression over "
            "'update', e.g. \"exclude:like(update.title, '*Preview*')\". "
            "Default: include:True."
        ),
    )
    parser.add_argument(
        "--update-limit",
        dest="update_limit",
        type=int,
        default=None,
        help=f"Maximum number of updates queued per run (default: {DEFAULT_UPDATE_LIMIT}).",
    )
    parser.add_argument(
        "--only-check-for-reboot-required",
        dest="only_check_for_reboot_required",
        action="store_true",
        help="Only check whether a reboot is pending (exit 101) and exit.",
    )
    parser.add_argument(
        "--client-application-id",
        dest="client_application_id",
        default=None,
        help="Client identifier reported to the Windows Update service.",
    )
    parser.add_argument(
        "--log-file",
        dest="log_file",
        default=None,
        help="Optional path to write a log file (in addition to stdout).",
    )
    return parser


def _env(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(ENV_PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def load_config(
    argv: Optional[List[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RunnerConfig:
    """Build the runner configuration from ``argv`` and the environment.

    Raises:
        ConfigError: if a value is invalid (including malformed filter rules).
    """
    if environ is None:
        load_dotenv(os.path.join(os.getcwd(), ".env"))
        environ = os.environ
    args = build_parser().parse_args(argv)
    config = RunnerConfig()

    config.search_criteria = (
        args.search_criteria or _env(environ, "SEARCH_CRITERIA") or config.search_criteria
    )

    if args.filters:
        config.filters = list(args.filters)
    else:
        env_filters = _env(environ, "FILTERS")
        if env_filters:
            config.filters = [f.strip() for f in env_filters.splitlines() if f.strip()]

    if args.update_limit is not None:
        config.update_limit = args.update_limit
    else:
        env_limit = _env(environ, "UPDATE_LIMIT")
        if env_limit is not None:
            try:
                config.update_limit = int(env_limit)
            except ValueError:
                raise ConfigError(
                    f"{ENV_PREFIX}UPDATE_LIMIT must be an integer, got '{env_limit}'"
                ) from None
    if config.update_limit < 1:
        raise ConfigError(f"Update limit must be at least 1, got {config.update_limit}")

    config.only_check_for_reboot_required = args.only_check_for_reboot_required
    config.client_application_id = (
        args.client_application_id
        or _env(environ, "CLIENT_APPLICATION_ID")
        or config.client_application_id
    )
    config.log_file = args.log_file
    config.sentry_dsn = _env(environ, "SENTRY_DSN")
    config.environment = _env(environ, "ENV")

    try:
        config.filter_rules()
    except ValueError as e:
        raise ConfigError(str(e)) from e
    return config
