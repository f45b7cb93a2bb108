"""PowerShell execution helpers.

Windows Update Agent and other host state are reached by running short PowerShell
scripts that print a single JSON object to stdout.
"""

import json
import logging
import os
import subprocess
import tempfile
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

POWERSHELL_COMMAND = [
    "powershell.exe",
    "-NoProfile",
    "-NonInteractive",
    "-ExecutionPolicy",
    "Bypass",
    "-File",
]

# Prepended to every script so errors surface as a non-zero exit code.
SCRIPT_PREAMBLE = """
Set-StrictMode -Version Latest
$ErrorActionPreference = 'Stop'
$ProgressPreference = 'SilentlyContinue'
"""

MAX_STDERR_EXCERPT = 2000


class PowerShellError(RuntimeError):
    """A PowerShell script failed or did not produce a JSON object."""

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


def quote_ps_string(value: str) -> str:
    """Return ``value`` as a single-quoted PowerShell string literal."""
    return "'" + value.replace("'", "''") + "'"


def ps_string_array(values: List[str]) -> str:
    return "@(" + ", ".join(quote_ps_string(v) for v in values) + ")"


def parse_json_object(stdout: str) -> Dict[str, Any]:
    """Extract the JSON object from script output (may have extra output around it)."""
    json_start = stdout.find("{")
    json_end = stdout.rfind("}") + 1
    if json_start < 0 or json_end <= json_start:
        raise json.JSONDecodeError("No JSON object found", stdout, 0)
    parsed = json.loads(stdout[json_start:json_end])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("Top-level JSON value is not an object", stdout, 0)
    return parsed


def run_powershell_json(script_text: str, timeout: Optional[float] = None) -> Dict[str, Any]:
    """Run a PowerShell script file and parse its JSON stdout.

    Raises:
        PowerShellError: on a non-zero exit code, a timeout, or unparseable output.
    """
    with tempfile.NamedTemporaryFile(
        "w", delete=False, suffix=".ps1", encoding="utf-8"
    ) as tf:
        tf.write(SCRIPT_PREAMBLE)
        tf.write(script_text)
        ps1_path = tf.name

    try:
        try:
            proc = subprocess.run(
                POWERSHELL_COMMAND + [ps1_path],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise PowerShellError(f"PowerShell timed out after {timeout} seconds") from e

        stderr = (proc.stderr or "").strip()
        for line in stderr.splitlines():
            if line.strip():
                logger.debug(f"PS: {line.rstrip()}")

        if proc.returncode != 0:
            raise PowerShellError(
                f"PowerShell exited with code {proc.returncode}: "
                f"{stderr[:MAX_STDERR_EXCERPT] or 'no error output'}",
                exit_code=proc.returncode,
                stderr=stderr[:MAX_STDERR_EXCERPT],
            )

        try:
            return parse_json_object(proc.stdout or "")
        except json.JSONDecodeError as e:
            logger.debug(f"stdout preview: {(proc.stdout or '')[:500]}")
            raise PowerShellError(
                f"Failed to parse PowerShell JSON output: {e}",
                exit_code=proc.returncode,
                stderr=stderr[:MAX_STDERR_EXCERPT],
            ) from e
    finally:
        try:
            os.unlink(ps1_path)
        except OSError:
            pass
