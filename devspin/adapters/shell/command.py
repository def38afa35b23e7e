"""
Shell command runner — run a short-lived command and capture its output.

Used for command health probes and for project hooks. Unlike the
supervised services, these commands are expected to finish; they are
bounded by a timeout and never raise.
"""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one shell command."""

    command: str
    return_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.return_code == 0

    def summary(self) -> str:
        """One-line cause string for reports."""
        if self.error:
            return self.error
        if self.return_code == 0:
            return "ok"
        detail = self.stderr or self.stdout
        return f"exit code {self.return_code}" + (f": {detail[-200:]}" if detail else "")


def run_command(
    command: str,
    cwd: Path | str | None = None,
    env: dict[str, str] | None = None,
    timeout: float = 30.0,
) -> CommandResult:
    """Run ``command`` through the shell.

    Args:
        command: Shell command line.
        cwd: Working directory (default: current directory).
        env: Full environment for the child (default: inherited).
        timeout: Seconds before the command is killed.
    """
    if cwd is not None and not Path(cwd).is_dir():
        return CommandResult(command=command, error=f"Working directory does not exist: {cwd}")

    logger.debug("Executing: %s (cwd=%s)", command, cwd)
    start = time.monotonic()

    try:
        proc = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return CommandResult(
            command=command,
            duration_ms=int((time.monotonic() - start) * 1000),
            error=f"Command timed out after {timeout}s",
        )
    except OSError as e:
        return CommandResult(command=command, error=f"Command execution error: {e}")

    return CommandResult(
        command=command,
        return_code=proc.returncode,
        stdout=proc.stdout.strip(),
        stderr=proc.stderr.strip(),
        duration_ms=int((time.monotonic() - start) * 1000),
    )
