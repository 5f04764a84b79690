"""External command execution with log capture.

Every tool the pipeline drives (configure, make, rustup, cargo, image tools)
runs through ``run_logged``: the command is logged, its combined
stdout/stderr is captured for diagnostics and written to a log file with a
small header and footer.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class ToolExecutionError(Exception):
    """Raised when a command cannot be run or times out."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "execution_error",
        output: str | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code
        self.output = output


@dataclass
class ProcessResult:
    """Result of a command execution.

    Attributes:
        exit_code: Process exit code.
        output: Combined stdout/stderr, verbatim.
        command: The command that was executed (shell-quoted).
        log_path: Path to the log file, if one was written.
        started_at: Start time.
        finished_at: Finish time.
    """

    exit_code: int
    output: str
    command: str
    log_path: Path | None
    started_at: datetime
    finished_at: datetime

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def run_logged(
    cmd: Sequence[str],
    cwd: Path | None = None,
    log_path: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: int | None = None,
) -> ProcessResult:
    """Run a command, capturing its output.

    Args:
        cmd: Command as a list of strings.
        cwd: Working directory.
        log_path: Optional log file; overwritten.
        env: Full environment for the child (None inherits).
        timeout: Timeout in seconds (None = no timeout).

    Returns:
        ProcessResult; a non-zero exit is reported, not raised.

    Raises:
        ToolExecutionError: If the command cannot start or times out.
    """
    cmd = [str(c) for c in cmd]
    cmd_str = shlex.join(cmd)
    logger.info("Executing: %s", cmd_str)
    if cwd is not None:
        logger.debug("Working directory: %s", cwd)

    started_at = datetime.now(timezone.utc)

    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        output = _decode(e.output)
        _write_log(log_path, cmd_str, cwd, started_at, output, None, timeout=timeout)
        raise ToolExecutionError(
            f"Command timed out after {timeout} seconds: {cmd_str}",
            exit_code=-1,
            code="timeout",
            output=output,
        ) from e
    except OSError as e:
        raise ToolExecutionError(
            f"Failed to execute {cmd[0]}: {e}",
            code="execution_error",
        ) from e

    finished_at = datetime.now(timezone.utc)
    output = result.stdout or ""
    _write_log(log_path, cmd_str, cwd, started_at, output, result.returncode)

    if result.returncode != 0:
        logger.error(
            "Command failed with exit code %d: %s", result.returncode, cmd_str
        )

    return ProcessResult(
        exit_code=result.returncode,
        output=output,
        command=cmd_str,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
    )


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def _write_log(
    log_path: Path | None,
    cmd_str: str,
    cwd: Path | None,
    started_at: datetime,
    output: str,
    exit_code: int | None,
    timeout: int | None = None,
) -> None:
    if log_path is None:
        return
    log_path.parent.mkdir(parents=True, exist_ok=True)
    finished_at = datetime.now(timezone.utc)
    with log_path.open("w", encoding="utf-8") as log_file:
        log_file.write(f"# Command: {cmd_str}\n")
        log_file.write(f"# Started: {started_at.isoformat()}\n")
        log_file.write(f"# CWD: {cwd or '.'}\n")
        log_file.write("# " + "=" * 70 + "\n\n")
        log_file.write(output)
        if timeout is not None:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        if exit_code is not None:
            log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")


__all__ = ["ProcessResult", "ToolExecutionError", "run_logged"]
