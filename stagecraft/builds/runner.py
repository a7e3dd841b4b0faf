"""Command runner for stage operations.

This module handles:
- Expanding stage placeholders in commands
- Executing commands with subprocess inside a stage working directory
- Capturing stdout/stderr to log files
- Enforcing command timeouts
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class CommandExecutionError(Exception):
    """Raised when a command cannot be executed or does not finish."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "command_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class CommandResult:
    """Result of a command execution.

    Attributes:
        success: Whether the command exited with status 0.
        exit_code: Process exit code.
        log_path: Path to the command log file.
        started_at: Start time.
        finished_at: Finish time.
        command: The command that was executed, shell-quoted.
        error_message: Error message if the command failed.
    """

    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    error_message: str | None = None


def expand_command(
    command: list[str] | str,
    variables: dict[str, str],
) -> list[str] | str:
    """Substitute ``{name}`` placeholders in a command.

    Only the given names are replaced; other braces are left untouched.

    Args:
        command: Exec form (list) or shell form (string).
        variables: Placeholder name -> value.

    Returns:
        Command of the same form with placeholders substituted.
    """

    def _expand(value: str) -> str:
        for name, replacement in variables.items():
            value = value.replace("{" + name + "}", replacement)
        return value

    if isinstance(command, str):
        return _expand(command)
    return [_expand(arg) for arg in command]


def format_command(command: list[str] | str) -> str:
    """Render a command for logs."""
    return command if isinstance(command, str) else shlex.join(command)


def run_command(
    command: list[str] | str,
    cwd: Path,
    log_path: Path,
    timeout: int | None = None,
    env_override: dict[str, str] | None = None,
) -> CommandResult:
    """Execute a stage command.

    Exec-form commands run without a shell. Shell-form commands run
    through ``/bin/sh -c``.

    Args:
        command: Exec form (list) or shell form (string).
        cwd: Working directory.
        log_path: File receiving stdout/stderr.
        timeout: Timeout in seconds (None = no timeout).
        env_override: Optional environment variable overrides.

    Returns:
        CommandResult with execution details.

    Raises:
        CommandExecutionError: If the command cannot start or times out.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    cmd_str = format_command(command)
    logger.info("Executing: %s", cmd_str)
    logger.debug("Working directory: %s", cwd)

    started_at = datetime.now(timezone.utc)
    error_message: str | None = None

    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {cwd}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            env: dict[str, str] | None = None
            if env_override:
                env = dict(os.environ)
                env.update(env_override)

            result = subprocess.run(
                command,
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=env,
                shell=isinstance(command, str),
                check=False,
            )

            exit_code = result.returncode
            success = exit_code == 0

            if not success:
                error_message = f"Command failed with exit code {exit_code}"
                logger.error("%s. See log: %s", error_message, log_path)

    except subprocess.TimeoutExpired as e:
        error_message = f"Command timed out after {timeout} seconds"
        logger.error("%s. See log: %s", error_message, log_path)

        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")

        raise CommandExecutionError(
            error_message,
            exit_code=-1,
            code="command_timeout",
        ) from e

    except OSError as e:
        error_message = f"Failed to execute command: {e}"
        logger.error(error_message)
        raise CommandExecutionError(
            error_message,
            exit_code=None,
            code="execution_error",
        ) from e

    finished_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    return CommandResult(
        success=success,
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
        error_message=error_message,
    )


def run_passthrough(
    command: list[str],
    cwd: Path | None = None,
    timeout: int | None = None,
) -> int:
    """Execute a command with inherited standard streams.

    Args:
        command: Command argv.
        cwd: Working directory (None = current).
        timeout: Timeout in seconds (None = no timeout).

    Returns:
        The command's exit code.

    Raises:
        CommandExecutionError: If the command cannot start or times out.
    """
    cmd_str = format_command(command)
    logger.info("Executing: %s", cmd_str)
    try:
        result = subprocess.run(command, cwd=cwd, timeout=timeout, check=False)
    except subprocess.TimeoutExpired as e:
        raise CommandExecutionError(
            f"Command timed out after {timeout} seconds: {cmd_str}",
            exit_code=-1,
            code="command_timeout",
        ) from e
    except OSError as e:
        raise CommandExecutionError(
            f"Failed to execute command: {e}", code="execution_error"
        ) from e
    return result.returncode


__all__ = [
    "CommandExecutionError",
    "CommandResult",
    "expand_command",
    "format_command",
    "run_command",
    "run_passthrough",
]
