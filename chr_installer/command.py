"""Logged execution of external tools.

Every privileged step (qemu-img, qemu-nbd, sfdisk, mount, ...) goes through
run_command so the command line and its outcome land in the install log.
Components accept a ``runner`` argument with the same signature, which lets
tests substitute a recording fake.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from chr_installer.errors import CommandError

logger = logging.getLogger(__name__)

# Default timeout for helper commands (seconds)
DEFAULT_COMMAND_TIMEOUT = 600


@dataclass(frozen=True)
class CommandResult:
    """Outcome of an external command.

    Attributes:
        argv: Command line that was executed.
        returncode: Process exit status.
        stdout: Captured standard output.
        stderr: Captured standard error.
    """

    argv: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Whether the command exited with status 0."""
        return self.returncode == 0


class CommandRunner(Protocol):
    """Callable that runs an external command."""

    def __call__(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        input_text: str | None = None,
        timeout: float | None = DEFAULT_COMMAND_TIMEOUT,
    ) -> CommandResult: ...


def format_argv(argv: Sequence[str]) -> str:
    """Render a command line for logs."""
    return shlex.join(argv)


def run_command(
    argv: Sequence[str],
    *,
    check: bool = True,
    input_text: str | None = None,
    timeout: float | None = DEFAULT_COMMAND_TIMEOUT,
) -> CommandResult:
    """Run a command, capturing and logging its output.

    Args:
        argv: Command and arguments (never passed through a shell).
        check: Raise CommandError on a non-zero exit status.
        input_text: Text fed to the command's standard input.
        timeout: Seconds before the command is killed.

    Returns:
        CommandResult with captured output.

    Raises:
        CommandError: Command failed, timed out, or is not installed.
    """
    argv_list = [str(a) for a in argv]
    logger.info("CMD %s", format_argv(argv_list))

    try:
        proc = subprocess.run(
            argv_list,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as e:
        logger.error("Command not found: %s", argv_list[0])
        raise CommandError(argv_list, 127, f"{argv_list[0]}: not found") from e
    except subprocess.TimeoutExpired as e:
        logger.error("Command timed out after %ss: %s", timeout, argv_list[0])
        raise CommandError(argv_list, -1, f"timed out after {timeout}s") from e

    if proc.stdout:
        logger.debug("STDOUT %s", proc.stdout.strip())
    if proc.stderr:
        logger.debug("STDERR %s", proc.stderr.strip())

    result = CommandResult(
        argv=argv_list,
        returncode=proc.returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
    )

    if proc.returncode != 0:
        logger.warning("Command exited %d: %s", proc.returncode, argv_list[0])
        if check:
            raise CommandError(argv_list, proc.returncode, result.stderr)

    return result


__all__ = [
    "DEFAULT_COMMAND_TIMEOUT",
    "CommandResult",
    "CommandRunner",
    "format_argv",
    "run_command",
]
