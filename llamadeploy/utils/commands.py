"""
Thin wrapper around subprocess used by every component.

Each call returns a CommandResult instead of raising, unless the caller asks
for ``check=True``; deployment phases use that to abort on the first failure,
while probing and status commands inspect the result and carry on.
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from llamadeploy.errors import CommandError

logger = logging.getLogger(__name__)

NOT_FOUND_CODE = 127
TIMEOUT_CODE = 124


@dataclass
class CommandResult:
    """Outcome of one external command."""

    command: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def lines(self) -> list[str]:
        return [line for line in self.stdout.splitlines() if line.strip()]


@dataclass
class CommandRunner:
    """Runs external commands, optionally prefixed with sudo.

    Attributes:
        dry_run: Log mutating commands instead of executing them.
        history: Every command issued, in order.
    """

    dry_run: bool = False
    history: list[list[str]] = field(default_factory=list)

    def which(self, name: str) -> str | None:
        return shutil.which(name)

    def run(
        self,
        cmd: list[str],
        *,
        check: bool = False,
        sudo: bool = False,
        input: str | None = None,
        cwd: str | Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        error_message: str | None = None,
    ) -> CommandResult:
        """Run a command and capture its output.

        Args:
            cmd: Argument vector.
            check: Raise CommandError on a non-zero exit.
            sudo: Prefix the command with ``sudo``.
            input: Text sent to the command's stdin.
            cwd: Working directory.
            env: Full environment for the child process.
            timeout: Seconds before the command is abandoned; None waits forever.
            error_message: Message used for the CommandError.

        Returns:
            CommandResult describing the run.

        Raises:
            CommandError: If ``check`` is set and the command failed.
        """
        argv = (["sudo"] if sudo else []) + [str(part) for part in cmd]
        self.history.append(argv)
        logger.debug("$ %s", shlex.join(argv))

        if self.dry_run:
            return CommandResult(argv, 0)

        try:
            proc = subprocess.run(
                argv,
                input=input,
                capture_output=True,
                text=True,
                cwd=str(cwd) if cwd else None,
                env=env,
                timeout=timeout,
            )
            result = CommandResult(argv, proc.returncode, proc.stdout or "", proc.stderr or "")
        except FileNotFoundError:
            result = CommandResult(argv, NOT_FOUND_CODE, "", f"{argv[0]}: command not found")
        except subprocess.TimeoutExpired:
            result = CommandResult(argv, TIMEOUT_CODE, "", "Command timed out")

        if not result.success:
            logger.debug("exit %d: %s", result.returncode, result.stderr.strip())
            if check:
                raise CommandError(error_message or f"Command failed: {shlex.join(argv)}", result)
        return result

    def stream(
        self,
        cmd: list[str],
        *,
        check: bool = False,
        sudo: bool = False,
        cwd: str | Path | None = None,
        env: dict[str, str] | None = None,
        error_message: str | None = None,
    ) -> int:
        """Run a command attached to the terminal (builds, downloads, log follow).

        Returns:
            The command's exit status.
        """
        argv = (["sudo"] if sudo else []) + [str(part) for part in cmd]
        self.history.append(argv)
        logger.debug("$ %s", shlex.join(argv))

        if self.dry_run:
            return 0

        try:
            returncode = subprocess.call(argv, cwd=str(cwd) if cwd else None, env=env)
        except FileNotFoundError:
            returncode = NOT_FOUND_CODE

        if returncode != 0 and check:
            raise CommandError(
                error_message or f"Command failed: {shlex.join(argv)}",
                CommandResult(argv, returncode),
            )
        return returncode
