"""Exception types raised by the deployment and management tooling."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from llamadeploy.utils.commands import CommandResult


class DeployError(Exception):
    """Base class for every fatal error in the tooling."""


class ConfigError(DeployError):
    """The settings file is missing or holds invalid values."""

    def __init__(self, message: str, problems: list[str] | None = None):
        self.problems = problems or []
        if self.problems:
            message = message + "\n" + "\n".join(f"  - {p}" for p in self.problems)
        super().__init__(message)


class CommandError(DeployError):
    """An external command exited non-zero where success was required."""

    def __init__(self, message: str, result: CommandResult):
        self.result = result
        detail = result.stderr.strip() or result.stdout.strip()
        if detail:
            message = f"{message}: {detail.splitlines()[-1]}"
        super().__init__(message)


class PhaseError(DeployError):
    """A deployment phase finished but its postcondition does not hold."""


class DownloadError(DeployError):
    """A file could not be fetched over HTTP."""
