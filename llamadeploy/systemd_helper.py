"""
Systemd service controller.

Wraps systemctl and journalctl behind a small interface so the reconciler
and the management commands can be exercised against a fake runner.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from llamadeploy.utils.commands import CommandResult, CommandRunner

SYSTEMCTL_TIMEOUT = 10
JOURNALCTL_TIMEOUT = 15

SERVICE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.@-]*$")


def _validate_service_name(service_name: str) -> str:
    """Validate a service name and return it with the .service suffix.

    Raises:
        ValueError: If the name is empty or contains characters systemd
            would not accept in a unit name.
    """
    if not service_name:
        raise ValueError("Service name cannot be empty")
    if not SERVICE_NAME_PATTERN.match(service_name):
        raise ValueError(f"Invalid service name: {service_name!r}")
    if not service_name.endswith(".service"):
        service_name = f"{service_name}.service"
    return service_name


class ServiceState(Enum):
    RUNNING = "running"
    FAILED = "failed"
    INACTIVE = "inactive"
    ACTIVATING = "activating"
    NOT_FOUND = "not-found"
    UNKNOWN = "unknown"


@dataclass
class ServiceStatus:
    """The parts of ``systemctl show`` needed to explain a stopped service."""

    name: str
    state: ServiceState
    result: str = ""
    pid: Optional[int] = None
    exit_code: Optional[int] = None

    def describe(self) -> str:
        """One line naming the state and, for a crashed process, its likely cause."""
        text = self.state.value
        if self.result and self.result != "success":
            text += f" ({self.result})"
        if self.exit_code:
            text += f": exit code {self.exit_code}, {explain_exit_code(self.exit_code)}"
        return text


EXIT_CODE_CAUSES = {
    1: "general error or misconfiguration",
    2: "invalid arguments, check the ExecStart flags",
    126: "binary found but not executable",
    127: "binary not found, was llama-server installed?",
    134: "aborted, often a GPU runtime assertion",
    137: "killed, possibly out of memory or MemoryMax reached",
    139: "segmentation fault",
    143: "terminated",
}


def explain_exit_code(exit_code: int) -> str:
    return EXIT_CODE_CAUSES.get(exit_code, "check the service logs")


class ServiceController:
    """Start, stop and inspect systemd services.

    Mutating calls go through sudo and raise CommandError on failure; queries
    never raise for a failed command.
    """

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def is_active(self, service_name: str) -> bool:
        unit = _validate_service_name(service_name)
        result = self.runner.run(
            ["systemctl", "is-active", "--quiet", unit], timeout=SYSTEMCTL_TIMEOUT
        )
        return result.success

    def active_state(self, service_name: str) -> str:
        """Return the one-word state printed by ``systemctl is-active``."""
        unit = _validate_service_name(service_name)
        result = self.runner.run(["systemctl", "is-active", unit], timeout=SYSTEMCTL_TIMEOUT)
        return result.stdout.strip() or "inactive"

    def exists(self, service_name: str) -> bool:
        unit = _validate_service_name(service_name)
        result = self.runner.run(
            ["systemctl", "list-unit-files", unit, "--no-legend", "--no-pager"],
            timeout=SYSTEMCTL_TIMEOUT,
        )
        return result.success and unit in result.stdout

    def get_service_status(self, service_name: str) -> ServiceStatus:
        """Parse ``systemctl show`` for one unit.

        A failed query yields ``ServiceState.UNKNOWN`` rather than raising.
        """
        unit = _validate_service_name(service_name)
        result = self.runner.run(
            ["systemctl", "show", unit, "--no-pager",
             "--property=LoadState,ActiveState,SubState,Result,MainPID,ExecMainStatus"],
            timeout=SYSTEMCTL_TIMEOUT,
        )
        properties = dict(
            line.partition("=")[::2] for line in result.stdout.splitlines() if "=" in line
        )

        active_state = properties.get("ActiveState", "")
        if properties.get("LoadState") == "not-found":
            state = ServiceState.NOT_FOUND
        elif active_state == "active" and properties.get("SubState") == "running":
            state = ServiceState.RUNNING
        elif active_state in ("failed", "inactive", "activating"):
            state = ServiceState(active_state)
        else:
            state = ServiceState.UNKNOWN

        main_pid = properties.get("MainPID", "0")
        exit_status = properties.get("ExecMainStatus", "")
        return ServiceStatus(
            name=unit.removesuffix(".service"),
            state=state,
            result=properties.get("Result", ""),
            pid=int(main_pid) if main_pid.isdigit() and int(main_pid) > 0 else None,
            exit_code=int(exit_status) if exit_status.isdigit() else None,
        )

    def start(self, service_name: str) -> None:
        self._systemctl("start", service_name)

    def stop(self, service_name: str) -> None:
        self._systemctl("stop", service_name)

    def restart(self, service_name: str) -> None:
        self._systemctl("restart", service_name)

    def enable(self, service_name: str) -> None:
        self._systemctl("enable", service_name)

    def daemon_reload(self) -> None:
        self.runner.run(
            ["systemctl", "daemon-reload"],
            sudo=True,
            check=True,
            error_message="Failed to reload systemd units",
        )

    def _systemctl(self, verb: str, service_name: str) -> CommandResult:
        unit = _validate_service_name(service_name)
        return self.runner.run(
            ["systemctl", verb, unit],
            sudo=True,
            check=True,
            error_message=f"Failed to {verb} {unit}",
        )

    def status_text(self, service_name: str) -> str:
        unit = _validate_service_name(service_name)
        result = self.runner.run(
            ["systemctl", "status", unit, "--no-pager"], sudo=True, timeout=SYSTEMCTL_TIMEOUT
        )
        return (result.stdout or result.stderr).strip()

    def cat_unit(self, service_name: str) -> str:
        unit = _validate_service_name(service_name)
        result = self.runner.run(["systemctl", "cat", unit], timeout=SYSTEMCTL_TIMEOUT)
        return result.stdout if result.success else ""

    def journal(self, service_name: str, lines: int = 50) -> str:
        unit = _validate_service_name(service_name)
        result = self.runner.run(
            ["journalctl", "-u", unit, "-n", str(lines), "--no-pager"],
            sudo=True,
            timeout=JOURNALCTL_TIMEOUT,
        )
        return (result.stdout or result.stderr).rstrip()

    def follow_journal(self, service_name: str) -> int:
        unit = _validate_service_name(service_name)
        return self.runner.stream(["journalctl", "-u", unit, "-f"], sudo=True)
