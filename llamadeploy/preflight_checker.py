"""
Preflight System Checker

Read-only inspection of the target machine before deployment: operating
system, hardware, GPU, compute runtime, tools, network, ports, existing
services and privileges. Every check reports pass, warn, fail or info; none of
them can stop the others. The run fails (exit status 1) only if at least one
check failed, however many warnings there are.
"""

import grp
import json
import logging
import os
import platform
import re
import shutil
import socket
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path

import psutil
import requests
from rich.markup import escape

from llamadeploy.branding import console
from llamadeploy.config import SERVICE_NAME, Settings, SystemPaths
from llamadeploy.systemd_helper import ServiceController
from llamadeploy.utils.commands import CommandRunner

logger = logging.getLogger(__name__)

GB = 1024**3

REQUIRED_TOOLS = ["wget", "curl", "git", "gcc", "g++", "make", "cmake"]
REACHABILITY_URLS = ["https://github.com", "https://huggingface.co"]
ROCM_REPO_URL = "https://repo.radeon.com"
PING_TARGET = "8.8.8.8"
URL_TIMEOUT = 5

MIN_CORES = 4
MIN_RAM_GB = 8
RECOMMENDED_RAM_GB = 16
MIN_DISK_GB = 20
RECOMMENDED_DISK_GB = 50
SUPPORTED_VERSION = "24.04"


def read_os_release(path: Path) -> dict[str, str] | None:
    """Parse ``/etc/os-release``; None if it cannot be read."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError:
        return None
    info = {}
    for line in text.splitlines():
        if "=" in line:
            key, value = line.split("=", 1)
            info[key.strip()] = value.strip().strip("\"'")
    return info


class CheckStatus(Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"
    INFO = "info"


@dataclass
class CheckResult:
    """One line of the preflight report."""

    section: str
    status: CheckStatus
    message: str


@dataclass
class PreflightReport:
    """All results of a preflight run, in check order."""

    results: list[CheckResult] = field(default_factory=list)

    def count(self, status: CheckStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def passed(self) -> int:
        return self.count(CheckStatus.PASS)

    @property
    def warnings(self) -> int:
        return self.count(CheckStatus.WARN)

    @property
    def failed(self) -> int:
        return self.count(CheckStatus.FAIL)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    def by_section(self) -> dict[str, list[CheckResult]]:
        sections: dict[str, list[CheckResult]] = {}
        for result in self.results:
            sections.setdefault(result.section, []).append(result)
        return sections


class PreflightChecker:
    """
    Runs the fixed sequence of environment checks.

    All checks are performed against the actual system through the command
    runner, psutil and the filesystem; nothing is modified.
    """

    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner,
        paths: SystemPaths | None = None,
        config_found: bool = True,
    ):
        self.settings = settings
        self.runner = runner
        self.paths = paths or SystemPaths()
        self.services = ServiceController(runner)
        self.config_found = config_found
        self.report = PreflightReport()
        self._section = ""

    def _add(self, status: CheckStatus, message: str) -> None:
        self.report.results.append(CheckResult(self._section, status, message))

    def _pass(self, message: str) -> None:
        self._add(CheckStatus.PASS, message)

    def _warn(self, message: str) -> None:
        self._add(CheckStatus.WARN, message)

    def _fail(self, message: str) -> None:
        self._add(CheckStatus.FAIL, message)

    def _info(self, message: str) -> None:
        self._add(CheckStatus.INFO, message)

    def checks(self) -> list[tuple[str, Callable[[], None]]]:
        return [
            ("Configuration", self.check_config),
            ("Operating System", self.check_os),
            ("Hardware", self.check_cpu),
            ("Hardware", self.check_memory),
            ("Hardware", self.check_disk),
            ("GPU Detection", self.check_gpu),
            ("GPU Detection", self.check_groups),
            (f"{self.settings.backend_label} Installation Status", self.check_runtime),
            ("Required Tools", self.check_tools),
            ("Network Connectivity", self.check_network),
            ("Port Availability", self.check_ports),
            ("Existing Services", self.check_services),
            ("Security", self.check_privileges),
            ("Security", self.check_firewall),
        ]

    def run_all(self) -> PreflightReport:
        """Run every check and return the report."""
        for section, check in self.checks():
            self._section = section
            try:
                check()
            except Exception as e:
                logger.debug("%s check raised", section, exc_info=True)
                self._warn(f"{section} check could not run: {e}")
        return self.report

    # Individual checks

    def check_config(self) -> None:
        if self.config_found:
            self._pass("Configuration file found")
        else:
            self._warn("Configuration file not found (using defaults)")

    def check_os(self) -> None:
        info = read_os_release(self.paths.os_release)
        if info is None:
            self._fail("Cannot determine OS version")
        else:
            self._info(f"OS: {info.get('PRETTY_NAME', 'unknown')}")
            if info.get("ID") == "ubuntu":
                self._pass("Ubuntu detected")
                version = info.get("VERSION_ID", "")
                if version == SUPPORTED_VERSION:
                    self._pass(f"Ubuntu {SUPPORTED_VERSION} LTS")
                else:
                    self._warn(f"Ubuntu version is {version}, expected {SUPPORTED_VERSION}")
            else:
                self._warn(f"OS is {info.get('ID', 'unknown')}, deployment targets Ubuntu")

        self._info(f"Kernel: {platform.release()}")
        arch = platform.machine()
        if arch == "x86_64":
            self._pass(f"Architecture: {arch}")
        else:
            self._fail(f"Architecture {arch} not supported (need x86_64)")

    def _cpu_model(self) -> str:
        result = self.runner.run(["lscpu"], timeout=10)
        for line in result.stdout.splitlines():
            if line.startswith("Model name:"):
                return line.split(":", 1)[1].strip()
        return platform.processor() or "unknown"

    def check_cpu(self) -> None:
        model = self._cpu_model()
        self._info(f"CPU: {model}")

        cores = psutil.cpu_count(logical=True) or 1
        if cores >= MIN_CORES:
            self._pass(f"CPU cores: {cores}")
        else:
            self._warn(f"Only {cores} CPU cores available (recommended: {MIN_CORES}+)")

        if "amd" in model.lower():
            self._pass("AMD CPU detected")
            if "ryzen" in model.lower():
                self._pass("AMD Ryzen processor")
        else:
            self._warn("Non-AMD CPU detected (AMD APU/GPU expected)")

    def check_memory(self) -> None:
        total_gb = round(psutil.virtual_memory().total / GB)
        if total_gb >= RECOMMENDED_RAM_GB:
            self._pass(f"Total RAM: {total_gb}GB")
        elif total_gb >= MIN_RAM_GB:
            self._warn(f"Total RAM: {total_gb}GB ({RECOMMENDED_RAM_GB}GB+ recommended)")
        else:
            self._fail(f"Total RAM: {total_gb}GB (minimum {MIN_RAM_GB}GB required)")

    def check_disk(self) -> None:
        free_gb = shutil.disk_usage("/").free // GB
        if free_gb >= RECOMMENDED_DISK_GB:
            self._pass(f"Available disk space: {free_gb}GB")
        elif free_gb >= MIN_DISK_GB:
            self._warn(f"Available disk space: {free_gb}GB ({RECOMMENDED_DISK_GB}GB+ recommended)")
        else:
            self._fail(f"Available disk space: {free_gb}GB (minimum {MIN_DISK_GB}GB required)")

    def _gpu_lines(self) -> list[str]:
        result = self.runner.run(["lspci"], timeout=10)
        return [
            line
            for line in result.stdout.splitlines()
            if re.search(r"vga|display|3d controller", line, re.IGNORECASE)
        ]

    def check_gpu(self) -> None:
        amd = [line for line in self._gpu_lines() if re.search(r"\bamd\b|\bati\b", line, re.IGNORECASE)]
        if amd:
            self._pass("AMD GPU detected")
            for line in amd:
                self._info(f"GPU: {line}")
            if any("780m" in line.lower() for line in amd):
                self._pass("Radeon 780M Graphics detected")
        else:
            self._fail("No AMD GPU detected")

        if self.paths.drm_dir.is_dir():
            cards = [p for p in self.paths.drm_dir.iterdir() if re.fullmatch(r"card\d+", p.name)]
            self._info(f"DRM devices found: {len(cards)}")

    def _user_groups(self) -> set[str]:
        names = set()
        for gid in os.getgroups():
            try:
                names.add(grp.getgrgid(gid).gr_name)
            except KeyError:
                continue
        return names

    def check_groups(self) -> None:
        groups = self._user_groups()
        for group in ("render", "video"):
            if group in groups:
                self._pass(f"User is in '{group}' group")
            else:
                self._warn(f"User not in '{group}' group (required for GPU access)")

    def check_runtime(self) -> None:
        if self.settings.gpu_backend == "vulkan":
            self._check_vulkan()
        else:
            self._check_rocm()

    def _check_rocm(self) -> None:
        if not self.runner.which("rocminfo"):
            self._warn("ROCm not installed (will be installed during deployment)")
            return
        self._pass("ROCm tools installed")

        version = self.runner.run(["dpkg-query", "-W", "-f=${Version}", "rocm-core"], timeout=10)
        self._info(f"ROCm version: {version.stdout.strip() if version.success else 'unknown'}")

        info = self.runner.run(["rocminfo"], timeout=30)
        if not info.success:
            self._fail("rocminfo fails to run")
        else:
            self._pass("rocminfo runs successfully")
            match = re.search(r"gfx[0-9a-f]+", info.stdout)
            if match:
                target = match.group(0)
                self._pass(f"GPU compute target: {target}")
                if target != self.settings.gpu_target:
                    self._warn(f"GPU target is {target} but GPU_TARGET is {self.settings.gpu_target}")
            else:
                self._warn("Could not determine GPU compute target")

        if self.runner.which("clinfo"):
            cl = self.runner.run(["clinfo"], timeout=30)
            if cl.success:
                self._pass("OpenCL available")
                self._info(f"OpenCL devices: {cl.stdout.count('Device Name')}")
            else:
                self._warn("clinfo fails to run")

    def _check_vulkan(self) -> None:
        if not self.runner.which("vulkaninfo"):
            self._warn("Vulkan tools not installed (will be installed during deployment)")
            return
        self._pass("Vulkan tools installed")

        summary = self.runner.run(["vulkaninfo", "--summary"], timeout=30)
        if not summary.success:
            self._fail("vulkaninfo fails to run")
            return
        self._pass("vulkaninfo runs successfully")
        devices = re.findall(r"deviceName\s*=\s*(.+)", summary.stdout)
        if devices:
            for device in devices:
                self._info(f"Vulkan device: {device.strip()}")
        else:
            self._warn("No Vulkan devices reported")

    def check_tools(self) -> None:
        for tool in REQUIRED_TOOLS:
            if self.runner.which(tool):
                self._pass(f"{tool} is installed")
            else:
                self._warn(f"{tool} not found (will be installed)")

    def _url_reachable(self, url: str) -> bool:
        try:
            response = requests.head(url, timeout=URL_TIMEOUT, allow_redirects=False)
        except requests.RequestException:
            return False
        return response.status_code in (200, 301, 302)

    def check_network(self) -> None:
        ping = self.runner.run(["ping", "-c", "1", "-W", "3", PING_TARGET], timeout=10)
        if ping.success:
            self._pass("Internet connectivity")
        else:
            self._fail("No internet connectivity")

        urls = list(REACHABILITY_URLS)
        if self.settings.gpu_backend == "rocm":
            urls.append(ROCM_REPO_URL)
        for url in urls:
            if self._url_reachable(url):
                self._pass(f"Can reach {url}")
            else:
                self._warn(f"Cannot reach {url}")

    def _port_in_use(self, port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind(("0.0.0.0", port))
            except PermissionError:
                # Privileged port: ask ss instead of binding
                result = self.runner.run(["ss", "-tuln"], timeout=10)
                return f":{port} " in result.stdout
            except OSError:
                return True
        return False

    def check_ports(self) -> None:
        ports = [(self.settings.server_port, SERVICE_NAME)]
        if self.settings.setup_nginx:
            ports.append((self.settings.nginx_port, "nginx"))
        for port, service in ports:
            if self._port_in_use(port):
                self._warn(f"Port {port} ({service}) is already in use")
            else:
                self._pass(f"Port {port} ({service}) is available")

    def check_services(self) -> None:
        if self.services.exists(SERVICE_NAME):
            state = self.services.active_state(SERVICE_NAME)
            self._info(f"{SERVICE_NAME} service exists (status: {state})")
        else:
            self._info(f"{SERVICE_NAME} service not installed")

        if self.runner.which("nginx"):
            self._info(f"nginx installed (status: {self.services.active_state('nginx')})")
        else:
            self._info("nginx not installed")

    def check_privileges(self) -> None:
        if os.geteuid() == 0:
            self._fail("Running as root (please run as regular user)")
        else:
            self._pass("Running as non-root user")

        if self.runner.run(["sudo", "-n", "true"], timeout=10).success:
            self._pass("Passwordless sudo available")
        elif self.runner.which("sudo") and self._user_groups() & {"sudo", "admin", "wheel"}:
            self._pass("Sudo access available")
        else:
            self._fail("No sudo access")

    def check_firewall(self) -> None:
        if not self.runner.which("ufw"):
            return
        result = self.runner.run(["ufw", "status"], sudo=True, timeout=10)
        first = result.stdout.splitlines()[0] if result.success and result.stdout else "unknown"
        self._info(f"UFW status: {first}")


_ICONS = {
    CheckStatus.PASS: "[green]✓[/green]",
    CheckStatus.WARN: "[yellow]⚠[/yellow]",
    CheckStatus.FAIL: "[red]✗[/red]",
    CheckStatus.INFO: "[blue]ℹ[/blue]",
}


def print_report(report: PreflightReport) -> None:
    """Print the report grouped by section, followed by the summary."""
    console.print("=========================================")
    console.print("System Requirements Check")
    console.print("=========================================")
    for section, results in report.by_section().items():
        console.print(f"\n=== {section} ===")
        for result in results:
            console.print(f"{_ICONS[result.status]} {escape(result.message)}", highlight=False)

    console.print("\n=========================================")
    console.print("Summary")
    console.print("=========================================")
    console.print(f"[green]Passed:[/green]   {report.passed}")
    console.print(f"[yellow]Warnings:[/yellow] {report.warnings}")
    console.print(f"[red]Failed:[/red]   {report.failed}")
    console.print()

    if report.failed:
        console.print(
            "[red]✗ System has critical issues that must be resolved before deployment.[/red]"
        )
    elif report.warnings:
        console.print("[yellow]⚠ System is mostly ready, but there are warnings to review.[/yellow]")
    else:
        console.print("[green]✓ System is ready for deployment![/green]")


def export_report(report: PreflightReport, filepath: str | Path) -> None:
    """Export the report to a JSON file."""
    data = {
        "passed": report.passed,
        "warnings": report.warnings,
        "failed": report.failed,
        "exit_code": report.exit_code,
        "results": [
            {**asdict(r), "status": r.status.value} for r in report.results
        ],
    }
    with open(filepath, "w") as f:
        json.dump(data, f, indent=2)
