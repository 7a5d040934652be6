"""
Operations commands for a deployed llama-server.

Every command reports problems inline and returns an exit status instead of
raising, so a missing log file or a stopped service never aborts the command.
"""

import logging
import os
import shutil
import tarfile
import time
import warnings
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path

import psutil
import requests
from rich.markup import escape
from rich.table import Table

from llamadeploy.artifacts import ArtifactStore
from llamadeploy.branding import console, ui_header, ui_print, ui_section
from llamadeploy.config import SERVICE_NAME, Settings, SystemPaths
from llamadeploy.credentials import CredentialReconciler, HtpasswdStore
from llamadeploy.errors import CommandError
from llamadeploy.prompts import InteractivePrompter, Prompter, password_env_var
from llamadeploy.systemd_helper import ServiceController, ServiceState
from llamadeploy.utils.commands import CommandRunner

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = 10
COMPLETION_TIMEOUT = 120
RESTART_DELAY = 2
BACKUP_PREFIX = "llama-server-backup-"

COMPLETION_PAYLOAD = {"prompt": "Hello, what is 2+2?", "n_predict": 50, "temperature": 0.7}

SERVICE_ALIASES = {
    "llama-server": "llama-server",
    "server": "llama-server",
    "llama": "llama-server",
    "nginx": "nginx",
    "cloudflared": "cloudflared",
    "tunnel": "cloudflared",
}

COMMAND_ALIASES = {
    "status": "status",
    "logs": "logs",
    "follow": "follow",
    "tail": "follow",
    "start": "start",
    "stop": "stop",
    "restart": "restart",
    "test": "test",
    "gpu": "gpu",
    "users": "users",
    "model": "model",
    "models": "model",
    "benchmark": "benchmark",
    "bench": "benchmark",
    "diagnostics": "diagnostics",
    "diag": "diagnostics",
    "backup": "backup",
    "restore": "restore",
    "help": "help",
    "--help": "help",
    "-h": "help",
}

USAGE = """llama.cpp Server Management Utility

Usage: llama-manage [--config FILE] [--user NAME] <command> [options]

Commands:
  status              Show server status and resource usage
  logs [service] [n]  Show logs (default: llama-server, 50 lines)
  follow [service]    Follow logs in real-time
  start               Start all services
  stop                Stop all services
  restart             Restart all services
  test                Run server tests
  gpu                 Monitor GPU usage
  users               Manage user accounts
  model               Manage models
  benchmark           Run performance benchmark
  diagnostics         Run system diagnostics
  backup              Create configuration backup
  restore [archive]   List backups, or restore one
  help                Show this help message

Services:
  llama-server        Main LLM server
  nginx               Reverse proxy
  cloudflared         Cloudflare tunnel (if configured)

Examples:
  llama-manage status                    # Show full status
  llama-manage logs nginx 100            # Show last 100 nginx log lines
  llama-manage follow llama-server       # Follow server logs
  llama-manage restart                   # Restart all services
  llama-manage test                      # Run health checks
"""


def human_size(num: float) -> str:
    for unit in ("B", "K", "M", "G", "T"):
        if abs(num) < 1024 or unit == "T":
            return f"{num:.0f}{unit}" if unit == "B" else f"{num:.1f}{unit}"
        num /= 1024
    return f"{num:.1f}T"


class ServerManager:
    """Implements the ``llama-manage`` commands against one deployment."""

    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner,
        services: ServiceController | None = None,
        paths: SystemPaths | None = None,
        prompter: Prompter | None = None,
        test_user: str | None = None,
        environ: Mapping[str, str] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.runner = runner
        self.services = services or ServiceController(runner)
        self.paths = paths or SystemPaths()
        self.prompter = prompter or InteractivePrompter()
        self.test_user = test_user
        self.environ = environ if environ is not None else os.environ
        self.sleep = sleep
        self.artifacts = ArtifactStore(runner)

    def run(self, command: str, args: list[str]) -> int:
        """Dispatch one command; unknown commands print usage and return 1."""
        name = COMMAND_ALIASES.get(command)
        if name is None:
            console.print(f"Unknown command: {escape(command)}", highlight=False)
            console.print("Run 'llama-manage help' for usage")
            return 1
        handler = getattr(self, f"cmd_{name}")
        return handler(*args) if name in ("logs", "follow", "restore") else handler()

    # Helpers

    def _print_lines(self, lines: list[str]) -> None:
        for line in lines:
            console.print(line, markup=False, highlight=False)

    def _service_line(self, name: str) -> bool:
        running = self.services.is_active(name)
        state = "[green]✓ Running[/green]" if running else "[red]✗ Stopped[/red]"
        console.print(f"{name}: {state}")
        if not running:
            status = self.services.get_service_status(name)
            if status.state == ServiceState.FAILED:
                console.print(f"  {status.describe()}", markup=False, highlight=False)
        return running

    def _tail_log(self, path: Path, count: int) -> list[str] | None:
        return self.artifacts.tail(path, count)

    def _connection_count(self, port: int) -> int | None:
        try:
            connections = psutil.net_connections(kind="tcp")
        except psutil.AccessDenied:
            return None
        return sum(
            1
            for c in connections
            if c.status == psutil.CONN_ESTABLISHED and c.laddr and c.laddr.port == port
        )

    def _managed_units(self) -> list[str]:
        units = [SERVICE_NAME]
        if self.settings.setup_nginx:
            units.append("nginx")
        return units

    # Commands

    def cmd_status(self) -> int:
        ui_header("Server Status")

        ui_section("Service Status")
        self._service_line(SERVICE_NAME)
        if self.settings.setup_nginx:
            self._service_line("nginx")
        if self.settings.setup_cloudflare and self.services.exists("cloudflared"):
            self._service_line("cloudflared")

        ui_section("Resource Usage")
        if self.runner.which("rocm-smi"):
            console.print("\n[yellow]GPU Usage:[/yellow]")
            result = self.runner.run(["rocm-smi", "--showuse"], timeout=15)
            self._print_lines(result.lines if result.success else ["Unable to get GPU stats"])
        elif self.runner.which("radeontop"):
            console.print("\n[yellow]GPU Usage (radeontop):[/yellow]")
            console.print("Run: radeontop -d - -l 1")

        memory = psutil.virtual_memory()
        disk = psutil.disk_usage("/")
        table = Table(show_header=True, header_style="bold")
        table.add_column("Resource")
        table.add_column("Used")
        table.add_column("Total")
        table.add_column("Usage")
        table.add_row("Memory", human_size(memory.used), human_size(memory.total), f"{memory.percent:.0f}%")
        table.add_row("CPU", "", f"{psutil.cpu_count()} cores", f"{psutil.cpu_percent(interval=0.5):.0f}%")
        table.add_row("Disk /", human_size(disk.used), human_size(disk.total), f"{disk.percent:.0f}%")
        console.print(table)

        ui_section("Active Connections")
        ports = []
        if self.settings.setup_nginx:
            ports.append(("Active HTTPS connections", self.settings.nginx_port))
        ports.append(("Active server connections", self.settings.server_port))
        for label, port in ports:
            count = self._connection_count(port)
            console.print(f"{label}: {'unavailable' if count is None else count}")

        ui_section("Recent Activity")
        server_log = self._tail_log(self.settings.server_log, 5)
        if server_log is not None:
            console.print("\n[yellow]Last 5 server log entries:[/yellow]")
            self._print_lines(server_log)
        if self.settings.setup_nginx:
            access_log = self._tail_log(self.paths.nginx_access_log, 5)
            if access_log is not None:
                console.print("\n[yellow]Last 5 access log entries:[/yellow]")
                self._print_lines(access_log)
        return 0

    def _print_log_tail(self, title: str, path: Path, lines: int, missing: str) -> None:
        console.print(f"[yellow]=== {title} (last {lines} lines) ===[/yellow]")
        tail = self._tail_log(path, lines)
        if tail is None:
            console.print(missing)
        else:
            self._print_lines(tail)

    def cmd_logs(self, service: str = SERVICE_NAME, lines: str = "50", *_: str) -> int:
        ui_header(f"Service Logs: {escape(service)}")
        try:
            count = int(lines)
        except ValueError:
            ui_print(f"Invalid line count: {escape(lines)}", "error")
            return 1

        target = SERVICE_ALIASES.get(service)
        if target == SERVICE_NAME:
            self._print_log_tail("Server Logs", self.settings.server_log, count, "Log file not found")
            console.print()
            self._print_log_tail("Error Logs", self.settings.error_log, count, "No errors logged")
        elif target == "nginx":
            self._print_log_tail("Nginx Access Logs", self.paths.nginx_access_log, count, "Log file not found")
            console.print()
            self._print_log_tail("Nginx Error Logs", self.paths.nginx_error_log, count, "No errors logged")
        elif target == "cloudflared":
            self._print_lines(self.services.journal("cloudflared", count).splitlines())
        else:
            console.print(f"Unknown service: {escape(service)}", highlight=False)
            console.print("Available: llama-server, nginx, cloudflared")
            return 1
        return 0

    def cmd_follow(self, service: str = SERVICE_NAME, *_: str) -> int:
        target = SERVICE_ALIASES.get(service)
        if target is None:
            console.print(f"Unknown service: {escape(service)}", highlight=False)
            return 1

        ui_header(f"Following Logs: {escape(service)}")
        if target == SERVICE_NAME:
            return self.runner.stream(["tail", "-f", str(self.settings.server_log)])
        if target == "nginx":
            return self.runner.stream(["tail", "-f", str(self.paths.nginx_access_log)], sudo=True)
        return self.services.follow_journal("cloudflared")

    def _each_unit(self, verb: str, done: str, style: str) -> int:
        status = 0
        for unit in self._managed_units():
            try:
                getattr(self.services, verb)(unit)
            except CommandError as e:
                ui_print(escape(str(e)), "error")
                status = 1
                continue
            console.print(f"[{style}]{unit} {done}[/{style}]")
        return status

    def cmd_start(self) -> int:
        ui_header("Starting Services")
        return self._each_unit("start", "started", "green")

    def cmd_stop(self) -> int:
        ui_header("Stopping Services")
        return self._each_unit("stop", "stopped", "yellow")

    def cmd_restart(self) -> int:
        ui_header("Restarting Services")
        status = self._each_unit("restart", "restarted", "green")
        self.sleep(RESTART_DELAY)
        self.cmd_status()
        return status

    def _probe(self, label: str, url: str, **kwargs) -> requests.Response | None:
        try:
            with warnings.catch_warnings():
                # Self-signed proxy certificate
                warnings.simplefilter("ignore")
                response = requests.request(kwargs.pop("method", "GET"), url, **kwargs)
        except requests.RequestException as e:
            logger.debug("%s failed: %s", label, e)
            response = None
        if response is not None and response.ok:
            console.print(f"[green]✓ {label} passed[/green]")
            return response
        console.print(f"[red]✗ {label} failed[/red]")
        return None

    def cmd_test(self) -> int:
        ui_header("Running Server Tests")
        failures = 0

        ui_section("Health Check")
        if self._probe("Server health check", self.settings.health_url, timeout=HTTP_TIMEOUT) is None:
            failures += 1

        if self.settings.setup_nginx:
            proxy = f"https://localhost:{self.settings.nginx_port}"
            ui_section("Nginx Health Check")
            if self._probe(
                "Nginx proxy health check", f"{proxy}/health", verify=False, timeout=HTTP_TIMEOUT
            ) is None:
                failures += 1

            ui_section("Simple Completion Test")
            console.print("Testing with authenticated request...")
            username = self.test_user or self.prompter.ask("test_user", "Enter username for test")
            password = self.environ.get(password_env_var(username)) or self.prompter.secret(
                "test_password", f"Password for {username}"
            )
            response = self._probe(
                "Completion request",
                f"{proxy}/completion",
                method="POST",
                json=COMPLETION_PAYLOAD,
                auth=(username, password or ""),
                verify=False,
                timeout=COMPLETION_TIMEOUT,
            )
            if response is None:
                failures += 1
            else:
                console.print("\nResponse preview:")
                console.print(response.text[:500], markup=False, highlight=False)

        return 1 if failures else 0

    def cmd_gpu(self) -> int:
        ui_header("GPU Monitoring")
        if self.runner.which("rocm-smi"):
            console.print("[yellow]ROCm SMI:[/yellow]")
            self.runner.stream(["rocm-smi"])
        if self.runner.which("radeontop"):
            console.print("\n[yellow]Starting radeontop (Ctrl+C to exit)...[/yellow]")
            self.sleep(2)
            self.runner.stream(["radeontop"])
        else:
            console.print("radeontop not installed. Install with: sudo apt install radeontop")
        return 0

    def cmd_users(self) -> int:
        ui_header("User Management")
        store = HtpasswdStore(self.paths.htpasswd, self.runner)
        reconciler = CredentialReconciler(
            store, self.prompter, lock_path=self.settings.base_dir / ".llama-deploy.lock"
        )

        ui_section("Current Users")
        if not store.file_exists():
            console.print("No users configured")
            return 0
        console.print("Registered users:")
        for number, name in enumerate(store.users(), 1):
            console.print(f"{number:6d}  {escape(name)}", highlight=False)

        console.print("\nActions:\n1. Add user\n2. Remove user\n3. Change password\n4. Exit")
        action = self.prompter.choose("users_action", "Select action", ["1", "2", "3", "4"], default="4")
        if action == "4":
            return 0
        if action not in ("1", "2", "3"):
            console.print("Invalid action")
            return 1

        question = {"1": "Enter new username", "2": "Enter username to remove", "3": "Enter username"}[action]
        username = self.prompter.ask("users_name", question).strip()
        if not username:
            console.print("No username given")
            return 1
        if action == "2":
            outcome = reconciler.remove(username)
        else:
            outcome = reconciler.apply(username, "create" if action == "1" else "change")
        return 0 if outcome.success else 1

    def cmd_model(self) -> int:
        ui_header("Model Management")

        ui_section("Current Model")
        console.print(f"Active model: {escape(self.settings.model_name)}", highlight=False)

        ui_section("Available Models")
        models = sorted(self.settings.models_dir.glob("*.gguf")) if self.settings.models_dir.is_dir() else []
        if models:
            table = Table(show_header=True, header_style="bold")
            table.add_column("Model")
            table.add_column("Size", justify="right")
            for model in models:
                table.add_row(model.name, human_size(model.stat().st_size))
            console.print(table)
        else:
            console.print("No models found")

        new_model = self.prompter.ask(
            "new_model", "Enter path to new model file (or press Enter to skip)", default=""
        ).strip()
        if not new_model:
            return 0
        source = Path(new_model).expanduser()
        if not source.is_file():
            console.print("[red]Model file not found[/red]")
            return 1
        dest = self.settings.models_dir / source.name
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
        except OSError as e:
            ui_print(f"Failed to copy model: {escape(str(e))}", "error")
            return 1
        console.print(f"[green]Model copied to {escape(str(dest))}[/green]")
        console.print("[yellow]Update config.env and restart service to use new model[/yellow]")
        return 0

    def _bench_binary(self) -> str | None:
        found = self.runner.which("llama-bench")
        if found:
            return found
        built = self.settings.source_dir / "build" / "bin" / "llama-bench"
        return str(built) if built.exists() else None

    def cmd_benchmark(self) -> int:
        ui_header("Running Benchmark")
        model = self.settings.model_path
        if not model.exists():
            console.print("[red]Model not found[/red]")
            return 1

        ui_section("Configuration")
        s = self.settings
        console.print(f"Model: {escape(s.model_name)}", highlight=False)
        console.print(f"GPU Layers: {s.gpu_layers}")
        console.print(f"Context Size: {s.context_size}")
        console.print(f"Threads: {s.server_threads}")

        ui_section("Running llama-bench")
        bench = self._bench_binary()
        if bench is None:
            console.print("llama-bench not found")
            console.print(
                f"Run: {s.source_dir / 'build' / 'bin' / 'llama-bench'} -m {model}", highlight=False
            )
            return 0
        return self.runner.stream(
            [bench, "-m", str(model), "-ngl", str(s.gpu_layers), "-t", str(s.server_threads)]
        )

    def cmd_diagnostics(self) -> int:
        ui_header("System Diagnostics")

        ui_section(f"{self.settings.backend_label} Information")
        if self.settings.gpu_backend == "vulkan":
            if self.runner.which("vulkaninfo"):
                self._print_lines(self.runner.run(["vulkaninfo", "--summary"], timeout=30).lines)
            else:
                console.print("Vulkan tools not installed")
        elif self.runner.which("rocminfo"):
            result = self.runner.run(["rocminfo"], timeout=30)
            self._print_lines(
                [line for line in result.lines if any(k in line for k in ("Name", "gfx", "VRAM"))]
            )
        else:
            console.print("ROCm not installed")

        ui_section("GPU Detection")
        lspci = self.runner.run(["lspci"], timeout=10)
        self._print_lines([line for line in lspci.lines if "vga" in line.lower()])

        ui_section("Environment Variables")
        for name in ("HSA_OVERRIDE_GFX_VERSION", "HSA_ENABLE_SDMA", "GGML_VK_VISIBLE_DEVICES", "PATH"):
            console.print(f"{name}: {self.environ.get(name, 'not set')}", markup=False, highlight=False)

        ui_section("Service Files")
        console.print(f"{SERVICE_NAME} service:")
        self._print_lines(self.services.cat_unit(SERVICE_NAME).splitlines()[:20])

        ui_section("Port Listeners")
        console.print("Ports in use:")
        ss = self.runner.run(["ss", "-tulpn"], sudo=True, timeout=10)
        ports = (f":{self.settings.server_port}", f":{self.settings.nginx_port}")
        self._print_lines([line for line in ss.lines if any(p in line for p in ports)])

        ui_section("System Load")
        load = ", ".join(f"{value:.2f}" for value in os.getloadavg())
        uptime = datetime.now() - datetime.fromtimestamp(psutil.boot_time())
        console.print(f"up {str(uptime).split('.')[0]}, load average: {load}")

        ui_section("Recent Errors")
        errors = self._tail_log(self.settings.error_log, 10)
        if errors is None:
            console.print("No errors logged")
        else:
            self._print_lines(errors)
        return 0

    def backup_members(self) -> list[Path]:
        return [
            self.paths.unit_file,
            self.paths.nginx_site,
            self.paths.htpasswd,
            self.settings.logs_dir,
        ]

    def cmd_backup(self) -> int:
        ui_header("Creating Backup")
        backup_dir = self.settings.backup_dir
        backup_dir.mkdir(parents=True, exist_ok=True)
        archive = backup_dir / f"{BACKUP_PREFIX}{datetime.now():%Y%m%d_%H%M%S}.tar.gz"

        ui_section("Backing up configuration and logs")
        added = 0
        with tarfile.open(archive, "w:gz") as tar:
            for member in self.backup_members():
                if not member.exists():
                    ui_print(f"Skipping missing {escape(str(member))}", "warning")
                    continue
                try:
                    tar.add(member, arcname=str(member).lstrip("/"))
                    added += 1
                except OSError as e:
                    ui_print(f"Skipping unreadable {escape(str(member))}: {escape(str(e))}", "warning")

        if not added:
            archive.unlink(missing_ok=True)
            console.print("[red]Backup failed[/red]")
            return 1
        console.print(f"[green]Backup created: {escape(str(archive))}[/green]")
        console.print(f"{human_size(archive.stat().st_size)}  {archive.name}", highlight=False)
        return 0

    def list_backups(self) -> list[Path]:
        backup_dir = self.settings.backup_dir
        if not backup_dir.is_dir():
            return []
        return sorted(backup_dir.glob(f"{BACKUP_PREFIX}*.tar.gz"))

    def cmd_restore(self, archive: str | None = None, *_: str) -> int:
        ui_header("Restoring Backup")
        if archive is None:
            backups = self.list_backups()
            if not backups:
                console.print("No backups found")
                return 0
            console.print("Available backups:")
            for backup in backups:
                console.print(f"  {backup.name}", highlight=False)
            console.print("\nRun: llama-manage restore <archive>")
            return 0

        path = Path(archive)
        if not path.exists():
            path = self.settings.backup_dir / archive
        if not path.is_file():
            console.print(f"[red]Backup not found: {escape(archive)}[/red]")
            return 1

        config_files = {str(p).lstrip("/") for p in self.backup_members()[:3]}
        try:
            with tarfile.open(path, "r:gz") as tar:
                members = [name for name in tar.getnames() if name in config_files]
        except (tarfile.TarError, OSError) as e:
            ui_print(f"Cannot read {escape(str(path))}: {escape(str(e))}", "error")
            return 1
        if not members:
            console.print("Archive contains no configuration files")
            return 1

        for name in members:
            console.print(f"  /{name}", highlight=False)
        if not self.prompter.confirm("confirm_restore", "Overwrite these files?", default=False):
            console.print("Restore cancelled")
            return 0

        try:
            self.runner.run(
                ["tar", "-xzf", str(path), "-C", "/", *members],
                sudo=True,
                check=True,
                error_message="Restore failed",
            )
            self.services.daemon_reload()
        except CommandError as e:
            ui_print(escape(str(e)), "error")
            return 1
        ui_print("Configuration restored. Restart services to apply it.", "success")
        return 0

    def cmd_help(self) -> int:
        console.print(USAGE, markup=False, highlight=False)
        return 0
