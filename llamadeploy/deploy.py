"""
Deployment orchestration.

Runs the phases in order: pre-flight, runtime, build, model, server service,
reverse proxy with users, tunnel and post-deployment verification. A failing
phase stops the run; nothing is rolled back.
"""

import getpass
import logging
import os
import shutil
import time
from collections.abc import Callable
from datetime import datetime

import requests
from rich.markup import escape

from llamadeploy.branding import ui_header, ui_print, ui_section
from llamadeploy.config import SERVICE_NAME, Settings, SystemPaths
from llamadeploy.errors import DeployError, PhaseError
from llamadeploy.installer import LlamaBuilder, ModelDownloader, RuntimeInstaller
from llamadeploy.preflight_checker import (
    GB,
    MIN_DISK_GB,
    SUPPORTED_VERSION,
    read_os_release,
)
from llamadeploy.prompts import Prompter
from llamadeploy.service_reconciler import ServiceReconciler
from llamadeploy.systemd_helper import ServiceController
from llamadeploy.tunnel import TunnelSetup
from llamadeploy.utils.commands import CommandRunner

logger = logging.getLogger(__name__)

PHASE0_TOOLS = ["wget", "curl", "git", "cmake", "gcc", "g++"]
HEALTH_DELAY = 2
HEALTH_TIMEOUT = 5


class DeploymentCancelled(Exception):
    """The operator declined to continue."""


class Deployment:
    """Runs every deployment phase for one settings file."""

    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner,
        prompter: Prompter,
        paths: SystemPaths | None = None,
        assume_yes: bool = False,
        user: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.runner = runner
        self.prompter = prompter
        self.paths = paths or SystemPaths()
        self.assume_yes = assume_yes
        self.user = user or getpass.getuser()
        self.sleep = sleep
        self.services = ServiceController(runner)

        lock_path = settings.base_dir / ".llama-deploy.lock"
        self.runtime = RuntimeInstaller(settings, runner, prompter, self.paths, user=self.user)
        self.builder = LlamaBuilder(settings, runner, prompter)
        self.model = ModelDownloader(settings, runner, prompter, user=self.user)
        self.reconciler = ServiceReconciler(
            settings,
            runner,
            prompter,
            self.paths,
            services=self.services,
            user=self.user,
            lock_path=lock_path,
            sleep=sleep,
        )
        self.tunnel = TunnelSetup(settings, runner, prompter, self.paths, services=self.services)

    def preflight(self) -> None:
        """Phase 0.

        Raises:
            PhaseError: When run as root or the OS cannot be identified.
            DeploymentCancelled: When the operator stops on an unexpected OS version.
        """
        ui_section("Running Pre-flight Checks")

        if os.geteuid() == 0:
            raise PhaseError("Please do not run this script as root. Use your regular user account.")

        info = read_os_release(self.paths.os_release)
        if info is None:
            raise PhaseError("Cannot determine OS version")

        version = info.get("VERSION_ID", "")
        if version != SUPPORTED_VERSION:
            ui_print(
                f"This deployment is designed for Ubuntu {SUPPORTED_VERSION}. You are running {version}",
                "warning",
            )
            if not self._confirm("continue_os_version", "Continue anyway?"):
                raise DeploymentCancelled("Unsupported OS version")

        for tool in PHASE0_TOOLS:
            if not self.runner.which(tool):
                ui_print(f"{tool} not found. Will be installed.", "warning")

        if shutil.disk_usage("/").free < MIN_DISK_GB * GB:
            ui_print(f"Less than {MIN_DISK_GB}GB available disk space", "warning")

        ui_print("Pre-flight checks completed", "success")

    def _confirm(self, key: str, question: str) -> bool:
        if self.assume_yes:
            return True
        return self.prompter.confirm(key, question, default=False)

    def plan(self) -> list[str]:
        s = self.settings
        if s.gpu_backend == "rocm":
            runtime = f"Install ROCm {s.rocm_version}"
            build = f"Build llama.cpp with {s.gpu_target} support"
        else:
            runtime = "Install Vulkan runtime"
            build = "Build llama.cpp with Vulkan support"
        steps = [runtime, build, f"Download model: {s.model_name}", "Setup systemd service"]
        if s.setup_nginx:
            steps.append("Setup nginx reverse proxy")
        if s.setup_cloudflare:
            steps.append("Setup Cloudflare Tunnel")
        return steps

    def run(self) -> int:
        """Run all phases.

        Returns:
            0 on success or when the operator cancels, 1 on failure.
        """
        ui_header(f"llama.cpp {self.settings.backend_label} Server Deployment")
        ui_print(f"Started at: {datetime.now():%Y-%m-%d %H:%M:%S}")

        try:
            try:
                self.preflight()
            except DeploymentCancelled:
                return 1

            ui_print("Deployment will proceed with the following phases:")
            for number, step in enumerate(self.plan(), 1):
                ui_print(f"{number}. {step}")
            if not self._confirm("continue_deployment", "Continue with deployment?"):
                ui_print("Deployment cancelled by user")
                return 0

            ui_section(f"Phase 1: Installing {self.settings.backend_label}")
            self.runtime.install()
            ui_section("Phase 2: Building llama.cpp")
            self.builder.build()
            ui_section("Phase 3: Downloading Model")
            self.model.download()
            ui_section(f"Phase 4: Setting up {SERVICE_NAME} systemd service")
            self.reconciler.reconcile_server()
            ui_section("Phase 5: Setting up Nginx reverse proxy")
            outcomes = self.reconciler.reconcile_proxy()
            for outcome in outcomes:
                if not outcome.success:
                    ui_print(f"User {escape(outcome.username)}: {escape(outcome.message)}", "warning")
            ui_section("Phase 6: Setting up Cloudflare Tunnel")
            self.tunnel.setup()
        except DeployError as e:
            logger.debug("Deployment failed", exc_info=True)
            ui_print(escape(str(e)), "error")
            ui_print(f"Deployment failed. Check {escape(str(self.settings.deployment_log))} for details.", "error")
            ui_print(f"Service logs: journalctl -u {SERVICE_NAME}", "error")
            return 1

        ui_section("Phase 7: Post-deployment Verification")
        self.post_checks()
        self.next_steps()
        return 0

    def post_checks(self) -> bool:
        """Report service states and the health probe; never raises."""
        ok = True
        units = [SERVICE_NAME]
        if self.settings.setup_nginx:
            units.append("nginx")
        if self.settings.setup_cloudflare:
            units.append("cloudflared")

        for unit in units:
            if self.services.is_active(unit):
                ui_print(f"✓ {unit} is running", "success")
            else:
                ui_print(f"✗ {unit} is not running", "error")
                ok = False

        ui_print("Testing health endpoint...")
        self.sleep(HEALTH_DELAY)
        try:
            response = requests.get(self.settings.health_url, timeout=HEALTH_TIMEOUT)
            healthy = response.ok
        except requests.RequestException:
            healthy = False
        if healthy:
            ui_print("✓ Server health check passed", "success")
        else:
            ui_print("✗ Server health check failed", "warning")
            ok = False
        return ok

    def next_steps(self) -> None:
        ui_header("Deployment completed successfully!")
        ui_print(f"Finished at: {datetime.now():%Y-%m-%d %H:%M:%S}")
        ui_print("Next steps:")
        steps = []
        if self.settings.gpu_backend == "rocm":
            steps.append("Reboot your system: sudo reboot")
            steps.append("After reboot, verify ROCm: rocminfo | grep gfx")
        else:
            steps.append("Verify Vulkan: vulkaninfo --summary")
        steps.append(f"Check service status: sudo systemctl status {SERVICE_NAME}")
        if self.settings.setup_nginx:
            first_user = self.settings.users[0] if self.settings.users else "user"
            steps.append(
                f"Test locally: curl -k -u {first_user} https://localhost:{self.settings.nginx_port}/health"
            )
        for number, step in enumerate(steps, 1):
            ui_print(f"{number}. {step}")
        ui_print(f"Deployment log saved to: {escape(str(self.settings.deployment_log))}")
