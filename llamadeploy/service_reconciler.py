"""
Service reconciliation.

Renders the llama-server unit and the nginx site from settings, installs them
and brings the services into the running state. The rendered text depends
only on settings and the run-as user, so reconciling twice writes the same
bytes.
"""

import getpass
import logging
import time
from collections.abc import Callable
from pathlib import Path

from filelock import FileLock
from rich.markup import escape

from llamadeploy.artifacts import ArtifactStore
from llamadeploy.branding import console, ui_print
from llamadeploy.config import SERVICE_NAME, Settings, SystemPaths
from llamadeploy.credentials import CredentialReconciler, HtpasswdStore, UserOutcome
from llamadeploy.errors import PhaseError
from llamadeploy.installer import apt_install
from llamadeploy.prompts import Prompter
from llamadeploy.systemd_helper import ServiceController
from llamadeploy.templates import NginxSite, ServerUnit
from llamadeploy.utils.commands import CommandRunner

logger = logging.getLogger(__name__)

START_DELAY = 3
LOCK_TIMEOUT = 60
CERT_DAYS = 365
PROXY_PACKAGES = ["nginx", "apache2-utils"]


class ServiceReconciler:
    """Installs and (re)starts llama-server and the nginx reverse proxy."""

    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner,
        prompter: Prompter,
        paths: SystemPaths | None = None,
        services: ServiceController | None = None,
        user: str | None = None,
        lock_path: Path | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.runner = runner
        self.prompter = prompter
        self.paths = paths or SystemPaths()
        self.services = services or ServiceController(runner)
        self.artifacts = ArtifactStore(runner)
        self.user = user or getpass.getuser()
        self.lock_path = lock_path
        self.sleep = sleep

    def render_unit(self) -> str:
        return ServerUnit.from_settings(self.settings, self.user, self.paths).render()

    def render_site(self) -> str:
        return NginxSite.from_settings(self.settings, self.paths).render()

    def _write(self, path: Path, content: str, what: str) -> None:
        if self.lock_path is None:
            self.artifacts.write_text(path, content, what)
            return
        with FileLock(str(self.lock_path), timeout=LOCK_TIMEOUT):
            self.artifacts.write_text(path, content, what)

    def reconcile_server(self) -> bool:
        """Install the unit and start llama-server.

        Returns:
            False if the service was running and left untouched.

        Raises:
            PhaseError: If the service is not active after starting it.
        """
        if self.services.is_active(SERVICE_NAME):
            ui_print(f"{SERVICE_NAME} service is already running")
            if not self.prompter.confirm(
                "reconfigure_service", "Reconfigure and restart service?", default=False
            ):
                ui_print("Skipping service setup (already running)")
                return False
            ui_print("Stopping service for reconfiguration...")
            self.services.stop(SERVICE_NAME)

        s = self.settings
        self.artifacts.ensure_dirs(
            s.models_dir, s.logs_dir, s.install_dir / "config", owner=self.user
        )

        ui_print("Installing server binary...")
        self.artifacts.install_file(s.built_binary, self.paths.server_binary)

        ui_print("Creating systemd service...")
        self._write(self.paths.unit_file, self.render_unit(), "systemd service")
        self.services.daemon_reload()

        ui_print(f"Enabling {SERVICE_NAME} service...")
        self.services.enable(SERVICE_NAME)
        ui_print(f"Starting {SERVICE_NAME} service...")
        self.services.start(SERVICE_NAME)

        self.sleep(START_DELAY)
        if not self.services.is_active(SERVICE_NAME):
            status = self.services.status_text(SERVICE_NAME)
            state = self.services.get_service_status(SERVICE_NAME)
            ui_print(f"{SERVICE_NAME} service failed to start: {escape(state.describe())}", "error")
            if status:
                console.print(status, markup=False, highlight=False)
            raise PhaseError("Service startup failed")

        ui_print(f"{SERVICE_NAME} service started successfully", "success")
        return True

    def reconcile_proxy(self, credentials: CredentialReconciler | None = None) -> list[UserOutcome]:
        """Install nginx, reconcile users, write the site and restart nginx.

        Returns:
            Per-user credential outcomes (empty when nginx is disabled).
        """
        if not self.settings.setup_nginx:
            ui_print("Skipping nginx setup (SETUP_NGINX=false)")
            return []

        ui_print("Installing nginx...")
        apt_install(self.runner, PROXY_PACKAGES, "nginx")

        ui_print("Setting up user authentication...")
        if credentials is None:
            credentials = CredentialReconciler(
                HtpasswdStore(self.paths.htpasswd, self.runner),
                self.prompter,
                lock_path=self.lock_path,
            )
        outcomes = credentials.reconcile(self.settings.users)

        self.ensure_certificate()

        ui_print("Creating nginx configuration...")
        self._write(self.paths.nginx_site, self.render_site(), "nginx site")
        self.artifacts.symlink(self.paths.nginx_site, self.paths.nginx_enabled)

        ui_print("Testing nginx configuration...")
        self.runner.run(
            ["nginx", "-t"], sudo=True, check=True, error_message="Nginx configuration test failed"
        )

        ui_print("Restarting nginx...")
        self.services.restart("nginx")
        ui_print("Nginx configured successfully", "success")
        return outcomes

    def ensure_certificate(self) -> None:
        """Generate a self-signed certificate unless one is already installed."""
        cert, key = self.paths.ssl_certificate, self.paths.ssl_certificate_key
        if self.artifacts.exists(cert) and self.artifacts.exists(key):
            ui_print("Using existing SSL certificate")
            return

        ui_print("Generating self-signed SSL certificate...")
        self.artifacts.ensure_dirs(self.paths.ssl_dir)
        self.runner.run(
            [
                "openssl",
                "req",
                "-x509",
                "-nodes",
                "-days",
                str(CERT_DAYS),
                "-newkey",
                "rsa:2048",
                "-keyout",
                str(key),
                "-out",
                str(cert),
                "-subj",
                f"/C=US/ST=State/L=City/O=LLaMA-Server/CN={self.settings.nginx_server_name}",
            ],
            sudo=True,
            check=True,
            error_message="Failed to generate SSL certificate",
        )
