"""Cloudflare tunnel setup."""

import logging
import tempfile
from pathlib import Path

from rich.markup import escape

from llamadeploy.artifacts import ArtifactStore
from llamadeploy.branding import ui_print
from llamadeploy.config import Settings, SystemPaths
from llamadeploy.errors import PhaseError
from llamadeploy.prompts import Prompter
from llamadeploy.systemd_helper import ServiceController
from llamadeploy.templates import TunnelConfig
from llamadeploy.utils.commands import CommandRunner

logger = logging.getLogger(__name__)

CLOUDFLARED_DEB_URL = (
    "https://github.com/cloudflare/cloudflared/releases/latest/download/cloudflared-linux-amd64.deb"
)


def parse_tunnel_id(listing: str, name: str) -> str | None:
    """Find the ID of tunnel ``name`` in ``cloudflared tunnel list`` output."""
    for line in listing.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[1] == name:
            return parts[0]
    return None


class TunnelSetup:
    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner,
        prompter: Prompter,
        paths: SystemPaths | None = None,
        services: ServiceController | None = None,
    ):
        self.settings = settings
        self.runner = runner
        self.prompter = prompter
        self.paths = paths or SystemPaths()
        self.services = services or ServiceController(runner)
        self.artifacts = ArtifactStore(runner)

    def install_cloudflared(self) -> None:
        if self.runner.which("cloudflared"):
            ui_print("cloudflared already installed")
            return
        ui_print("Installing cloudflared...")
        with tempfile.TemporaryDirectory() as tmp:
            deb = self.artifacts.download(CLOUDFLARED_DEB_URL, Path(tmp) / "cloudflared-linux-amd64.deb")
            self.runner.run(
                ["dpkg", "-i", str(deb)],
                sudo=True,
                check=True,
                error_message="Failed to install cloudflared",
            )

    def setup(self) -> str | None:
        """Create, configure and start the tunnel.

        Returns:
            The public hostname, or None when the tunnel is disabled.

        Raises:
            PhaseError: If the tunnel ID cannot be resolved or no hostname is given.
        """
        if not self.settings.setup_cloudflare:
            ui_print("Skipping Cloudflare Tunnel setup (SETUP_CLOUDFLARE=false)")
            return None

        name = self.settings.tunnel_name
        self.install_cloudflared()

        ui_print("Please authenticate with Cloudflare (browser will open)...")
        self.runner.stream(
            ["cloudflared", "tunnel", "login"],
            check=True,
            error_message="Cloudflare authentication failed",
        )

        ui_print(f"Creating tunnel: {escape(name)}...")
        created = self.runner.run(["cloudflared", "tunnel", "create", name])
        if not created.success:
            ui_print("Tunnel may already exist", "warning")

        listing = self.runner.run(["cloudflared", "tunnel", "list"])
        tunnel_id = parse_tunnel_id(listing.stdout, name)
        if not tunnel_id:
            raise PhaseError("Failed to get tunnel ID")
        ui_print(f"Tunnel ID: {escape(tunnel_id)}")

        hostname = self.settings.tunnel_hostname or self.prompter.ask(
            "tunnel_hostname", "Enter your tunnel hostname (e.g., llama.yourdomain.com)"
        )
        if not hostname:
            raise PhaseError("A tunnel hostname is required (set TUNNEL_HOSTNAME)")

        ui_print("Creating tunnel configuration...")
        config = TunnelConfig(tunnel_id, hostname, self.settings.nginx_port)
        self.artifacts.ensure_dirs(self.paths.cloudflared_config.parent)
        self.artifacts.write_text(self.paths.cloudflared_config, config.render(), "tunnel configuration")

        ui_print("Creating DNS record...")
        self.runner.run(
            ["cloudflared", "tunnel", "route", "dns", name, hostname],
            check=True,
            error_message="Failed to create DNS record",
        )

        ui_print("Installing cloudflared as service...")
        self.runner.run(
            ["cloudflared", "service", "install"],
            sudo=True,
            check=True,
            error_message="Failed to install cloudflared service",
        )
        self.services.start("cloudflared")
        self.services.enable("cloudflared")

        ui_print("Cloudflare Tunnel configured successfully", "success")
        ui_print(f"Your server will be accessible at: https://{escape(hostname)}")
        return hostname
