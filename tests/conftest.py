"""Shared fixtures: a scripted command runner, settings and a temporary system tree."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from llamadeploy.config import Settings, SystemPaths
from llamadeploy.errors import CommandError
from llamadeploy.utils.commands import CommandResult, CommandRunner

Handler = Callable[..., CommandResult]


class FakeRunner(CommandRunner):
    """Records commands and replays scripted results instead of executing anything.

    Responses are matched on a command prefix with any leading ``sudo`` removed;
    the most recently registered match wins. Unmatched commands succeed with no
    output.
    """

    def __init__(self, tools: list[str] | None = None):
        super().__init__()
        self.tools = set(tools or [])
        self.inputs: list[str | None] = []
        self._responses: list[tuple[list[str], Handler]] = []

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        handler: Handler | None = None,
    ) -> None:
        if handler is None:

            def handler(argv, _input):
                return CommandResult(argv, returncode, stdout, stderr)

        self._responses.insert(0, (list(prefix), handler))

    def which(self, name: str) -> str | None:
        return f"/usr/bin/{name}" if name in self.tools else None

    @staticmethod
    def _strip_sudo(argv: list[str]) -> list[str]:
        return argv[1:] if argv and argv[0] == "sudo" else argv

    def _respond(self, argv: list[str], input: str | None) -> CommandResult:
        bare = self._strip_sudo(argv)
        for prefix, handler in self._responses:
            if bare[: len(prefix)] == prefix:
                return handler(bare, input)
        return CommandResult(argv, 0)

    def run(
        self,
        cmd,
        *,
        check=False,
        sudo=False,
        input=None,
        cwd=None,
        env=None,
        timeout=None,
        error_message=None,
    ) -> CommandResult:
        argv = (["sudo"] if sudo else []) + [str(part) for part in cmd]
        self.history.append(argv)
        self.inputs.append(input)
        result = self._respond(argv, input)
        if check and not result.success:
            raise CommandError(error_message or f"Command failed: {' '.join(argv)}", result)
        return result

    def stream(self, cmd, *, check=False, sudo=False, cwd=None, env=None, error_message=None) -> int:
        result = self.run(cmd, check=check, sudo=sudo, error_message=error_message)
        return result.returncode

    def commands(self) -> list[list[str]]:
        """History without sudo prefixes."""
        return [self._strip_sudo(argv) for argv in self.history]

    def ran(self, *prefix: str) -> bool:
        return any(argv[: len(prefix)] == list(prefix) for argv in self.commands())

    def index(self, *prefix: str) -> int:
        for i, argv in enumerate(self.commands()):
            if argv[: len(prefix)] == list(prefix):
                return i
        raise ValueError(f"{prefix} was not run")


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def system_paths(tmp_path: Path) -> SystemPaths:
    root = tmp_path / "root"
    return SystemPaths(
        unit_file=root / "etc/systemd/system/llama-server.service",
        server_binary=root / "usr/local/bin/llama-server",
        nginx_site=root / "etc/nginx/sites-available/llama-server",
        nginx_enabled=root / "etc/nginx/sites-enabled/llama-server",
        htpasswd=root / "etc/nginx/.htpasswd",
        ssl_dir=root / "etc/nginx/ssl",
        nginx_access_log=root / "var/log/nginx/llama-access.log",
        nginx_error_log=root / "var/log/nginx/llama-error.log",
        cloudflared_config=root / "etc/cloudflared/config.yml",
        os_release=root / "etc/os-release",
        rocm_root=root / "opt/rocm",
        vulkan_header=root / "usr/include/vulkan/vulkan.h",
        drm_dir=root / "sys/class/drm",
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        install_dir=tmp_path / "opt" / "llama-server",
        model_url="https://example.com/model.gguf",
        users=["alice", "bob"],
        build_jobs=4,
        base_dir=tmp_path / "deploy",
    )


def write_os_release(paths: SystemPaths, version: str = "24.04", distro: str = "ubuntu") -> None:
    paths.os_release.parent.mkdir(parents=True, exist_ok=True)
    paths.os_release.write_text(
        f'NAME="Ubuntu"\nID={distro}\nVERSION_ID="{version}"\n'
        f'PRETTY_NAME="Ubuntu {version} LTS"\n'
    )


@pytest.fixture
def os_release(system_paths: SystemPaths) -> Callable[..., None]:
    def write(version: str = "24.04", distro: str = "ubuntu") -> None:
        write_os_release(system_paths, version, distro)

    return write
