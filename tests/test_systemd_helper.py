"""
Unit tests for llamadeploy/systemd_helper.py - the systemctl/journalctl wrapper.
"""

import pytest

from llamadeploy.errors import CommandError
from llamadeploy.systemd_helper import (
    JOURNALCTL_TIMEOUT,
    ServiceController,
    ServiceState,
    ServiceStatus,
    _validate_service_name,
    explain_exit_code,
)

SHOW_RUNNING = """Id=llama-server.service
Description=llama.cpp Server with ROCm GPU Acceleration
LoadState=loaded
ActiveState=active
SubState=running
MainPID=4242
MemoryCurrent=1073741824
ActiveEnterTimestamp=Mon 2024-01-01 12:00:00 UTC
ExecMainStatus=0
"""

SHOW_FAILED = """Id=llama-server.service
LoadState=loaded
ActiveState=failed
SubState=failed
MainPID=0
ExecMainStatus=137
"""


class TestServiceStatus:
    def test_describe_running(self):
        assert ServiceStatus(name="nginx", state=ServiceState.RUNNING).describe() == "running"

    def test_describe_crash(self):
        status = ServiceStatus("llama-server", ServiceState.FAILED, result="signal", exit_code=137)
        assert status.describe() == (
            "failed (signal): exit code 137, killed, possibly out of memory or MemoryMax reached"
        )

    def test_explain_unknown_code(self):
        assert explain_exit_code(42) == "check the service logs"


class TestValidateServiceName:
    def test_adds_suffix(self):
        assert _validate_service_name("llama-server") == "llama-server.service"

    def test_keeps_suffix(self):
        assert _validate_service_name("nginx.service") == "nginx.service"

    def test_template_unit(self):
        assert _validate_service_name("getty@tty1") == "getty@tty1.service"

    def test_empty(self):
        with pytest.raises(ValueError, match="cannot be empty"):
            _validate_service_name("")

    @pytest.mark.parametrize("name", ["nginx; rm -rf /", "../etc", "-nginx", "a b"])
    def test_rejects_unsafe(self, name):
        with pytest.raises(ValueError, match="Invalid service name"):
            _validate_service_name(name)


class TestServiceController:
    def test_is_active(self, runner):
        controller = ServiceController(runner)
        runner.on("systemctl", "is-active", "--quiet", "nginx.service", returncode=3)
        assert controller.is_active("llama-server")
        assert not controller.is_active("nginx")

    def test_active_state(self, runner):
        runner.on("systemctl", "is-active", "llama-server.service", returncode=3, stdout="failed\n")
        assert ServiceController(runner).active_state("llama-server") == "failed"

    def test_exists(self, runner):
        runner.on(
            "systemctl",
            "list-unit-files",
            "cloudflared.service",
            stdout="cloudflared.service enabled enabled\n",
        )
        controller = ServiceController(runner)
        assert controller.exists("cloudflared")
        assert not controller.exists("llama-server")

    def test_status_running(self, runner):
        runner.on("systemctl", "show", stdout=SHOW_RUNNING)
        status = ServiceController(runner).get_service_status("llama-server")
        assert status.name == "llama-server"
        assert status.state == ServiceState.RUNNING
        assert status.pid == 4242
        assert status.exit_code == 0

    def test_status_failed(self, runner):
        runner.on("systemctl", "show", stdout=SHOW_FAILED)
        status = ServiceController(runner).get_service_status("llama-server")
        assert status.state == ServiceState.FAILED
        assert status.pid is None
        assert status.exit_code == 137

    def test_status_query_failure(self, runner):
        runner.on("systemctl", "show", returncode=1)
        assert ServiceController(runner).get_service_status("llama-server").state == ServiceState.UNKNOWN

    def test_status_not_found(self, runner):
        runner.on("systemctl", "show", stdout="LoadState=not-found\nActiveState=inactive\n")
        status = ServiceController(runner).get_service_status("ghost")
        assert status.state == ServiceState.NOT_FOUND

    def test_actions_use_sudo(self, runner):
        controller = ServiceController(runner)
        controller.restart("nginx")
        controller.daemon_reload()
        assert runner.history == [
            ["sudo", "systemctl", "restart", "nginx.service"],
            ["sudo", "systemctl", "daemon-reload"],
        ]

    def test_action_failure_raises(self, runner):
        runner.on("systemctl", "start", returncode=1, stderr="Job failed\n")
        with pytest.raises(CommandError, match="Failed to start llama-server.service"):
            ServiceController(runner).start("llama-server")

    def test_journal(self, runner):
        runner.on("journalctl", stdout="line1\nline2\n")
        text = ServiceController(runner).journal("cloudflared", 20)
        assert text == "line1\nline2"
        assert runner.commands()[0] == [
            "journalctl",
            "-u",
            "cloudflared.service",
            "-n",
            "20",
            "--no-pager",
        ]
        assert JOURNALCTL_TIMEOUT > 0

    def test_cat_unit_missing(self, runner):
        runner.on("systemctl", "cat", returncode=1, stderr="No files found\n")
        assert ServiceController(runner).cat_unit("llama-server") == ""
