"""
Tests for llamadeploy/preflight_checker.py - the environment prober.
"""

import json
from collections import namedtuple
from unittest.mock import MagicMock, patch

import pytest
import requests

from llamadeploy.preflight_checker import (
    GB,
    CheckResult,
    CheckStatus,
    PreflightChecker,
    PreflightReport,
    export_report,
    print_report,
    read_os_release,
)

DiskUsage = namedtuple("DiskUsage", "total used free")

LSPCI_AMD = (
    "00:00.0 Host bridge: Advanced Micro Devices, Inc. [AMD] Device 14e8\n"
    "c5:00.0 VGA compatible controller: Advanced Micro Devices, Inc. [AMD/ATI] "
    "Phoenix1 [Radeon 780M]\n"
)
LSPCI_INTEL = "00:02.0 VGA compatible controller: Intel Corporation Alder Lake-P GT2\n"
LSCPU_AMD = "Architecture: x86_64\nModel name: AMD Ryzen 7 7840HS w/ Radeon 780M Graphics\n"


@pytest.fixture
def machine():
    """Patch the hardware probes to describe a well-equipped machine."""
    with patch("llamadeploy.preflight_checker.psutil") as mock_psutil, patch(
        "llamadeploy.preflight_checker.shutil.disk_usage"
    ) as mock_disk, patch("llamadeploy.preflight_checker.platform.machine") as mock_arch, patch(
        "llamadeploy.preflight_checker.os.geteuid"
    ) as mock_euid, patch(
        "llamadeploy.preflight_checker.requests.head"
    ) as mock_head:
        mock_psutil.cpu_count.return_value = 16
        mock_psutil.virtual_memory.return_value = MagicMock(total=32 * GB)
        mock_disk.return_value = DiskUsage(500 * GB, 100 * GB, 400 * GB)
        mock_arch.return_value = "x86_64"
        mock_euid.return_value = 1000
        mock_head.return_value = MagicMock(status_code=200)
        yield {
            "psutil": mock_psutil,
            "disk": mock_disk,
            "arch": mock_arch,
            "euid": mock_euid,
            "head": mock_head,
        }


def make_checker(settings, runner, system_paths, config_found=True):
    checker = PreflightChecker(settings, runner, system_paths, config_found=config_found)
    checker._user_groups = lambda: {"render", "video", "sudo"}
    checker._port_in_use = lambda port: False
    return checker


def messages(report, status):
    return [r.message for r in report.results if r.status == status]


class TestPreflightReport:
    def test_counts_and_exit_code(self):
        report = PreflightReport(
            [
                CheckResult("A", CheckStatus.PASS, "ok"),
                CheckResult("A", CheckStatus.WARN, "hmm"),
                CheckResult("B", CheckStatus.INFO, "fyi"),
            ]
        )
        assert (report.passed, report.warnings, report.failed) == (1, 1, 0)
        assert report.exit_code == 0

        report.results.append(CheckResult("B", CheckStatus.FAIL, "bad"))
        assert report.exit_code == 1

    def test_by_section_keeps_order(self):
        report = PreflightReport(
            [CheckResult("B", CheckStatus.PASS, "1"), CheckResult("A", CheckStatus.PASS, "2")]
        )
        assert list(report.by_section()) == ["B", "A"]


class TestReadOsRelease:
    def test_parses_quoted_values(self, system_paths, os_release):
        os_release("22.04")
        info = read_os_release(system_paths.os_release)
        assert info["ID"] == "ubuntu"
        assert info["VERSION_ID"] == "22.04"

    def test_missing_file(self, system_paths):
        assert read_os_release(system_paths.os_release) is None


class TestPreflightChecker:
    def _ready_runner(self, runner, lspci=LSPCI_AMD):
        runner.tools = {"wget", "curl", "git", "gcc", "g++", "make", "cmake", "rocminfo", "sudo"}
        runner.on("lspci", stdout=lspci)
        runner.on("lscpu", stdout=LSCPU_AMD)
        runner.on("rocminfo", stdout="  Name:                    gfx1103\n")
        runner.on("dpkg-query", stdout="6.2.0.60200-66~24.04")
        return runner

    def test_ready_machine_passes(self, settings, runner, system_paths, os_release, machine):
        os_release()
        report = make_checker(settings, self._ready_runner(runner), system_paths).run_all()

        assert report.failed == 0
        assert report.exit_code == 0
        passed = messages(report, CheckStatus.PASS)
        assert "AMD GPU detected" in passed
        assert "Radeon 780M Graphics detected" in passed
        assert "GPU compute target: gfx1103" in passed
        assert "Ubuntu 24.04 LTS" in passed

    def test_no_amd_gpu_fails(self, settings, runner, system_paths, os_release, machine):
        os_release()
        machine["psutil"].cpu_count.return_value = 8
        machine["psutil"].virtual_memory.return_value = MagicMock(total=16 * GB)
        report = make_checker(settings, self._ready_runner(runner, LSPCI_INTEL), system_paths).run_all()

        assert "No AMD GPU detected" in messages(report, CheckStatus.FAIL)
        assert "CPU cores: 8" in messages(report, CheckStatus.PASS)
        assert "Total RAM: 16GB" in messages(report, CheckStatus.PASS)
        assert report.failed >= 1
        assert report.exit_code == 1

    def test_warnings_do_not_fail(self, settings, runner, system_paths, os_release, machine):
        os_release("22.04")
        machine["psutil"].virtual_memory.return_value = MagicMock(total=12 * GB)
        machine["disk"].return_value = DiskUsage(100 * GB, 70 * GB, 30 * GB)
        report = make_checker(settings, self._ready_runner(runner), system_paths, config_found=False).run_all()

        warned = messages(report, CheckStatus.WARN)
        assert "Configuration file not found (using defaults)" in warned
        assert any(m.startswith("Ubuntu version is 22.04") for m in warned)
        assert any(m.startswith("Total RAM: 12GB") for m in warned)
        assert any(m.startswith("Available disk space: 30GB") for m in warned)
        assert report.exit_code == 0

    @pytest.mark.parametrize(
        "total_gb,status",
        [(16, CheckStatus.PASS), (8, CheckStatus.WARN), (4, CheckStatus.FAIL)],
    )
    def test_memory_thresholds(self, settings, runner, system_paths, machine, total_gb, status):
        machine["psutil"].virtual_memory.return_value = MagicMock(total=total_gb * GB)
        checker = make_checker(settings, runner, system_paths)
        checker.check_memory()
        assert checker.report.results[-1].status == status

    @pytest.mark.parametrize(
        "free_gb,status",
        [(50, CheckStatus.PASS), (20, CheckStatus.WARN), (19, CheckStatus.FAIL)],
    )
    def test_disk_thresholds(self, settings, runner, system_paths, machine, free_gb, status):
        machine["disk"].return_value = DiskUsage(500 * GB, 0, free_gb * GB)
        checker = make_checker(settings, runner, system_paths)
        checker.check_disk()
        assert checker.report.results[-1].status == status

    def test_unreadable_os_release_fails(self, settings, runner, system_paths, machine):
        checker = make_checker(settings, runner, system_paths)
        checker.check_os()
        assert "Cannot determine OS version" in messages(checker.report, CheckStatus.FAIL)

    def test_root_fails(self, settings, runner, system_paths, machine):
        machine["euid"].return_value = 0
        checker = make_checker(settings, runner, system_paths)
        checker.check_privileges()
        assert "Running as root (please run as regular user)" in messages(checker.report, CheckStatus.FAIL)

    def test_no_sudo_fails(self, settings, runner, system_paths, machine):
        # FakeRunner matches with the leading sudo stripped
        runner.on("-n", "true", returncode=1)
        checker = make_checker(settings, runner, system_paths)
        checker._user_groups = lambda: {"users"}
        checker.check_privileges()
        assert "No sudo access" in messages(checker.report, CheckStatus.FAIL)

    def test_no_internet_fails(self, settings, runner, system_paths, machine):
        runner.on("ping", returncode=1)
        machine["head"].side_effect = requests.ConnectionError()
        checker = make_checker(settings, runner, system_paths)
        checker.check_network()
        assert "No internet connectivity" in messages(checker.report, CheckStatus.FAIL)
        assert "Cannot reach https://repo.radeon.com" in messages(checker.report, CheckStatus.WARN)

    def test_redirect_counts_as_reachable(self, settings, runner, system_paths, machine):
        machine["head"].return_value = MagicMock(status_code=301)
        checker = make_checker(settings, runner, system_paths)
        checker.check_network()
        assert "Can reach https://github.com" in messages(checker.report, CheckStatus.PASS)

    def test_runtime_missing_warns(self, settings, runner, system_paths, machine):
        checker = make_checker(settings, runner, system_paths)
        checker.check_runtime()
        assert messages(checker.report, CheckStatus.WARN) == [
            "ROCm not installed (will be installed during deployment)"
        ]

    def test_gpu_target_mismatch_warns(self, settings, runner, system_paths, machine):
        runner.tools = {"rocminfo"}
        runner.on("rocminfo", stdout="Name: gfx1100\n")
        checker = make_checker(settings, runner, system_paths)
        checker.check_runtime()
        assert "GPU target is gfx1100 but GPU_TARGET is gfx1103" in messages(checker.report, CheckStatus.WARN)

    def test_vulkan_runtime(self, settings, runner, system_paths, machine):
        settings.gpu_backend = "vulkan"
        runner.tools = {"vulkaninfo"}
        runner.on("vulkaninfo", stdout="GPU0:\n\tdeviceName = AMD Radeon 780M (RADV GFX1103_R1)\n")
        checker = make_checker(settings, runner, system_paths)
        checker.check_runtime()
        assert "vulkaninfo runs successfully" in messages(checker.report, CheckStatus.PASS)
        assert "Vulkan device: AMD Radeon 780M (RADV GFX1103_R1)" in messages(checker.report, CheckStatus.INFO)

    def test_busy_port_warns(self, settings, runner, system_paths, machine):
        checker = make_checker(settings, runner, system_paths)
        checker._port_in_use = lambda port: port == 8443
        checker.check_ports()
        assert messages(checker.report, CheckStatus.WARN) == ["Port 8443 (nginx) is already in use"]
        assert messages(checker.report, CheckStatus.PASS) == ["Port 8080 (llama-server) is available"]

    def test_check_exception_becomes_warning(self, settings, runner, system_paths, os_release, machine):
        os_release()
        checker = make_checker(settings, self._ready_runner(runner), system_paths)
        checker.check_cpu = MagicMock(side_effect=RuntimeError("boom"))
        report = checker.run_all()

        assert "Hardware check could not run: boom" in messages(report, CheckStatus.WARN)
        # Later checks still ran
        assert any(r.section == "Security" for r in report.results)

    def test_existing_service_reported(self, settings, runner, system_paths, machine):
        runner.on(
            "systemctl",
            "list-unit-files",
            "llama-server.service",
            stdout="llama-server.service enabled enabled\n",
        )
        runner.on("systemctl", "is-active", "llama-server.service", stdout="active\n")
        checker = make_checker(settings, runner, system_paths)
        checker.check_services()
        assert "llama-server service exists (status: active)" in messages(checker.report, CheckStatus.INFO)


class TestReportOutput:
    def test_export_report(self, tmp_path):
        report = PreflightReport(
            [CheckResult("GPU Detection", CheckStatus.FAIL, "No AMD GPU detected")]
        )
        path = tmp_path / "report.json"
        export_report(report, path)

        data = json.loads(path.read_text())
        assert data["failed"] == 1
        assert data["exit_code"] == 1
        assert data["results"][0] == {
            "section": "GPU Detection",
            "status": "fail",
            "message": "No AMD GPU detected",
        }

    def test_print_report_summary(self, capsys):
        report = PreflightReport([CheckResult("Hardware", CheckStatus.WARN, "Only 2 CPU cores")])
        print_report(report)
        out = capsys.readouterr().out
        assert "=== Hardware ===" in out
        assert "Only 2 CPU cores" in out
        assert "System is mostly ready" in out
