"""
Runtime installation, llama.cpp build and model download.

Each step inspects what is already on disk first and asks the operator before
redoing work. Any command that fails raises CommandError, which aborts the
deployment.
"""

import getpass
import logging
import os
from pathlib import Path

import requests
from rich.markup import escape

from llamadeploy.artifacts import ArtifactStore
from llamadeploy.branding import ui_print
from llamadeploy.config import Settings, SystemPaths
from llamadeploy.errors import DownloadError, PhaseError
from llamadeploy.prompts import Prompter
from llamadeploy.templates import PROFILE_MARKER, rocm_profile_block
from llamadeploy.utils.commands import CommandRunner

logger = logging.getLogger(__name__)

LLAMA_CPP_REPO = "https://github.com/ggerganov/llama.cpp.git"

ROCM_KEY_URL = "https://repo.radeon.com/rocm/rocm.gpg.key"
ROCM_KEYRING = Path("/etc/apt/keyrings/rocm.gpg")
ROCM_SOURCES = Path("/etc/apt/sources.list.d/rocm.list")
ROCM_PACKAGES = [
    "rocm-hip-sdk",
    "rocm-dev",
    "rocm-libs",
    "rocm-hip-runtime-dev",
    "clinfo",
    "radeontop",
    "rocminfo",
]
VULKAN_PACKAGES = [
    "libvulkan-dev",
    "glslc",
    "vulkan-tools",
    "mesa-vulkan-drivers",
    "radeontop",
]
BUILD_PACKAGES = ["build-essential", "cmake", "git", "curl"]
GPU_GROUPS = "render,video"


def apt_install(runner: CommandRunner, packages: list[str], what: str) -> None:
    runner.run(
        ["apt", "install", "-y", *packages],
        sudo=True,
        check=True,
        error_message=f"Failed to install {what}",
    )


class RuntimeInstaller:
    """Installs the GPU compute runtime selected by GPU_BACKEND."""

    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner,
        prompter: Prompter,
        paths: SystemPaths | None = None,
        profile: Path | None = None,
        user: str | None = None,
    ):
        self.settings = settings
        self.runner = runner
        self.prompter = prompter
        self.paths = paths or SystemPaths()
        self.artifacts = ArtifactStore(runner)
        self.profile = profile or Path.home() / ".bashrc"
        self.user = user or getpass.getuser()

    def install(self) -> bool:
        """Install the runtime.

        Returns:
            True if packages were installed, False if the phase was skipped.
        """
        if self.settings.skip_runtime_install:
            ui_print(f"Skipping {self.settings.backend_label} installation (SKIP_RUNTIME_INSTALL=true)")
            return False
        if self.settings.gpu_backend == "vulkan":
            return self.install_vulkan()
        return self.install_rocm()

    def _sdk_present(self) -> bool:
        if self.settings.gpu_backend == "vulkan":
            return self.artifacts.exists(self.paths.vulkan_header) and bool(self.runner.which("glslc"))
        return self.artifacts.exists(self.paths.rocm_sdk_marker)

    def _keep_existing(self) -> bool:
        label = self.settings.backend_label
        if not self._sdk_present():
            return False
        ui_print(f"Full {label} SDK already installed")
        if self.prompter.confirm("reinstall_runtime", f"Reinstall {label}?", default=False):
            return False
        ui_print(f"Skipping {label} installation")
        return True

    def install_rocm(self) -> bool:
        ui_print(f"Installing ROCm {self.settings.rocm_version}")
        if self._keep_existing():
            return False

        if self.runner.which("rocminfo") and not self._sdk_present():
            ui_print("Found rocminfo but missing full ROCm SDK, removing partial install", "warning")
            # A partial package may not be removable; the full install replaces it anyway
            self.runner.run(["apt", "remove", "-y", "rocminfo"], sudo=True)

        self._add_rocm_repository()
        self.runner.run(["apt", "update"], sudo=True, check=True, error_message="apt update failed")
        apt_install(self.runner, ROCM_PACKAGES, "ROCm packages")
        self._add_user_to_gpu_groups()
        self._update_shell_profile()

        ui_print("ROCm installed successfully", "success")
        ui_print("A system reboot is recommended before using ROCm", "warning")
        ui_print("After reboot, run: rocminfo | grep gfx", "warning")
        return True

    def install_vulkan(self) -> bool:
        ui_print("Installing Vulkan runtime and SDK")
        if self._keep_existing():
            return False

        self.runner.run(["apt", "update"], sudo=True, check=True, error_message="apt update failed")
        apt_install(self.runner, VULKAN_PACKAGES, "Vulkan packages")
        self._add_user_to_gpu_groups()
        ui_print("Vulkan installed successfully", "success")
        return True

    def _add_rocm_repository(self) -> None:
        try:
            response = requests.get(ROCM_KEY_URL, timeout=30)
            response.raise_for_status()
        except requests.RequestException as e:
            raise DownloadError(f"Failed to fetch ROCm signing key: {e}")

        self.artifacts.ensure_dirs(ROCM_KEYRING.parent)
        self.runner.run(
            ["gpg", "--dearmor", "--yes", "-o", str(ROCM_KEYRING)],
            sudo=True,
            input=response.text,
            check=True,
            error_message="Failed to install ROCm signing key",
        )
        line = (
            f"deb [arch=amd64 signed-by={ROCM_KEYRING}] "
            f"https://repo.radeon.com/rocm/apt/{self.settings.rocm_version} "
            f"{self.settings.ubuntu_codename} main\n"
        )
        self.artifacts.write_text(ROCM_SOURCES, line, "ROCm apt source")

    def _add_user_to_gpu_groups(self) -> None:
        self.runner.run(
            ["usermod", "-a", "-G", GPU_GROUPS, self.user],
            sudo=True,
            check=True,
            error_message=f"Failed to add {self.user} to {GPU_GROUPS}",
        )

    def _update_shell_profile(self) -> None:
        current = self.artifacts.read_text(self.profile) or ""
        if PROFILE_MARKER in current:
            logger.debug("ROCm environment already present in %s", self.profile)
            return
        self.artifacts.append_text(self.profile, rocm_profile_block(self.settings))
        ui_print(f"ROCm environment added to {escape(str(self.profile))}")


class LlamaBuilder:
    """Clones and builds llama.cpp for the configured backend."""

    def __init__(self, settings: Settings, runner: CommandRunner, prompter: Prompter):
        self.settings = settings
        self.runner = runner
        self.prompter = prompter
        self.artifacts = ArtifactStore(runner)

    def cmake_args(self) -> list[str]:
        s = self.settings
        args = [
            "cmake",
            "-B",
            "build",
            f"-DCMAKE_BUILD_TYPE={s.build_type}",
            f"-DCMAKE_C_FLAGS=-march={s.cpu_arch}",
            f"-DCMAKE_CXX_FLAGS=-march={s.cpu_arch}",
        ]
        if s.gpu_backend == "vulkan":
            args.append("-DGGML_VULKAN=ON")
        else:
            args += [
                "-DCMAKE_PREFIX_PATH=/opt/rocm",
                "-DGGML_HIP=ON",
                "-DGGML_HIPBLAS=ON",
                f"-DAMDGPU_TARGETS={s.gpu_target}",
            ]
        return args

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self.settings.gpu_backend == "rocm":
            env["ROCM_PATH"] = "/opt/rocm"
            env["HIP_PATH"] = "/opt/rocm"
        return env

    def build(self) -> Path:
        """Build llama-server and return the path of the binary.

        Raises:
            PhaseError: If the binary is missing after the build, or when the
                build is skipped and no binary exists.
        """
        binary = self.settings.built_binary
        if self.settings.skip_build:
            ui_print("Skipping llama.cpp build (SKIP_BUILD=true)")
            if not self.artifacts.exists(binary):
                raise PhaseError(f"SKIP_BUILD is set but {binary} does not exist")
            return binary

        ui_print(f"Building llama.cpp with {self.settings.backend_label} support")
        apt_install(self.runner, BUILD_PACKAGES, "build dependencies")

        source = self.settings.source_dir
        if self.artifacts.is_dir(source):
            ui_print("llama.cpp directory already exists", "warning")
            if self.prompter.confirm("reclone_source", "Remove and re-clone?", default=False):
                self.artifacts.remove_tree(source)
            else:
                ui_print("Using existing llama.cpp directory")

        if not self.artifacts.is_dir(source):
            ui_print("Cloning llama.cpp repository...")
            self.runner.run(
                ["git", "clone", LLAMA_CPP_REPO, str(source)],
                check=True,
                error_message="Failed to clone llama.cpp",
            )

        ui_print(
            f"Configuring build for {self.settings.cpu_arch}"
            + (f" and {self.settings.gpu_target}" if self.settings.gpu_backend == "rocm" else "")
        )
        env = self.build_env()
        self.runner.stream(
            self.cmake_args(), cwd=source, env=env, check=True, error_message="CMake configuration failed"
        )

        ui_print("Building llama.cpp (this may take several minutes)...")
        self.runner.stream(
            [
                "cmake",
                "--build",
                "build",
                "--config",
                self.settings.build_type,
                f"-j{self.settings.build_jobs}",
            ],
            cwd=source,
            env=env,
            check=True,
            error_message="Build failed",
        )

        if not self.artifacts.exists(binary):
            raise PhaseError("llama-server binary not found after build")
        ui_print("llama.cpp built successfully", "success")
        return binary


class ModelDownloader:
    """Fetches the GGUF model into INSTALL_DIR/models."""

    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner,
        prompter: Prompter,
        user: str | None = None,
    ):
        self.settings = settings
        self.runner = runner
        self.prompter = prompter
        self.artifacts = ArtifactStore(runner)
        self.user = user or getpass.getuser()

    def download(self) -> Path | None:
        """Download the model unless it is present and the operator keeps it.

        Returns:
            The model path, or None when the phase was skipped.
        """
        if self.settings.skip_model_download:
            ui_print("Skipping model download (SKIP_MODEL_DOWNLOAD=true)")
            return None

        self.artifacts.ensure_dirs(self.settings.install_dir, self.settings.models_dir, owner=self.user)
        model = self.settings.model_path

        if self.artifacts.exists(model):
            ui_print(f"Model already exists: {escape(str(model))}", "warning")
            if not self.prompter.confirm("redownload_model", "Re-download?", default=False):
                ui_print("Using existing model")
                return model

        ui_print(f"Downloading {escape(self.settings.model_name)}...")
        ui_print("This may take a while depending on your connection...")
        self.artifacts.download(self.settings.model_url, model)
        ui_print(f"Model downloaded successfully to {escape(str(model))}", "success")
        return model
