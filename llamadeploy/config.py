"""
Settings loader.

The settings file is the same shell-sourceable ``config.env`` operators already
edit by hand: ``KEY=value`` lines, quoted values, ``export``, comments, bash
arrays (``USERS=("alice" "bob")``) and ``${VAR}`` references to earlier keys.
It is parsed here without invoking a shell, converted into a typed Settings
object and validated before anything touches the system.
"""

import logging
import os
import re
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path

from llamadeploy.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "LLAMA_DEPLOY_CONFIG"
DEFAULT_CONFIG_NAME = "config.env"

BACKENDS = ("rocm", "vulkan")
USER_ACTIONS = ("change", "skip", "recreate")

SERVICE_NAME = "llama-server"

_KEY_RE = re.compile(r"^(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$")
_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")
_RATE_RE = re.compile(r"^\d+r/[sm]$")
_TRUE = {"1", "true", "yes", "on", "y"}
_FALSE = {"0", "false", "no", "off", "n", ""}

# Keys accepted under an older name
KEY_ALIASES = {"SKIP_ROCM_INSTALL": "SKIP_RUNTIME_INSTALL"}


def _expand(text: str, scope: Mapping[str, str]) -> str:
    def replace(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        return scope.get(name, "")

    return _VAR_RE.sub(replace, text)


def _split_value(raw: str, scope: Mapping[str, str]) -> list[str]:
    """Split a right-hand side into words, expanding variables outside single quotes."""
    if not raw.lstrip().startswith("'"):
        raw = _expand(raw, scope)
    try:
        return shlex.split(raw, comments=True)
    except ValueError as e:
        raise ConfigError(f"Cannot parse value {raw!r}: {e}")


def parse_env_file(text: str, environ: Mapping[str, str] | None = None) -> dict[str, object]:
    """Parse shell-sourceable ``KEY=value`` text.

    Args:
        text: File contents.
        environ: Variables visible to ``${VAR}`` references besides earlier keys.

    Returns:
        Ordered mapping of key -> str, or key -> list[str] for bash arrays.

    Raises:
        ConfigError: On an unterminated array or unbalanced quotes.
    """
    scope: dict[str, str] = dict(environ or {})
    values: dict[str, object] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i].strip()
        i += 1
        if not line or line.startswith("#"):
            continue
        match = _KEY_RE.match(line)
        if not match:
            logger.debug("Ignoring config line: %s", line)
            continue

        key, raw = match.group(1), match.group(2).strip()
        if raw.startswith("("):
            # Arrays may span several lines
            body = raw[1:]
            while ")" not in body:
                if i >= len(lines):
                    raise ConfigError(f"Unterminated array for {key}")
                body += " " + lines[i].strip()
                i += 1
            body = body[: body.rindex(")")]
            items = _split_value(body, scope)
            values[key] = items
            scope[key] = " ".join(items)
        else:
            value = " ".join(_split_value(raw, scope))
            values[key] = value
            scope[key] = value

    for old, new in KEY_ALIASES.items():
        if old in values and new not in values:
            values[new] = values[old]
    return values


def _to_bool(value: object, key: str) -> bool:
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"{key} must be true or false, got {value!r}")


def _to_int(value: object, key: str) -> int:
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {value!r}")


@dataclass(frozen=True)
class SystemPaths:
    """Fixed locations on the target machine."""

    unit_file: Path = Path("/etc/systemd/system/llama-server.service")
    server_binary: Path = Path("/usr/local/bin/llama-server")
    nginx_site: Path = Path("/etc/nginx/sites-available/llama-server")
    nginx_enabled: Path = Path("/etc/nginx/sites-enabled/llama-server")
    htpasswd: Path = Path("/etc/nginx/.htpasswd")
    ssl_dir: Path = Path("/etc/nginx/ssl")
    nginx_access_log: Path = Path("/var/log/nginx/llama-access.log")
    nginx_error_log: Path = Path("/var/log/nginx/llama-error.log")
    cloudflared_config: Path = Path("/etc/cloudflared/config.yml")
    os_release: Path = Path("/etc/os-release")
    rocm_root: Path = Path("/opt/rocm")
    vulkan_header: Path = Path("/usr/include/vulkan/vulkan.h")
    drm_dir: Path = Path("/sys/class/drm")

    @property
    def ssl_certificate(self) -> Path:
        return self.ssl_dir / "llama-server.crt"

    @property
    def ssl_certificate_key(self) -> Path:
        return self.ssl_dir / "llama-server.key"

    @property
    def rocm_sdk_marker(self) -> Path:
        return self.rocm_root / "lib" / "cmake" / "hip" / "hip-config.cmake"


@dataclass
class Settings:
    """Typed view of ``config.env``.

    Field names are the lower-cased settings keys (``SERVER_PORT`` ->
    ``server_port``).
    """

    gpu_backend: str = "rocm"
    model_name: str = "qwen2.5-7b-instruct-q4_k_m.gguf"
    model_url: str = ""
    install_dir: Path = Path("/opt/llama-server")
    server_host: str = "127.0.0.1"
    server_port: int = 8080
    server_threads: int = 8
    gpu_layers: int = 99
    context_size: int = 8192
    parallel_requests: int = 4
    max_memory: str = "24G"
    cpu_quota: str = "800%"
    users: list[str] = field(default_factory=list)

    setup_nginx: bool = True
    nginx_port: int = 8443
    nginx_server_name: str = "localhost"
    rate_limit: str = "10r/s"
    rate_limit_burst: int = 20

    setup_cloudflare: bool = False
    tunnel_name: str = "llama-server"
    tunnel_hostname: str = ""

    rocm_version: str = "6.2"
    ubuntu_codename: str = "noble"
    hsa_gfx_version: str = "11.0.0"
    gpu_target: str = "gfx1103"
    cpu_arch: str = "native"
    build_type: str = "Release"
    build_jobs: int = field(default_factory=lambda: os.cpu_count() or 1)

    skip_runtime_install: bool = False
    skip_build: bool = False
    skip_model_download: bool = False

    # Answers used when running without a terminal
    assume_yes: bool = False
    reinstall_runtime: bool = False
    reclone_source: bool = False
    redownload_model: bool = False
    reconfigure_service: bool = False
    existing_user_action: str = "skip"

    # Not settings keys: where the file came from and everything it defined
    source: Path | None = field(default=None, compare=False)
    base_dir: Path = field(default_factory=Path.cwd, compare=False)
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    _INTERNAL = ("source", "base_dir", "raw")

    @classmethod
    def from_mapping(
        cls,
        values: Mapping[str, object],
        source: Path | None = None,
        base_dir: Path | None = None,
    ) -> "Settings":
        """Build Settings from parsed ``KEY -> value`` pairs; unknown keys are kept in ``raw``."""
        kwargs: dict[str, object] = {}
        defaults = cls()
        for f in fields(cls):
            if f.name in cls._INTERNAL:
                continue
            key = f.name.upper()
            if key not in values:
                continue
            value = values[key]
            default = getattr(defaults, f.name)
            if isinstance(default, bool):
                kwargs[f.name] = _to_bool(value, key)
            elif isinstance(default, int):
                kwargs[f.name] = _to_int(value, key)
            elif isinstance(default, list):
                if isinstance(value, list):
                    kwargs[f.name] = list(value)
                else:
                    kwargs[f.name] = str(value).split()
            elif isinstance(default, Path):
                kwargs[f.name] = Path(str(value))
            else:
                kwargs[f.name] = str(value).strip()

        settings = cls(**kwargs)
        settings.gpu_backend = settings.gpu_backend.lower()
        settings.existing_user_action = settings.existing_user_action.lower()
        settings.source = source
        settings.base_dir = base_dir or (source.parent if source else Path.cwd())
        settings.raw = dict(values)
        return settings

    @classmethod
    def from_file(cls, path: Path, environ: Mapping[str, str] | None = None) -> "Settings":
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ConfigError(f"Configuration file not found: {path}")
        except OSError as e:
            raise ConfigError(f"Cannot read configuration file {path}: {e}")
        values = parse_env_file(text, environ if environ is not None else os.environ)
        return cls.from_mapping(values, source=path.resolve())

    # Derived locations

    @property
    def models_dir(self) -> Path:
        return self.install_dir / "models"

    @property
    def model_path(self) -> Path:
        return self.models_dir / self.model_name

    @property
    def logs_dir(self) -> Path:
        return self.install_dir / "logs"

    @property
    def server_log(self) -> Path:
        return self.logs_dir / "server.log"

    @property
    def error_log(self) -> Path:
        return self.logs_dir / "error.log"

    @property
    def source_dir(self) -> Path:
        return self.base_dir / "llama.cpp"

    @property
    def built_binary(self) -> Path:
        return self.source_dir / "build" / "bin" / "llama-server"

    @property
    def deployment_log(self) -> Path:
        return self.base_dir / "deployment.log"

    @property
    def backup_dir(self) -> Path:
        return self.base_dir / "backups"

    @property
    def health_url(self) -> str:
        return f"http://{self.server_host}:{self.server_port}/health"

    @property
    def backend_label(self) -> str:
        return "ROCm" if self.gpu_backend == "rocm" else "Vulkan"

    def validate(self) -> None:
        """Check every value; all problems are reported together.

        Raises:
            ConfigError: If any value is invalid.
        """
        problems = []

        if self.gpu_backend not in BACKENDS:
            problems.append(
                f"GPU_BACKEND must be one of {', '.join(BACKENDS)}, got {self.gpu_backend!r}"
            )

        for key in ("server_port", "nginx_port"):
            port = getattr(self, key)
            if not 1 <= port <= 65535:
                problems.append(f"{key.upper()} must be between 1 and 65535, got {port}")
        if self.setup_nginx and self.server_port == self.nginx_port:
            problems.append("SERVER_PORT and NGINX_PORT must differ")

        for key in (
            "server_threads",
            "context_size",
            "parallel_requests",
            "build_jobs",
            "rate_limit_burst",
        ):
            if getattr(self, key) < 1:
                problems.append(f"{key.upper()} must be a positive integer")
        if self.gpu_layers < 0:
            problems.append("GPU_LAYERS cannot be negative")

        if not _RATE_RE.match(self.rate_limit):
            problems.append(f"RATE_LIMIT must look like '10r/s' or '60r/m', got {self.rate_limit!r}")

        if not self.model_name or "/" in self.model_name:
            problems.append("MODEL_NAME must be a file name, not a path")
        if not self.skip_model_download and not self.model_url:
            problems.append("MODEL_URL is required unless SKIP_MODEL_DOWNLOAD=true")

        if self.setup_nginx and not self.users:
            problems.append("USERS must list at least one user when SETUP_NGINX=true")
        for user in self.users:
            if not user or ":" in user or any(c.isspace() for c in user):
                problems.append(f"Invalid user name: {user!r}")

        if self.existing_user_action not in USER_ACTIONS:
            problems.append(
                f"EXISTING_USER_ACTION must be one of {', '.join(USER_ACTIONS)}, "
                f"got {self.existing_user_action!r}"
            )

        if problems:
            raise ConfigError("Invalid configuration", problems)

    def apply_to_environ(self, environ: dict | None = None) -> None:
        """Export every key from the file into the process environment."""
        target = os.environ if environ is None else environ
        for key, value in self.raw.items():
            target[key] = " ".join(value) if isinstance(value, list) else str(value)

    def prompt_answers(self) -> dict[str, object]:
        """Answers for a NonInteractivePrompter."""
        return {
            "continue_deployment": self.assume_yes,
            "continue_os_version": self.assume_yes,
            "reinstall_runtime": self.reinstall_runtime,
            "reclone_source": self.reclone_source,
            "redownload_model": self.redownload_model,
            "reconfigure_service": self.reconfigure_service,
            "existing_user_action": self.existing_user_action,
            "tunnel_hostname": self.tunnel_hostname,
        }


def resolve_config_path(path: str | Path | None = None, environ: Mapping[str, str] | None = None) -> Path:
    environ = os.environ if environ is None else environ
    if path:
        return Path(path)
    if environ.get(CONFIG_ENV_VAR):
        return Path(environ[CONFIG_ENV_VAR])
    return Path.cwd() / DEFAULT_CONFIG_NAME


def load_settings(
    path: str | Path | None = None,
    required: bool = True,
    validate: bool = True,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Locate, parse, validate and export the settings file.

    Args:
        path: Explicit file; otherwise ``$LLAMA_DEPLOY_CONFIG`` or ``./config.env``.
        required: Raise when the file is missing; otherwise return defaults.
        validate: Run Settings.validate().
        environ: Environment used for variable expansion.

    Raises:
        ConfigError: Missing (when required) or invalid settings.
    """
    config_path = resolve_config_path(path, environ)
    if not config_path.exists():
        if required:
            raise ConfigError(f"Configuration file not found: {config_path}")
        logger.debug("No configuration at %s, using defaults", config_path)
        return Settings(base_dir=config_path.parent.resolve())

    settings = Settings.from_file(config_path, environ)
    if validate:
        settings.validate()
    settings.apply_to_environ()
    logger.debug("Configuration loaded from %s", config_path)
    return settings
