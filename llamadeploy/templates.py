"""
Renderers for the files the deployment writes.

Each file is described by a dataclass whose fields are filled from Settings and
serialized by ``render()``. Output is a pure function of the fields, so running
the deployment twice with the same settings produces byte-identical files.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from llamadeploy.config import Settings, SystemPaths

PLACEHOLDER_RE = re.compile(r"__[A-Z][A-Z0-9_]*__")

PROFILE_MARKER = "# llama-server ROCm environment"


def _check_rendered(text: str, what: str) -> str:
    leftover = PLACEHOLDER_RE.findall(text)
    if leftover:
        raise ValueError(f"Unsubstituted placeholders in {what}: {', '.join(sorted(set(leftover)))}")
    return text


def _env_line(key: str, value: str) -> str:
    # systemd splits on whitespace unless the assignment is quoted
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'Environment="{key}={escaped}"'


def backend_environment(settings: Settings) -> list[tuple[str, str]]:
    """Environment the inference binary needs for the configured backend."""
    if settings.gpu_backend == "rocm":
        return [
            ("HSA_OVERRIDE_GFX_VERSION", settings.hsa_gfx_version),
            ("HSA_ENABLE_SDMA", "0"),
            ("PATH", "/opt/rocm/bin:/usr/local/bin:/usr/bin:/bin"),
            ("LD_LIBRARY_PATH", "/opt/rocm/lib"),
        ]
    return [
        ("PATH", "/usr/local/bin:/usr/bin:/bin"),
        ("GGML_VK_VISIBLE_DEVICES", "0"),
    ]


def server_arguments(settings: Settings) -> list[str]:
    return [
        "--model", str(settings.model_path),
        "--host", settings.server_host,
        "--port", str(settings.server_port),
        "--threads", str(settings.server_threads),
        "--n-gpu-layers", str(settings.gpu_layers),
        "--ctx-size", str(settings.context_size),
        "--parallel", str(settings.parallel_requests),
        "--metrics",
    ]


@dataclass
class ServerUnit:
    """The llama-server systemd unit."""

    description: str
    user: str
    working_dir: Path
    executable: Path
    arguments: list[str]
    environment: list[tuple[str, str]] = field(default_factory=list)
    memory_max: str = ""
    cpu_quota: str = ""
    read_write_paths: list[Path] = field(default_factory=list)
    stdout_log: Path | None = None
    stderr_log: Path | None = None
    restart: str = "always"
    restart_sec: int = 10

    @classmethod
    def from_settings(
        cls, settings: Settings, user: str, paths: SystemPaths | None = None
    ) -> "ServerUnit":
        paths = paths or SystemPaths()
        return cls(
            description=f"llama.cpp Server with {settings.backend_label} GPU Acceleration",
            user=user,
            working_dir=settings.install_dir,
            executable=paths.server_binary,
            arguments=server_arguments(settings),
            environment=backend_environment(settings),
            memory_max=settings.max_memory,
            cpu_quota=settings.cpu_quota,
            read_write_paths=[settings.logs_dir],
            stdout_log=settings.server_log,
            stderr_log=settings.error_log,
        )

    def exec_start(self) -> str:
        # One flag and its value per continuation line
        parts = [str(self.executable)]
        args = list(self.arguments)
        while args:
            flag = args.pop(0)
            if args and not args[0].startswith("--"):
                flag = f"{flag} {args.pop(0)}"
            parts.append(f"  {flag}")
        return " \\\n".join(parts)

    def render(self) -> str:
        lines = [
            "[Unit]",
            f"Description={self.description}",
            "After=network.target",
            "Documentation=https://github.com/ggerganov/llama.cpp",
            "",
            "[Service]",
            "Type=simple",
            f"User={self.user}",
            f"Group={self.user}",
            f"WorkingDirectory={self.working_dir}",
            "",
        ]
        lines.extend(_env_line(key, value) for key, value in self.environment)
        lines.append("")
        lines.append(f"ExecStart={self.exec_start()}")
        lines.append("")
        lines.append(f"Restart={self.restart}")
        lines.append(f"RestartSec={self.restart_sec}")
        lines.append("")
        if self.memory_max:
            lines.append(f"MemoryMax={self.memory_max}")
        if self.cpu_quota:
            lines.append(f"CPUQuota={self.cpu_quota}")
        lines.extend(
            [
                "NoNewPrivileges=true",
                "PrivateTmp=true",
                "ProtectSystem=strict",
                "ProtectHome=read-only",
            ]
        )
        if self.read_write_paths:
            lines.append("ReadWritePaths=" + " ".join(str(p) for p in self.read_write_paths))
        lines.append("")
        if self.stdout_log:
            lines.append(f"StandardOutput=append:{self.stdout_log}")
        if self.stderr_log:
            lines.append(f"StandardError=append:{self.stderr_log}")
        lines.extend(["", "[Install]", "WantedBy=multi-user.target", ""])
        return _check_rendered("\n".join(lines), "systemd unit")


@dataclass
class NginxSite:
    """The reverse-proxy site: TLS, basic auth, rate limits, three locations."""

    upstream_host: str
    upstream_port: int
    listen_port: int
    server_name: str
    rate_limit: str
    rate_limit_burst: int
    ssl_certificate: Path
    ssl_certificate_key: Path
    htpasswd: Path
    access_log: Path
    error_log: Path
    keepalive: int = 32
    connection_limit: int = 10
    proxy_timeout: str = "300s"

    @classmethod
    def from_settings(cls, settings: Settings, paths: SystemPaths | None = None) -> "NginxSite":
        paths = paths or SystemPaths()
        return cls(
            upstream_host=settings.server_host,
            upstream_port=settings.server_port,
            listen_port=settings.nginx_port,
            server_name=settings.nginx_server_name,
            rate_limit=settings.rate_limit,
            rate_limit_burst=settings.rate_limit_burst,
            ssl_certificate=paths.ssl_certificate,
            ssl_certificate_key=paths.ssl_certificate_key,
            htpasswd=paths.htpasswd,
            access_log=paths.nginx_access_log,
            error_log=paths.nginx_error_log,
        )

    def render(self) -> str:
        text = f"""upstream llama_backend {{
    server {self.upstream_host}:{self.upstream_port};
    keepalive {self.keepalive};
}}

# Rate limiting zones
limit_req_zone $binary_remote_addr zone=api_limit:10m rate={self.rate_limit};
limit_conn_zone $binary_remote_addr zone=conn_limit:10m;

server {{
    listen {self.listen_port} ssl http2;
    server_name {self.server_name};

    ssl_certificate {self.ssl_certificate};
    ssl_certificate_key {self.ssl_certificate_key};
    ssl_protocols TLSv1.2 TLSv1.3;
    ssl_ciphers HIGH:!aNULL:!MD5;
    ssl_prefer_server_ciphers on;

    access_log {self.access_log};
    error_log {self.error_log};

    auth_basic "LLaMA Server Access";
    auth_basic_user_file {self.htpasswd};

    location / {{
        limit_req zone=api_limit burst={self.rate_limit_burst} nodelay;
        limit_conn conn_limit {self.connection_limit};

        proxy_pass http://llama_backend;
        proxy_http_version 1.1;

        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;

        # Long generations
        proxy_connect_timeout {self.proxy_timeout};
        proxy_send_timeout {self.proxy_timeout};
        proxy_read_timeout {self.proxy_timeout};

        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection "upgrade";

        # Streamed tokens must not wait for a full buffer
        proxy_buffering off;
    }}

    location /health {{
        proxy_pass http://llama_backend/health;
        auth_basic off;
        access_log off;
    }}

    location /metrics {{
        proxy_pass http://llama_backend/metrics;
    }}
}}
"""
        return _check_rendered(text, "nginx site")


@dataclass
class TunnelConfig:
    """cloudflared ``config.yml``."""

    tunnel_id: str
    hostname: str
    nginx_port: int
    credentials_dir: Path = Path("/root/.cloudflared")

    def to_dict(self) -> dict:
        return {
            "tunnel": self.tunnel_id,
            "credentials-file": str(self.credentials_dir / f"{self.tunnel_id}.json"),
            "ingress": [
                {
                    "hostname": self.hostname,
                    "service": f"https://localhost:{self.nginx_port}",
                    "originRequest": {"noTLSVerify": True},
                },
                {"service": "http_status:404"},
            ],
        }

    def render(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)


def rocm_profile_block(settings: Settings) -> str:
    """Shell profile lines exporting the ROCm environment."""
    return (
        f"\n{PROFILE_MARKER}\n"
        f"export HSA_OVERRIDE_GFX_VERSION={settings.hsa_gfx_version}\n"
        "export HSA_ENABLE_SDMA=0\n"
        "export PATH=/opt/rocm/bin:$PATH\n"
        "export LD_LIBRARY_PATH=/opt/rocm/lib:$LD_LIBRARY_PATH\n"
    )
