"""
Tests for llamadeploy/templates.py - unit, site and tunnel renderers.
"""

import pytest
import yaml

from llamadeploy.templates import (
    PLACEHOLDER_RE,
    PROFILE_MARKER,
    NginxSite,
    ServerUnit,
    TunnelConfig,
    _check_rendered,
    backend_environment,
    rocm_profile_block,
)


class TestServerUnit:
    def test_identical_settings_render_identical_bytes(self, settings, system_paths):
        first = ServerUnit.from_settings(settings, "llama", system_paths).render()
        second = ServerUnit.from_settings(settings, "llama", system_paths).render()
        assert first.encode() == second.encode()

    def test_sections_and_user(self, settings, system_paths):
        text = ServerUnit.from_settings(settings, "llama", system_paths).render()
        assert text.startswith("[Unit]\nDescription=llama.cpp Server with ROCm GPU Acceleration\n")
        assert "[Service]" in text
        assert "User=llama\nGroup=llama\n" in text
        assert f"WorkingDirectory={settings.install_dir}\n" in text
        assert text.endswith("[Install]\nWantedBy=multi-user.target\n")

    def test_exec_start_one_flag_per_line(self, settings, system_paths):
        text = ServerUnit.from_settings(settings, "llama", system_paths).render()
        assert f"ExecStart={system_paths.server_binary} \\\n" in text
        assert f"  --model {settings.model_path} \\\n" in text
        assert "  --port 8080 \\\n" in text
        assert "  --n-gpu-layers 99 \\\n" in text
        assert "  --ctx-size 8192 \\\n" in text
        assert "  --parallel 4 \\\n" in text
        assert "  --metrics\n" in text

    def test_restart_limits_and_logs(self, settings, system_paths):
        text = ServerUnit.from_settings(settings, "llama", system_paths).render()
        assert "Restart=always\nRestartSec=10\n" in text
        assert "MemoryMax=24G\n" in text
        assert "CPUQuota=800%\n" in text
        assert "NoNewPrivileges=true\n" in text
        assert f"ReadWritePaths={settings.logs_dir}\n" in text
        assert f"StandardOutput=append:{settings.server_log}\n" in text
        assert f"StandardError=append:{settings.error_log}\n" in text

    def test_rocm_environment(self, settings, system_paths):
        text = ServerUnit.from_settings(settings, "llama", system_paths).render()
        assert 'Environment="HSA_OVERRIDE_GFX_VERSION=11.0.0"' in text
        assert 'Environment="HSA_ENABLE_SDMA=0"' in text
        assert 'Environment="LD_LIBRARY_PATH=/opt/rocm/lib"' in text

    def test_vulkan_environment(self, settings, system_paths):
        settings.gpu_backend = "vulkan"
        text = ServerUnit.from_settings(settings, "llama", system_paths).render()
        assert "Vulkan GPU Acceleration" in text
        assert "HSA_OVERRIDE_GFX_VERSION" not in text
        assert 'Environment="GGML_VK_VISIBLE_DEVICES=0"' in text

    def test_setting_change_changes_text(self, settings, system_paths):
        before = ServerUnit.from_settings(settings, "llama", system_paths).render()
        settings.context_size = 4096
        after = ServerUnit.from_settings(settings, "llama", system_paths).render()
        assert before != after
        assert "--ctx-size 4096" in after

    def test_empty_limits_are_omitted(self, settings, system_paths):
        settings.max_memory = ""
        settings.cpu_quota = ""
        text = ServerUnit.from_settings(settings, "llama", system_paths).render()
        assert "MemoryMax" not in text
        assert "CPUQuota" not in text


class TestBackendEnvironment:
    def test_rocm_uses_gfx_version(self, settings):
        settings.hsa_gfx_version = "11.0.2"
        assert ("HSA_OVERRIDE_GFX_VERSION", "11.0.2") in backend_environment(settings)


class TestNginxSite:
    def test_no_placeholders(self, settings, system_paths):
        text = NginxSite.from_settings(settings, system_paths).render()
        assert PLACEHOLDER_RE.search(text) is None

    def test_values_are_rendered(self, settings, system_paths):
        settings.nginx_server_name = "llama.example.com"
        settings.rate_limit = "5r/s"
        settings.rate_limit_burst = 7
        text = NginxSite.from_settings(settings, system_paths).render()
        assert "server 127.0.0.1:8080;" in text
        assert "listen 8443 ssl http2;" in text
        assert "server_name llama.example.com;" in text
        assert "rate=5r/s;" in text
        assert "burst=7 nodelay;" in text
        assert f"auth_basic_user_file {system_paths.htpasswd};" in text
        assert f"ssl_certificate {system_paths.ssl_certificate};" in text

    def test_locations(self, settings, system_paths):
        text = NginxSite.from_settings(settings, system_paths).render()
        assert "location / {" in text
        assert "proxy_buffering off;" in text
        assert "location /health {" in text
        health = text.split("location /health {", 1)[1].split("}", 1)[0]
        assert "auth_basic off;" in health
        assert "location /metrics {" in text

    def test_braces_balanced(self, settings, system_paths):
        text = NginxSite.from_settings(settings, system_paths).render()
        assert text.count("{") == text.count("}")


class TestCheckRendered:
    def test_leftover_placeholder_raises(self):
        with pytest.raises(ValueError, match="__SERVER_PORT__"):
            _check_rendered("listen __SERVER_PORT__;", "nginx site")

    def test_clean_text_passes(self):
        assert _check_rendered("listen 8443;", "nginx site") == "listen 8443;"


class TestTunnelConfig:
    def test_yaml_structure(self):
        config = TunnelConfig("abc-123", "llama.example.com", 8443)
        data = yaml.safe_load(config.render())
        assert data["tunnel"] == "abc-123"
        assert data["credentials-file"] == "/root/.cloudflared/abc-123.json"
        assert data["ingress"][0] == {
            "hostname": "llama.example.com",
            "service": "https://localhost:8443",
            "originRequest": {"noTLSVerify": True},
        }
        assert data["ingress"][-1] == {"service": "http_status:404"}


class TestProfileBlock:
    def test_contains_marker_and_exports(self, settings):
        block = rocm_profile_block(settings)
        assert PROFILE_MARKER in block
        assert "export HSA_OVERRIDE_GFX_VERSION=11.0.0" in block
        assert "export HSA_ENABLE_SDMA=0" in block
