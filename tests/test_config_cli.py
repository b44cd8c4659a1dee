"""
Configuration and Command Line Tests
"""

import pytest

from livemd.cli import build_parser, config_from_args, main
from livemd.engine import ServerConfig, is_loopback


class TestServerConfig:

    def test_defaults(self):
        config = ServerConfig()
        assert config.content_dir == "doc"
        assert config.port == 3000
        assert config.server_url == "http://127.0.0.1:3000/"
        assert config.storage.backend_type == "memory"
        assert config.pipeline.generate_index is True

    @pytest.mark.parametrize("host", ["0.0.0.0", "192.168.1.10", "example.com"])
    def test_non_loopback_hosts_rejected(self, host):
        with pytest.raises(ValueError):
            ServerConfig(host=host)

    @pytest.mark.parametrize("host", ["127.0.0.1", "127.0.0.2", "::1", "localhost"])
    def test_loopback_hosts(self, host):
        assert is_loopback(host)

    def test_ipv6_url(self):
        assert ServerConfig(host="::1", port=8000).server_url == "http://[::1]:8000/"

    def test_output_dir_selects_file_backend(self, tmp_path):
        config = ServerConfig(output_dir=str(tmp_path / "_dist"))
        assert config.storage.backend_type == "file"
        assert config.storage.output_dir == str(tmp_path / "_dist")

    def test_output_dir_cannot_be_the_content_dir(self, tmp_path):
        with pytest.raises(ValueError):
            ServerConfig(content_dir=str(tmp_path), output_dir=str(tmp_path))

    def test_invalid_values(self):
        with pytest.raises(ValueError):
            ServerConfig(port=70000)
        with pytest.raises(ValueError):
            ServerConfig(debounce_ms=-1)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("LIVEMD_CONTENT_DIR", "notes")
        monkeypatch.setenv("LIVEMD_PORT", "4000")
        monkeypatch.setenv("LIVEMD_DEBOUNCE_MS", "250")
        config = ServerConfig.from_env(port=5000)
        assert config.content_dir == "notes"
        assert config.port == 5000
        assert config.watch.debounce_ms == 250


class TestCommandLine:

    def test_flags(self, monkeypatch):
        monkeypatch.delenv("LIVEMD_PORT", raising=False)
        args = build_parser().parse_args([
            "notes", "--port", "8080", "--no-browser", "--no-index", "--log-level", "debug",
        ])
        config = config_from_args(args)
        assert config.content_dir == "notes"
        assert config.port == 8080
        assert config.open_browser is False
        assert config.generate_index is False
        assert args.log_level == "DEBUG"

    def test_defaults_come_from_environment(self, monkeypatch):
        monkeypatch.setenv("LIVEMD_PORT", "4100")
        config = config_from_args(build_parser().parse_args([]))
        assert config.port == 4100
        assert config.open_browser is True

    def test_invalid_host_exits_with_status_2(self):
        assert main(["--host", "0.0.0.0", "--no-browser"]) == 2
