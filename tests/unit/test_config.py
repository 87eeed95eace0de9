"""Unit tests for configuration loading and environment overrides."""

import pytest

from codexdock.config import ConfigError, load_config, parse_port, resolve_settings


class TestLoadConfig:

    def test_missing_file_returns_empty(self, tmp_path):
        assert load_config(str(tmp_path / "nope.yaml")) == {}

    def test_empty_file_returns_empty(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_config(str(path)) == {}

    def test_yaml_is_parsed(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("server:\n  port: 9000\napp_server:\n  command: /opt/codex\n")
        assert load_config(str(path)) == {"server": {"port": 9000}, "app_server": {"command": "/opt/codex"}}


class TestParsePort:

    @pytest.mark.parametrize("value,expected", [(None, None), ("1", 1), ("65535", 65535)])
    def test_valid(self, value, expected):
        assert parse_port(value) == expected

    @pytest.mark.parametrize("value", ["0", "65536", "abc", ""])
    def test_invalid(self, value):
        with pytest.raises(ConfigError, match="Invalid PORT"):
            parse_port(value)


class TestResolveSettings:

    def test_defaults(self, tmp_path):
        settings = resolve_settings({}, env={}, cwd=str(tmp_path))

        assert settings.host == "127.0.0.1"
        assert settings.port == 8787
        assert settings.data_dir == str((tmp_path / "data").resolve())
        assert settings.repo_file == "prd.json"
        assert settings.refresh_delay_seconds == pytest.approx(0.6)
        assert settings.app_server.command == "codex"

    def test_env_overrides_config(self, tmp_path):
        config = {"server": {"host": "0.0.0.0", "port": 9000}}
        env = {"HOST": "10.0.0.1", "PORT": "9100", "CODEXDOCK_DATA_DIR": "state"}

        settings = resolve_settings(config, env=env, cwd=str(tmp_path))

        assert settings.host == "10.0.0.1"
        assert settings.port == 9100
        assert settings.data_dir == str((tmp_path / "state").resolve())

    def test_codexdock_host_fallback(self, tmp_path):
        settings = resolve_settings({}, env={"CODEXDOCK_HOST": "::1"}, cwd=str(tmp_path))
        assert settings.host == "::1"

    def test_config_values_used_without_env(self, tmp_path):
        config = {
            "server": {"host": "0.0.0.0", "port": 9000},
            "thread_list": {"refresh_delay_ms": 250},
            "app_server": {"request_timeout_seconds": 5},
        }

        settings = resolve_settings(config, env={}, cwd=str(tmp_path))

        assert settings.host == "0.0.0.0"
        assert settings.port == 9000
        assert settings.refresh_delay_seconds == pytest.approx(0.25)
        assert settings.app_server.request_timeout_seconds == 5

    @pytest.mark.parametrize("environment,expected", [
        ("development", "dev.json"),
        ("test", "dev.json"),
        ("production", "prd.json"),
    ])
    def test_repo_file_follows_environment(self, tmp_path, environment, expected):
        settings = resolve_settings({}, env={"CODEXDOCK_ENV": environment}, cwd=str(tmp_path))
        assert settings.repo_file == expected

    def test_explicit_repo_file_wins(self, tmp_path):
        config = {"paths": {"repo_file": "custom.json"}}
        settings = resolve_settings(config, env={"CODEXDOCK_ENV": "development"}, cwd=str(tmp_path))
        assert settings.repo_file == "custom.json"

    def test_invalid_port_env_raises(self, tmp_path):
        with pytest.raises(ConfigError):
            resolve_settings({}, env={"PORT": "70000"}, cwd=str(tmp_path))
