"""Tests for tunnel config files and environment settings."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from socket2me.core.config import (
    ClientConfig,
    LocalConfig,
    SessionSettings,
    clear_settings,
    get_settings,
    load_client_config,
    load_config_from_file,
)
from socket2me.core.exceptions import ConfigurationError

YAML_CONFIG = """\
username: alice
key: s3cret
server: socket2me.io
local:
  protocol: http
  host: localhost
  port: 3000
  allowed_paths:
    - ^/webhooks/
"""

TOML_CONFIG = """\
username = "bob"
token = "t0ken"
server = "localhost:4000"

[local]
protocol = "https"
host = "127.0.0.1"
port = 8443

[local.ssl]
verify = false
"""


def _write(tmp_path: Path, name: str, content: str) -> Path:
    path = tmp_path / name
    path.write_text(content, encoding="utf-8")
    return path


def _local(**overrides) -> dict:
    local = {"protocol": "http", "host": "localhost", "port": 3000}
    local.update(overrides)
    return local


class TestLoadConfigFromFile:
    """Test raw config file parsing."""

    def test_yaml(self, tmp_path: Path) -> None:
        data = load_config_from_file(_write(tmp_path, "client.yml", YAML_CONFIG))
        assert data["username"] == "alice"
        assert data["local"]["allowed_paths"] == ["^/webhooks/"]

    def test_toml(self, tmp_path: Path) -> None:
        data = load_config_from_file(_write(tmp_path, "client.toml", TOML_CONFIG))
        assert data["local"]["port"] == 8443

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config_from_file(tmp_path / "nope.yml")

    def test_unsupported_suffix(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="Unsupported"):
            load_config_from_file(_write(tmp_path, "client.ini", "x=1"))

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config_from_file(_write(tmp_path, "client.yml", "local: [unclosed"))

    def test_top_level_must_be_mapping(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="mapping"):
            load_config_from_file(_write(tmp_path, "client.yml", "- a\n- b\n"))


class TestLoadClientConfig:
    """Test validated tunnel config loading."""

    def test_yaml_with_key_alias(self, tmp_path: Path) -> None:
        """Test the ``key`` field fills the token."""
        config = load_client_config(_write(tmp_path, "client.yml", YAML_CONFIG))
        assert config.username == "alice"
        assert config.token == "s3cret"
        assert config.local.base_url == "http://localhost:3000"
        assert config.local.allowed_paths == ["^/webhooks/"]

    def test_toml_with_ssl(self, tmp_path: Path) -> None:
        config = load_client_config(_write(tmp_path, "client.toml", TOML_CONFIG))
        assert config.token == "t0ken"
        assert config.local.protocol == "https"
        assert config.local.ssl.verify is False
        assert config.local.allowed_paths == []

    def test_missing_file_is_configuration_error(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            load_client_config(tmp_path / "client.yml")

    def test_missing_field_names_location(self, tmp_path: Path) -> None:
        content = YAML_CONFIG.replace("  port: 3000\n", "")
        with pytest.raises(ConfigurationError) as exc_info:
            load_client_config(_write(tmp_path, "client.yml", content))
        assert "local.port" in exc_info.value.message

    def test_bad_allowed_path_regex(self, tmp_path: Path) -> None:
        content = YAML_CONFIG.replace("^/webhooks/", "([bad")
        with pytest.raises(ConfigurationError, match="allowed_paths"):
            load_client_config(_write(tmp_path, "client.yml", content))

    def test_token_not_in_repr(self, tmp_path: Path) -> None:
        config = load_client_config(_write(tmp_path, "client.yml", YAML_CONFIG))
        assert "s3cret" not in repr(config)


class TestClientConfig:
    """Test derived tunnel properties."""

    def test_production_server_uses_wss_subdomain(self) -> None:
        config = ClientConfig(username="alice", key="k", server="socket2me.io", local=_local())
        assert config.server_host == "alice.socket2me.io"
        assert config.is_development_server is False
        assert config.websocket_url == "wss://alice.socket2me.io/ws"
        assert config.public_url == "https://alice.socket2me.io/"

    def test_server_with_port_uses_plain_ws(self) -> None:
        config = ClientConfig(username="alice", key="k", server="lvh.me:3001", local=_local())
        assert config.is_development_server is True
        assert config.websocket_url == "ws://alice.lvh.me:3001/ws"

    def test_invalid_username(self) -> None:
        with pytest.raises(Exception):
            ClientConfig(username="not valid!", key="k", server="s.io", local=_local())

    def test_null_allowed_paths_means_all(self) -> None:
        local = LocalConfig(**_local(allowed_paths=None))
        assert local.allowed_paths == []
        assert local.build_allowlist().allows_everything is True

    def test_port_range(self) -> None:
        with pytest.raises(Exception):
            LocalConfig(**_local(port=70000))


class TestSessionSettings:
    """Test SessionSettings defaults and env overrides."""

    def test_default_values(self) -> None:
        """Test default values."""
        settings = SessionSettings()
        assert settings.heartbeat_interval == 15.0
        assert settings.initial_backoff == 1.0
        assert settings.max_backoff == 30.0
        assert settings.drain_timeout == 5.0
        assert settings.local_read_timeout is None

    def test_env_override_heartbeat_interval(self) -> None:
        """Test SOCKET2ME_HEARTBEAT_INTERVAL env var."""
        with patch.dict(os.environ, {"SOCKET2ME_HEARTBEAT_INTERVAL": "5"}):
            settings = SessionSettings()
            assert settings.heartbeat_interval == 5.0

    def test_env_override_backoff(self) -> None:
        with patch.dict(
            os.environ,
            {"SOCKET2ME_INITIAL_BACKOFF": "0.5", "SOCKET2ME_MAX_BACKOFF": "10"},
        ):
            settings = SessionSettings()
            assert settings.initial_backoff == 0.5
            assert settings.max_backoff == 10.0

    def test_invalid_env_var_rejected(self) -> None:
        with patch.dict(os.environ, {"SOCKET2ME_HEARTBEAT_INTERVAL": "0"}):
            with pytest.raises(Exception):
                SessionSettings()


class TestGetSettings:
    """Test get_settings global function."""

    def test_get_settings_caches_instance(self) -> None:
        clear_settings()
        assert get_settings() is get_settings()
        clear_settings()

    def test_clear_settings_resets_cache(self) -> None:
        clear_settings()
        settings1 = get_settings()
        clear_settings()
        settings2 = get_settings()
        assert settings1 is not settings2
        clear_settings()

    def test_get_settings_with_env_override(self) -> None:
        """Test get_settings respects environment variables."""
        with patch.dict(os.environ, {"SOCKET2ME_DRAIN_TIMEOUT": "1.5"}):
            clear_settings()
            assert get_settings().drain_timeout == 1.5

        clear_settings()
