"""Configuration types with environment variable support.

The tunnel definition (credentials, relay server, local target) comes from
a YAML or TOML file. Runtime tunables can be overridden via environment
variables with the SOCKET2ME_ prefix.
Example: SOCKET2ME_HEARTBEAT_INTERVAL=5 sends a ping every 5 seconds.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from socket2me.core.exceptions import ConfigurationError
from socket2me.security.allowlist import PathAllowlist

DEFAULT_CONFIG_PATH = Path("config") / "client.yml"


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            data = tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")
    return data


class SSLConfig(BaseModel):
    """TLS options for the connection to the local server."""

    verify: bool | str = Field(
        default=True,
        description="Verify the local server's certificate. A string is used as a CA bundle path.",
    )


class LocalConfig(BaseModel):
    """The local server that receives forwarded requests."""

    protocol: Literal["http", "https"]
    host: str = Field(min_length=1)
    port: int = Field(ge=1, le=65535)
    allowed_paths: list[str] = Field(
        default_factory=list,
        description="Regex patterns a request path must match. Empty allows every path.",
    )
    ssl: SSLConfig = Field(default_factory=SSLConfig)

    @field_validator("allowed_paths", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("allowed_paths")
    @classmethod
    def _patterns_compile(cls, value: list[str]) -> list[str]:
        try:
            PathAllowlist(value)
        except ConfigurationError as e:
            raise ValueError(e.message) from e
        return value

    @property
    def base_url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"

    def build_allowlist(self) -> PathAllowlist:
        return PathAllowlist(self.allowed_paths)


class ClientConfig(BaseModel):
    """Tunnel definition: who we are, which relay, and where traffic goes."""

    username: str = Field(min_length=1, pattern=r"^[A-Za-z0-9][A-Za-z0-9-]*$")
    token: str = Field(
        min_length=1,
        repr=False,
        validation_alias=AliasChoices("key", "token"),
    )
    server: str = Field(min_length=1)
    local: LocalConfig

    @property
    def server_host(self) -> str:
        """Public hostname of this tunnel, e.g. ``alice.socket2me.io``."""
        return f"{self.username}.{self.server}"

    @property
    def is_development_server(self) -> bool:
        """An explicit port in ``server`` means a plaintext development relay."""
        return ":" in self.server

    @property
    def websocket_url(self) -> str:
        scheme = "ws" if self.is_development_server else "wss"
        return f"{scheme}://{self.server_host}/ws"

    @property
    def public_url(self) -> str:
        return f"https://{self.server_host}/"


def load_client_config(path: str | Path = DEFAULT_CONFIG_PATH) -> ClientConfig:
    """Load and validate the tunnel definition.

    Raises:
        ConfigurationError: If the file is missing, unreadable, or invalid
    """
    try:
        raw = load_config_from_file(path)
    except (FileNotFoundError, ValueError) as e:
        raise ConfigurationError(str(e)) from e

    try:
        return ClientConfig.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(f"Invalid config in {path}: {problems}") from e


class SessionSettings(BaseSettings):
    """Session timing configuration.

    All settings can be overridden via environment variables:
    - SOCKET2ME_HEARTBEAT_INTERVAL: Seconds between pings
    - SOCKET2ME_INITIAL_BACKOFF / SOCKET2ME_MAX_BACKOFF: Reconnect delay bounds
    - SOCKET2ME_DRAIN_TIMEOUT: Grace period for in-flight requests on shutdown
    - etc.
    """

    model_config = SettingsConfigDict(
        env_prefix="SOCKET2ME_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    heartbeat_interval: float = Field(
        default=15.0,
        gt=0,
        description="Heartbeat ping interval (seconds).",
    )
    initial_backoff: float = Field(
        default=1.0,
        gt=0,
        description="Reconnect delay after the first failure (seconds).",
    )
    max_backoff: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound for the reconnect delay (seconds).",
    )
    connect_timeout: float = Field(
        default=30.0,
        description="Relay connection timeout (seconds).",
    )
    auth_timeout: float = Field(
        default=30.0,
        description="Time to wait for the relay to accept our credentials (seconds).",
    )
    drain_timeout: float = Field(
        default=5.0,
        ge=0,
        description="Grace period for in-flight requests during shutdown (seconds).",
    )
    local_connect_timeout: float = Field(
        default=5.0,
        description="Connection timeout for the local server (seconds).",
    )
    local_read_timeout: float | None = Field(
        default=None,
        description="Read timeout for the local server (seconds). None for indefinite.",
    )
    local_write_timeout: float = Field(
        default=5.0,
        description="Write timeout for the local server (seconds).",
    )


_settings: SessionSettings | None = None


def get_settings() -> SessionSettings:
    """Get the global settings instance.

    The instance reads environment variables once and is cached for the
    lifetime of the process. Call clear_settings() to force a reload.
    """
    global _settings
    if _settings is None:
        _settings = SessionSettings()
    return _settings


def clear_settings() -> None:
    """Clear the cached settings. Useful for testing."""
    global _settings
    _settings = None
