"""Configuration for wabridge.

Settings live in ~/.wabridge/config.yaml (or the file named by
WABRIDGE_CONFIG). Environment variables override file values so the
service can be deployed with nothing but env vars:

    PORT, HOST, SESSION_NAME, PAIRING_SECRET, DEFAULT_COUNTRY_CODE,
    LOG_LEVEL, WABRIDGE_STORE_BACKEND, WABRIDGE_STORE_PATH,
    GREEN_API_URL, GREEN_API_INSTANCE_ID, GREEN_API_TOKEN

Example config.yaml:

    session_name: whatsapp_session
    port: 3000
    store:
      backend: sqlite
      path: ~/.wabridge/credentials.db
    gateway:
      instance_id: "1101000001"
      api_token: "d75b3a66374942c5b3c019c698abc2067e151558acbd412345"
    reconnect:
      terminal_reasons: [logged_out, connection_replaced]
"""

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from wabridge.errors import ConfigError


def get_config_dir() -> Path:
    """Get the wabridge data directory."""
    return Path(os.environ.get("WABRIDGE_HOME", Path.home() / ".wabridge")).expanduser()


def get_config_path() -> Path:
    """Get the config file path."""
    override = os.environ.get("WABRIDGE_CONFIG")
    if override:
        return Path(override).expanduser()
    return get_config_dir() / "config.yaml"


class GatewayConfig(BaseModel):
    """Green API instance the transport drives."""
    api_url: str = "https://api.green-api.com"
    instance_id: str = ""
    api_token: str = ""
    poll_interval: float = Field(5.0, gt=0)
    query_timeout: float = Field(60.0, gt=0)
    max_poll_errors: int = Field(3, ge=1)

    def is_configured(self) -> bool:
        return bool(self.instance_id and self.api_token)


class StoreConfig(BaseModel):
    """Where the session credentials are persisted."""
    backend: Literal["file", "sqlite", "memory"] = "file"
    path: str = ""  # directory for "file", database file for "sqlite"

    def resolved_path(self) -> Path:
        if self.path:
            return Path(self.path).expanduser()
        if self.backend == "sqlite":
            return get_config_dir() / "credentials.db"
        return get_config_dir() / "sessions"


class ReconnectConfig(BaseModel):
    """Retry policy for the session lifecycle manager."""
    delay: float = Field(5.0, ge=0)           # after a recoverable close
    error_delay: float = Field(10.0, ge=0)    # after a failed connect attempt
    max_delay: float = Field(60.0, ge=0)
    max_consecutive_failures: int = Field(10, ge=1)
    terminal_reasons: list[str] = Field(default_factory=lambda: ["logged_out"])


class PairingConfig(BaseModel):
    """Administrative pairing endpoint."""
    secret: str = ""
    wait_timeout: float = Field(20.0, gt=0)
    poll_interval: float = Field(1.0, gt=0)


class Settings(BaseModel):
    """Top-level wabridge settings."""
    session_name: str = "whatsapp_session"
    host: str = "0.0.0.0"
    port: int = Field(3000, ge=1, le=65535)
    default_country_code: str = "966"
    log_level: str = "warning"
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    pairing: PairingConfig = Field(default_factory=PairingConfig)

    @property
    def data_dir(self) -> Path:
        return get_config_dir()


# env var -> dotted settings path
ENV_OVERRIDES: dict[str, str] = {
    "PORT": "port",
    "HOST": "host",
    "SESSION_NAME": "session_name",
    "PAIRING_SECRET": "pairing.secret",
    "DEFAULT_COUNTRY_CODE": "default_country_code",
    "LOG_LEVEL": "log_level",
    "WABRIDGE_STORE_BACKEND": "store.backend",
    "WABRIDGE_STORE_PATH": "store.path",
    "GREEN_API_URL": "gateway.api_url",
    "GREEN_API_INSTANCE_ID": "gateway.instance_id",
    "GREEN_API_TOKEN": "gateway.api_token",
}


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load the raw YAML configuration (empty if the file is missing)."""
    config_path = path or get_config_path()
    if not config_path.exists():
        return {}
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    return data


def _apply_env(data: dict[str, Any], environ: dict[str, str]) -> dict[str, Any]:
    for env_var, dotted in ENV_OVERRIDES.items():
        value = environ.get(env_var)
        if value is None or value == "":
            continue
        target = data
        *parents, leaf = dotted.split(".")
        for key in parents:
            node = target.get(key)
            if not isinstance(node, dict):
                node = {}
                target[key] = node
            target = node
        target[leaf] = value
    return data


def get_settings(
    path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> Settings:
    """Build Settings from the config file and environment.

    Raises:
        ConfigError: if the file is unreadable or a value fails validation.
    """
    data = _apply_env(load_config(path), dict(os.environ if environ is None else environ))
    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
