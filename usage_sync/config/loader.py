"""
Configuration management and loading.

Handles client, server and logging settings from YAML plus environment
overrides.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from usage_sync.storage.db import DEFAULT_DB_PATH
from usage_sync.storage.repository import PersistenceMode

ENV_API_URL = "USAGE_SYNC_API_URL"
ENV_TOKEN = "USAGE_SYNC_TOKEN"

DEFAULT_CREDENTIALS_PATH = "~/.config/usage-sync/credentials.json"


@dataclass(frozen=True)
class ClientConfig:
    """Where and how the client talks to the server."""
    api_base_url: str = "http://localhost:8000"
    timeout_seconds: float = 10.0
    credentials_path: str = DEFAULT_CREDENTIALS_PATH

    def __post_init__(self):
        """Validate client values."""
        if not self.api_base_url.startswith(("http://", "https://")):
            raise ValueError("api_base_url must start with http:// or https://")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class ServerConfig:
    """Reconciliation server settings."""
    db_path: str = DEFAULT_DB_PATH
    persistence_mode: PersistenceMode = PersistenceMode.MERGE
    token_ttl_days: Optional[int] = 365
    high_cost_warning: Optional[float] = 1000.0

    def __post_init__(self):
        """Validate server values."""
        if self.token_ttl_days is not None and self.token_ttl_days <= 0:
            raise ValueError("token_ttl_days must be > 0")
        if self.high_cost_warning is not None and self.high_cost_warning <= 0:
            raise ValueError("high_cost_warning must be > 0")


@dataclass(frozen=True)
class LoggingConfig:
    """Log level and rendering."""
    level: str = "INFO"
    json: bool = False

    def __post_init__(self):
        if self.level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {self.level}")


@dataclass(frozen=True)
class SyncConfig:
    """Complete usage-sync configuration."""
    client: ClientConfig = field(default_factory=ClientConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def default_config() -> SyncConfig:
    """Configuration with every default plus environment overrides."""
    return _apply_env(SyncConfig())


def load_sync_config(path: Optional[str] = None) -> SyncConfig:
    """Load and validate configuration from a YAML file.

    Unknown keys are rejected so a typo never silently falls back to a
    default. Environment variables override the file.

    Args:
        path: Path to YAML configuration file; None for defaults only

    Returns:
        Validated SyncConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return default_config()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return default_config()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'client', 'server', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    client_data = _section(raw_config, 'client', {'api_base_url', 'timeout_seconds', 'credentials_path'})
    server_data = _section(raw_config, 'server', {'db_path', 'persistence_mode', 'token_ttl_days', 'high_cost_warning'})
    logging_data = _section(raw_config, 'logging', {'level', 'json'})

    client = ClientConfig(
        api_base_url=_get_str(client_data, 'api_base_url', 'client', ClientConfig.api_base_url).rstrip('/'),
        timeout_seconds=_get_number(client_data, 'timeout_seconds', 'client', ClientConfig.timeout_seconds),
        credentials_path=_get_str(client_data, 'credentials_path', 'client', ClientConfig.credentials_path),
    )

    mode_str = _get_str(server_data, 'persistence_mode', 'server', ServerConfig.persistence_mode.value)
    try:
        mode = PersistenceMode(mode_str.lower())
    except ValueError:
        valid_modes = [m.value for m in PersistenceMode]
        raise ValueError(f"'persistence_mode' in server must be one of: {valid_modes}")

    ttl = server_data.get('token_ttl_days', ServerConfig.token_ttl_days)
    if ttl is not None and (isinstance(ttl, bool) or not isinstance(ttl, int)):
        raise ValueError("'token_ttl_days' in server must be an integer or null")

    warning = server_data.get('high_cost_warning', ServerConfig.high_cost_warning)
    if warning is not None:
        warning = _get_number(server_data, 'high_cost_warning', 'server', ServerConfig.high_cost_warning)

    server = ServerConfig(
        db_path=_get_str(server_data, 'db_path', 'server', ServerConfig.db_path),
        persistence_mode=mode,
        token_ttl_days=ttl,
        high_cost_warning=warning,
    )

    json_output = logging_data.get('json', LoggingConfig.json)
    if not isinstance(json_output, bool):
        raise ValueError("'json' in logging must be true or false")
    logging_config = LoggingConfig(
        level=_get_str(logging_data, 'level', 'logging', LoggingConfig.level),
        json=json_output,
    )

    return _apply_env(SyncConfig(client=client, server=server, logging=logging_config))


def _apply_env(config: SyncConfig) -> SyncConfig:
    api_url = os.environ.get(ENV_API_URL)
    if api_url:
        config = replace(config, client=replace(config.client, api_base_url=api_url.rstrip('/')))
    return config


def _section(raw_config: Dict[str, Any], name: str, allowed_keys: set) -> Dict[str, Any]:
    """Return a validated config section; missing sections are empty."""
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _get_str(data: Dict[str, Any], key: str, path: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{key}' in {path} must be a non-empty string")
    return value


def _get_number(data: Dict[str, Any], key: str, path: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)
