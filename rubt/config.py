"""Configuration management for rubt.

Configuration is layered: model defaults, then a TOML file, then ``RUBT_*``
environment variables. The merged result is validated by the pydantic models
in :mod:`rubt.models`.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import toml

from rubt.exceptions import ConfigurationError
from rubt.logging_config import setup_logging
from rubt.models import Config

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "rubt.toml"

# Environment variable -> dotted config path
ENV_MAPPINGS: dict[str, str] = {
    # Network
    "RUBT_LISTEN_INTERFACE": "network.listen_interface",
    "RUBT_LISTEN_PORT_START": "network.listen_port_start",
    "RUBT_LISTEN_PORT_END": "network.listen_port_end",
    "RUBT_CONNECTION_TIMEOUT": "network.connection_timeout",
    "RUBT_SOCKET_TIMEOUT": "network.socket_timeout",
    "RUBT_KEEP_ALIVE_INTERVAL": "network.keep_alive_interval",
    "RUBT_TRACKER_TIMEOUT": "network.tracker_timeout",
    "RUBT_TRACKER_RETRY_INTERVAL": "network.tracker_retry_interval",
    # Strategy
    "RUBT_MAX_IN_FLIGHT_PIECES": "strategy.max_in_flight_pieces",
    "RUBT_ENDGAME_THRESHOLD": "strategy.endgame_threshold",
    "RUBT_REQUEST_TIMEOUT": "strategy.request_timeout",
    # Choking
    "RUBT_MAX_ACTIVE_DOWNLOADERS": "choke.max_active_downloaders",
    "RUBT_MAX_OPTIMISTIC_UNCHOKES": "choke.max_optimistic_unchokes",
    "RUBT_CHOKE_INTERVAL": "choke.interval",
    # Disk
    "RUBT_STATE_DIR": "disk.state_dir",
    "RUBT_PREALLOCATE": "disk.preallocate",
    "RUBT_DISK_WORKERS": "disk.disk_workers",
    # Observability
    "RUBT_LOG_LEVEL": "observability.log_level",
    "RUBT_LOG_FILE": "observability.log_file",
    "RUBT_STRUCTURED_LOGGING": "observability.structured_logging",
}

_config_manager: ConfigManager | None = None


def _parse_env_value(raw: str) -> bool | int | float | str:
    low = raw.lower()
    if low in {"true", "yes", "on"}:
        return True
    if low in {"false", "no", "off"}:
        return False
    try:
        if "." in raw:
            return float(raw)
        return int(raw)
    except ValueError:
        return raw


def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = d
    for p in parts[:-1]:
        cur = cur.setdefault(p, {})
    cur[parts[-1]] = value


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


class ConfigManager:
    """Loads, validates and holds the active configuration."""

    def __init__(self, config_file: str | Path | None = None, *, configure_logging: bool = True):
        """Initialize configuration manager.

        Args:
            config_file: Path to a TOML config file. If None, the standard
                locations are searched for ``rubt.toml``.
            configure_logging: Apply the observability settings to logging.
        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        if configure_logging:
            setup_logging(self.config.observability)

    @staticmethod
    def _find_config_file(config_file: str | Path | None) -> Path | None:
        if config_file:
            path = Path(config_file)
            if not path.exists():
                msg = f"Configuration file not found: {path}"
                raise ConfigurationError(msg)
            return path

        search_paths = [
            Path.cwd() / CONFIG_FILE_NAME,
            Path.home() / ".config" / "rubt" / CONFIG_FILE_NAME,
            Path.home() / f".{CONFIG_FILE_NAME}",
        ]
        for path in search_paths:
            if path.exists():
                return path
        return None

    def _load_config(self) -> Config:
        config_data: dict[str, Any] = {}

        if self.config_file is not None:
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data = toml.load(f)
            except (OSError, toml.TomlDecodeError) as e:
                msg = f"Failed to load config file {self.config_file}: {e}"
                raise ConfigurationError(msg) from e

        config_data = _merge(config_data, self._get_env_config())

        try:
            return Config(**config_data)
        except Exception as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    @staticmethod
    def _get_env_config() -> dict[str, Any]:
        env_config: dict[str, Any] = {}
        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            _set_nested(env_config, cfg_path, _parse_env_value(raw))
        return env_config

    def export(self) -> str:
        """Export the active configuration as TOML."""
        return toml.dumps(self.config.model_dump(mode="json", exclude_none=True))


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(configure_logging=False)
    return _config_manager.config


def init_config(config_file: str | Path | None = None) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file)
    return _config_manager


def reload_config() -> Config:
    """Reload configuration from file and environment."""
    if _config_manager is None:
        msg = "Configuration not initialized"
        raise ConfigurationError(msg)
    _config_manager.config = _config_manager._load_config()
    setup_logging(_config_manager.config.observability)
    return _config_manager.config


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(configure_logging=False)
    _config_manager.config = new_config
    logger.debug("Configuration replaced")
