"""roomrelay application configuration.

Loads settings from a single YAML file:
  * roomrelay.settings.yaml: server, store, chat and logging sections

The file location can be overridden with the ``ROOMRELAY_SETTINGS``
environment variable. Relative store paths are resolved against the
directory holding the settings file.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("roomrelay.settings.yaml")
SETTINGS_ENV_VAR = "ROOMRELAY_SETTINGS"

DEFAULT_PORT = 3005

# Level names accepted by both logging and uvicorn
LOG_LEVELS = {"critical", "error", "warning", "info", "debug", "trace"}


class ConfigError(Exception):
    """Raised when the settings file exists but cannot be used."""


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s (using defaults)", path)
        return {}
    try:
        with path.open(encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Top level of {path} must be a mapping")
    return data


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT

    @field_validator("port")
    @classmethod
    def _port_in_range(cls, value: int) -> int:
        if not 0 <= value <= 65535:
            raise ValueError(f"port out of range: {value}")
        return value


class StoreSettings(BaseModel):
    """Where the room history snapshot lives."""
    path: str = "messages.json"


class ChatSettings(BaseModel):
    """Delivery policy for chat messages."""
    echo_to_sender:         bool = True
    rejoin_leaves_previous: bool = True


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.lower()
        if level not in LOG_LEVELS:
            raise ValueError(f"unknown log level {value!r}, expected one of {sorted(LOG_LEVELS)}")
        return level


class RelayConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    store:   StoreSettings   = Field(default_factory=StoreSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_settings_path(settings_path: Optional[Union[str, Path]]) -> Path:
    if settings_path is not None:
        return Path(settings_path)
    env_path = os.environ.get(SETTINGS_ENV_VAR)
    if env_path:
        return Path(env_path)
    return SETTINGS_FILE


def load_config(settings_path: Optional[Union[str, Path]] = None) -> RelayConfig:
    """Load the settings file into a validated *RelayConfig*.

    Args:
        settings_path: Explicit settings file. Falls back to the
            ``ROOMRELAY_SETTINGS`` environment variable, then to
            ``roomrelay.settings.yaml`` in the working directory.

    Raises:
        ConfigError: If the file is not valid YAML or a field is invalid.
    """
    path = _resolve_settings_path(settings_path)
    data = _load_yaml(path)

    try:
        config = RelayConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid settings in {path}: {exc}") from exc

    store_path = Path(config.store.path)
    if not store_path.is_absolute():
        config.store.path = str(path.resolve().parent / store_path)

    logger.info(
        "Settings loaded (server=%s:%s, store=%s, echo_to_sender=%s)",
        config.server.host,
        config.server.port,
        config.store.path,
        config.chat.echo_to_sender,
    )
    return config


_config: Optional[RelayConfig] = None


def get_config() -> RelayConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: RelayConfig) -> None:
    """Install *config* as the process-wide configuration."""
    global _config
    _config = config


def reset_config() -> None:
    """Drop the cached configuration (for testing)."""
    global _config
    _config = None
