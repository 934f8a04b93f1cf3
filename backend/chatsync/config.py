"""chatsync application configuration.

Loads settings from a single YAML file:
  * chatsync.settings.yaml: server, logging and store configuration

The file location defaults to the working directory and can be overridden
with the CHATSYNC_SETTINGS environment variable. Missing files fall back to
defaults so the backend runs out of the box.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chatsync.settings.yaml")
SETTINGS_ENV_VAR = "CHATSYNC_SETTINGS"

IN_MEMORY_DB = ":memory:"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 4000
    reload:          bool      = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if not isinstance(getattr(logging, value.upper(), None), int):
            raise ValueError(f"unknown log level: {value}")
        return value.lower()


class StoreSettings(BaseModel):
    """Record Store connection and call policy."""
    db_path:         str   = "chatsync.duckdb"
    timeout_seconds: float = Field(default=5.0, gt=0)
    retry_once:      bool  = True


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    store:   StoreSettings   = Field(default_factory=StoreSettings)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_db_path(db_path: str, settings_path: Path) -> str:
    """Resolve a relative db_path against the directory holding the settings file."""
    if db_path == IN_MEMORY_DB:
        return db_path
    path = Path(db_path)
    if path.is_absolute():
        return str(path)
    return str(settings_path.resolve().parent / path)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load settings into a single *AppConfig* object."""
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV_VAR, SETTINGS_FILE))
    settings_path = Path(settings_path)

    config = AppConfig(**_load_yaml(settings_path))
    config.store.db_path = _resolve_db_path(config.store.db_path, settings_path)

    logger.info(
        "Settings loaded (server=%s:%s, store=%s, timeout=%.1fs)",
        config.server.host,
        config.server.port,
        config.store.db_path,
        config.store.timeout_seconds,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace (or clear, with None) the process-wide configuration."""
    global _config
    _config = config
