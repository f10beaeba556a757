"""
Unified Configuration System.

Provides centralized configuration for followgraph, supporting environment
variables, YAML/JSON files, and programmatic configuration.

Usage:
    from followgraph.core import get_config, load_config

    config = load_config("config/followgraph.yaml")
    engine_url = config.database.url
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./followgraph.db"


class DatabaseSettings(BaseModel):
    """
    Relational store settings.

    Attributes:
        url: SQLAlchemy async connection URL
        echo: Whether to echo SQL statements
        pool_size: Connection pool size (ignored by SQLite)
        max_overflow: Extra connections above pool_size (ignored by SQLite)
        pool_pre_ping: Test connections before handing them out
    """
    url: str = DEFAULT_DATABASE_URL
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 20
    pool_pre_ping: bool = True

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    def resolve_url(self) -> str:
        """Resolve URL from an environment variable reference if needed."""
        url = self.url
        if url.startswith("${") and url.endswith("}"):
            url = os.environ.get(url[2:-1], DEFAULT_DATABASE_URL)

        if url.startswith("postgresql://") and "+asyncpg" not in url:
            url = url.replace("postgresql://", "postgresql+asyncpg://")
        return url


class LoggingSettings(BaseModel):
    """
    Logging settings.

    Attributes:
        level: Log level
        structured: Emit JSON records on the console instead of human format
        file: Log file path (file logging disabled when unset)
        max_bytes: Maximum log file size before rotation
        backup_count: Number of rotated files to keep
    """
    level: str = "INFO"
    structured: bool = False
    file: str | None = None
    max_bytes: int = 100 * 1024 * 1024
    backup_count: int = 10


class FollowGraphSettings(BaseSettings):
    """Root configuration for followgraph."""

    model_config = SettingsConfigDict(
        env_prefix="FOLLOWGRAPH_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    version: str = "1.0"
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return self.model_dump()


def load_config(config_path: str | Path | None = None) -> FollowGraphSettings:
    """
    Load configuration from file and environment.

    Environment variables (``FOLLOWGRAPH_DATABASE__URL`` and friends) take
    precedence over values read from the file.

    Args:
        config_path: Path to config file (YAML or JSON)

    Returns:
        Loaded configuration
    """
    config_data: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path, "r", encoding="utf-8") as f:
                if path.suffix in (".yaml", ".yml"):
                    config_data = yaml.safe_load(f) or {}
                elif path.suffix == ".json":
                    config_data = json.load(f)
                else:
                    logger.warning(f"Unknown config format: {path.suffix}")
        else:
            logger.debug(f"Config file not found, using defaults: {path}")

    env_overrides = FollowGraphSettings().model_dump(exclude_unset=True)
    _deep_update(config_data, env_overrides)

    return FollowGraphSettings(**config_data)


def _deep_update(target: dict[str, Any], overrides: dict[str, Any]) -> None:
    """Merge overrides into target in place, recursing into sections."""
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_update(target[key], value)
        else:
            target[key] = value


_global_config: FollowGraphSettings | None = None


def get_config() -> FollowGraphSettings:
    """Get the global configuration."""
    global _global_config
    if _global_config is None:
        config_path = os.environ.get("FOLLOWGRAPH_CONFIG", "config/followgraph.yaml")
        _global_config = load_config(config_path)
    return _global_config


def set_config(config: FollowGraphSettings | None) -> None:
    """Set (or reset with ``None``) the global configuration."""
    global _global_config
    _global_config = config
