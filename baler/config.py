from __future__ import annotations

import os
from datetime import timedelta
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class BalerConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    connections: Dict[str, TransportConfig] = Field(default_factory=dict)
    database_url: Optional[str] = None
    automatic_processing: bool = True
    retention_window: timedelta = timedelta(days=7)
    default_queue: str = "default"


def _env_flag(value: str) -> bool:
    return value.strip().lower() not in {"0", "false", "no", "off", ""}


def load_config(path: Optional[str] = None) -> BalerConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to BALER_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("BALER_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = BalerConfig(**data)
    else:
        config = BalerConfig()

    env_db_url = os.getenv("BALER_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url

    env_automatic = os.getenv("BALER_AUTOMATIC_PROCESSING")
    if env_automatic is not None:
        config.automatic_processing = _env_flag(env_automatic)
    return config
