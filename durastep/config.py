from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_CONDITION_DELAY_SECONDS,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MAX_CONDITION_ITERATIONS,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Signal transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Limits and defaults applied by the workflow primitives."""

    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    max_condition_iterations: int = DEFAULT_MAX_CONDITION_ITERATIONS
    default_condition_delay_seconds: float = DEFAULT_CONDITION_DELAY_SECONDS
    default_callback_timeout_seconds: Optional[float] = None


class LoggingConfig(BaseModel):
    level: str = "INFO"


class DurastepConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    engine: EngineConfig = EngineConfig()
    transport: TransportConfig = TransportConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Optional[str] = None) -> DurastepConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DURASTEP_CONFIG env
            variable or 'durastep.yaml' in the current directory.
    """

    config_path = path or os.getenv("DURASTEP_CONFIG", "durastep.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DurastepConfig(**data)
    else:
        config = DurastepConfig()

    env_db_url = os.getenv("DURASTEP_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
