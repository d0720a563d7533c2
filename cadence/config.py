from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_HOME,
    DEFAULT_LOCK_TIMEOUT,
    DEFAULT_MAX_CONFLICT_RETRIES,
    DEFAULT_MAX_EVENTS,
    DEFAULT_TRIM_INTERVAL,
)


class StoreConfig(BaseModel):
    """State store settings."""

    backend: Literal["filesystem", "inmemory"] = "filesystem"
    max_conflict_retries: int = Field(default=DEFAULT_MAX_CONFLICT_RETRIES, ge=0)
    lock_timeout: float = Field(default=DEFAULT_LOCK_TIMEOUT, gt=0)


class TimelineConfig(BaseModel):
    """Event log retention settings."""

    max_events: int = Field(default=DEFAULT_MAX_EVENTS, ge=1)
    trim_interval: int = Field(default=DEFAULT_TRIM_INTERVAL, ge=1)


class CadenceConfig(BaseModel):
    """Top-level configuration model."""

    home: str = DEFAULT_HOME
    store: StoreConfig = StoreConfig()
    timeline: TimelineConfig = TimelineConfig()
    registry_path: Optional[str] = None

    @property
    def home_path(self) -> str:
        return os.path.abspath(os.path.expanduser(self.home))


def load_config(path: Optional[str] = None) -> CadenceConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CADENCE_CONFIG env
            variable or 'cadence.yaml' in the current directory.
    """

    config_path = path or os.getenv("CADENCE_CONFIG", "cadence.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CadenceConfig(**data)
    else:
        config = CadenceConfig()

    env_home = os.getenv("CADENCE_HOME")
    if env_home:
        config.home = env_home
    return config
