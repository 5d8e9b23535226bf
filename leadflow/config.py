from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_BATCH_SIZE, DEFAULT_LEASE_SECONDS, DEFAULT_MAX_ATTEMPTS


class RedisConfig(BaseModel):
    """Configuration for the Redis event bus."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class EventsConfig(BaseModel):
    """Lead event bus settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class RetryConfig(BaseModel):
    """Bounds for transient step failures."""

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    backoff_base: float = 2.0
    jitter: float = 0.5


class EngineConfig(BaseModel):
    """Scheduling behaviour of the step executor."""

    pause_mode: Literal["stop_new_enrollment", "freeze_all"] = "stop_new_enrollment"
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)
    lease_seconds: int = Field(default=DEFAULT_LEASE_SECONDS, ge=1)
    retry: RetryConfig = RetryConfig()


class DraftingConfig(BaseModel):
    """AI email drafting settings."""

    model: str = "openai:gpt-4o-mini"
    timeout_seconds: float = 30.0


class DeliveryConfig(BaseModel):
    """Outbound email delivery settings."""

    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    timeout_seconds: float = 10.0
    senders: Dict[str, str] = Field(default_factory=dict)


class LeadStoreConfig(BaseModel):
    """Remote lead store settings; in-memory when ``base_url`` is unset."""

    base_url: Optional[str] = None
    api_key: Optional[str] = None
    timeout_seconds: float = 10.0


class LeadflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    engine: EngineConfig = EngineConfig()
    events: EventsConfig = EventsConfig()
    drafting: DraftingConfig = DraftingConfig()
    delivery: DeliveryConfig = DeliveryConfig()
    leads: LeadStoreConfig = LeadStoreConfig()


def load_config(path: Optional[str] = None) -> LeadflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to LEADFLOW_CONFIG env
            variable or 'leadflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("LEADFLOW_CONFIG", "leadflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = LeadflowConfig(**data)
    else:
        config = LeadflowConfig()

    env_db_url = os.getenv("LEADFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_log_level = os.getenv("LEADFLOW_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level
    return config
