from __future__ import annotations

import os
from datetime import datetime
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_EXECUTION_LOG_SIZE,
    DEFAULT_QUEUE_SIZE,
    DEFAULT_WEBHOOK_TIMEOUT,
    DEFAULT_WORKERS,
)
from .contracts import RetryPolicy, Trigger
from .models import ProcessDefinition


class RedisConfig(BaseModel):
    """Configuration for the Redis event bus."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    url: Optional[str] = None
    channel_prefix: str = "processcore"


class TransportConfig(BaseModel):
    """Event bus configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class DispatcherConfig(BaseModel):
    """Trigger dispatcher and action worker settings."""

    workers: int = Field(default=DEFAULT_WORKERS, ge=1)
    queue_size: int = Field(default=DEFAULT_QUEUE_SIZE, ge=1)
    webhook_timeout: float = DEFAULT_WEBHOOK_TIMEOUT
    retry: RetryPolicy = RetryPolicy()
    base_url: str = "http://localhost:8000"
    execution_log_size: int = DEFAULT_EXECUTION_LOG_SIZE
    slack_webhook_url: Optional[str] = None
    resend_api_key: Optional[str] = None
    email_from: str = "ProcessCore <noreply@example.com>"


class ApiKeyConfig(BaseModel):
    """A provisioned API key, stored as its SHA-256 hex digest."""

    key_hash: str
    principal_id: str = "api-key"
    permissions: List[str] = Field(default_factory=list)
    is_active: bool = True
    expires_at: Optional[datetime] = None


class AuthConfig(BaseModel):
    api_keys: List[ApiKeyConfig] = Field(default_factory=list)
    allow_dev_keys: bool = False


class ProcessCoreConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    transport: TransportConfig = TransportConfig()
    dispatcher: DispatcherConfig = DispatcherConfig()
    auth: AuthConfig = AuthConfig()
    processes: List[ProcessDefinition] = Field(default_factory=list)
    triggers: List[Trigger] = Field(default_factory=list)


def load_config(path: Optional[str] = None) -> ProcessCoreConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PROCESSCORE_CONFIG
            env variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("PROCESSCORE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ProcessCoreConfig(**data)
    else:
        config = ProcessCoreConfig()

    env_db_url = os.getenv("PROCESSCORE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    config.dispatcher.slack_webhook_url = (
        os.getenv("SLACK_WEBHOOK_URL") or config.dispatcher.slack_webhook_url
    )
    config.dispatcher.resend_api_key = (
        os.getenv("RESEND_API_KEY") or config.dispatcher.resend_api_key
    )
    config.dispatcher.email_from = (
        os.getenv("RESEND_FROM_EMAIL") or config.dispatcher.email_from
    )
    env_redis_url = os.getenv("PROCESSCORE_REDIS_URL") or os.getenv("REDIS_URL")
    if env_redis_url:
        config.transport.redis.url = env_redis_url
    env_level = os.getenv("PROCESSCORE_LOG_LEVEL")
    if env_level:
        config.log_level = env_level
    return config
