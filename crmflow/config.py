from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel


class EngineConfig(BaseModel):
    """Limits and timings used by the engine and the batch runner."""

    batch_size: int = 100
    max_processing_seconds: float = 55.0
    max_steps_per_tick: int = 10
    max_retries: int = 3
    retry_backoff_initial: float = 60.0
    retry_backoff_base: float = 2.0
    retry_jitter: float = 0.1
    claim_lease_seconds: int = 300
    action_delay_seconds: int = 0
    paused_recheck_seconds: int = 300
    concurrency: int = 1


class MessagingConfig(BaseModel):
    """Configuration for the outbound message sender."""

    backend: Literal["inmemory", "http"] = "inmemory"
    webhook_url: Optional[str] = None
    api_key: Optional[str] = None
    timeout: float = 10.0


class ApiConfig(BaseModel):
    """HTTP transport settings."""

    environment: str = "development"
    cron_secret: Optional[str] = None
    host: str = "127.0.0.1"
    port: int = 8000

    @property
    def requires_cron_secret(self) -> bool:
        return self.environment == "production" or bool(self.cron_secret)


class CrmflowConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = EngineConfig()
    messaging: MessagingConfig = MessagingConfig()
    api: ApiConfig = ApiConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> CrmflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CRMFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("CRMFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CrmflowConfig(**data)
    else:
        config = CrmflowConfig()

    env_db_url = os.getenv("CRMFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_secret = os.getenv("CRON_SECRET")
    if env_secret:
        config.api.cron_secret = env_secret
    env_name = os.getenv("CRMFLOW_ENV")
    if env_name:
        config.api.environment = env_name
    return config
