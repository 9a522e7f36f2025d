from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_CATCH_UP_LIMIT, DEFAULT_EVENT_ID_HEADERS


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


class ExecutorConfig(BaseModel):
    """Run executor worker pool settings."""

    workers: int = Field(default=4, ge=1)
    poll_interval: float = Field(default=1.0, gt=0)
    scan_batch: int = Field(default=50, ge=1)


class SchedulerConfig(BaseModel):
    """Schedule runner settings."""

    tick_interval: float = Field(default=60.0, gt=0)
    catch_up_limit: int = Field(default=DEFAULT_CATCH_UP_LIMIT, ge=1)


class WebhookConfig(BaseModel):
    """Inbound webhook settings."""

    require_secret: bool = False
    event_id_headers: List[str] = Field(
        default_factory=lambda: list(DEFAULT_EVENT_ID_HEADERS)
    )


class AISettings(BaseModel):
    """Model generation defaults for one organization."""

    model: str = "openai:gpt-4o-mini"
    instructions: Optional[str] = None
    temperature: Optional[float] = None


class HttpSettings(BaseModel):
    """Outbound HTTP defaults for one organization."""

    timeout: float = 30.0
    default_headers: Dict[str, str] = Field(default_factory=dict)


class OrganizationSettings(BaseModel):
    """Per-organization configuration handed to every action handler."""

    ai: AISettings = AISettings()
    http: HttpSettings = HttpSettings()


class OpsflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    records_url: Optional[str] = None
    executor: ExecutorConfig = ExecutorConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    webhooks: WebhookConfig = WebhookConfig()
    organizations: Dict[str, OrganizationSettings] = Field(default_factory=dict)

    def settings_for(self, organization_id: str) -> OrganizationSettings:
        """Return the settings of ``organization_id`` or the defaults."""
        return self.organizations.get(str(organization_id)) or OrganizationSettings()


def load_config(path: Optional[str] = None) -> OpsflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to OPSFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("OPSFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = OpsflowConfig(**data)
    else:
        config = OpsflowConfig()

    env_db_url = os.getenv("OPSFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_records_url = os.getenv("OPSFLOW_RECORDS_URL")
    if env_records_url:
        config.records_url = env_records_url
    return config
