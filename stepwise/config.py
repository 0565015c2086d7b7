from __future__ import annotations

import os
from datetime import timedelta
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, PositiveInt, model_validator

from .constants import (
    DEFAULT_BACKOFF_BASE_MINUTES,
    DEFAULT_BACKOFF_CEILING_MINUTES,
    DEFAULT_BATCH_SIZE,
    DEFAULT_DISPATCH_TIMEOUT_SECONDS,
    DEFAULT_LEASE_TIMEOUT_SECONDS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_POLL_PERIOD_SECONDS,
    DEFAULT_RETENTION_DAYS,
    DEFAULT_SIGNING_TTL_SECONDS,
)
from .contracts import WorkflowDefinition


class SchedulerConfig(BaseModel):
    """Polling cadence and claim limits."""

    period_seconds: float = DEFAULT_POLL_PERIOD_SECONDS
    batch_size: PositiveInt = DEFAULT_BATCH_SIZE
    lease_timeout_seconds: float = DEFAULT_LEASE_TIMEOUT_SECONDS

    @property
    def lease_timeout(self) -> timedelta:
        return timedelta(seconds=self.lease_timeout_seconds)


class DispatchConfig(BaseModel):
    """Outbound callback settings."""

    timeout_seconds: float = DEFAULT_DISPATCH_TIMEOUT_SECONDS
    default_endpoint: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    signing_secret: Optional[str] = None
    signing_issuer: str = "stepwise"
    signing_ttl_seconds: int = DEFAULT_SIGNING_TTL_SECONDS


class RetryConfig(BaseModel):
    """Backoff policy applied to retryable dispatch failures."""

    base_minutes: float = DEFAULT_BACKOFF_BASE_MINUTES
    ceiling_minutes: float = DEFAULT_BACKOFF_CEILING_MINUTES
    max_retries: int = DEFAULT_MAX_RETRIES


class StepwiseConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    retention_days: int = DEFAULT_RETENTION_DAYS
    scheduler: SchedulerConfig = SchedulerConfig()
    dispatch: DispatchConfig = DispatchConfig()
    retry: RetryConfig = RetryConfig()
    workflows: List[WorkflowDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _lease_outlives_dispatch(self) -> "StepwiseConfig":
        # A lease shorter than a dispatch lets a live callback be reclaimed.
        if self.scheduler.lease_timeout_seconds <= self.dispatch.timeout_seconds:
            raise ValueError(
                f"scheduler.lease_timeout_seconds ({self.scheduler.lease_timeout_seconds}) "
                f"must exceed dispatch.timeout_seconds ({self.dispatch.timeout_seconds})"
            )
        return self


def load_config(path: Optional[str] = None) -> StepwiseConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPWISE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPWISE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepwiseConfig(**data)
    else:
        config = StepwiseConfig()

    env_db_url = os.getenv("STEPWISE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_level = os.getenv("STEPWISE_LOG_LEVEL")
    if env_level:
        config.log_level = env_level
    return config
