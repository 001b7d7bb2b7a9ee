from __future__ import annotations

import os
from typing import TYPE_CHECKING, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_MAX_RETRY_DELAY,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_SIGNAL_TIMEOUT,
    DEFAULT_TIMEOUT_BATCH_SIZE,
    DEFAULT_TIMEOUT_CHECK_INTERVAL,
)

if TYPE_CHECKING:  # pragma: no cover
    from .engine import ExecutionOptions


class EngineConfig(BaseModel):
    """Defaults applied to every workflow execution."""

    default_max_attempts: int = Field(default=DEFAULT_RETRY_ATTEMPTS, ge=1)
    retry_base_delay: float = Field(default=DEFAULT_RETRY_BASE_DELAY, ge=0)
    max_retry_delay: float = Field(default=DEFAULT_MAX_RETRY_DELAY, ge=0)
    default_step_timeout: Optional[float] = Field(default=None, gt=0)
    enable_tracing: bool = True
    enable_compensation: bool = True

    def to_execution_options(self) -> "ExecutionOptions":
        from .engine import ExecutionOptions
        from .utils.retry import RetryPolicy

        return ExecutionOptions(
            enable_tracing=self.enable_tracing,
            enable_compensation=self.enable_compensation,
            default_step_timeout=self.default_step_timeout,
            default_retry_policy=RetryPolicy.exponential(
                max_attempts=self.default_max_attempts,
                base_delay=self.retry_base_delay,
                max_delay=self.max_retry_delay,
            ),
        )


class PersistenceConfig(BaseModel):
    """Settings for persisted workflows and the signal timeout sweeper."""

    default_signal_timeout: float = Field(default=DEFAULT_SIGNAL_TIMEOUT, ge=1)
    timeout_check_interval: float = Field(
        default=DEFAULT_TIMEOUT_CHECK_INTERVAL, ge=10, le=24 * 60 * 60
    )
    max_timeout_batch_size: int = Field(default=DEFAULT_TIMEOUT_BATCH_SIZE, ge=1, le=10000)
    enable_timeout_processing: bool = True


class SagaflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    engine: EngineConfig = EngineConfig()
    persistence: PersistenceConfig = PersistenceConfig()


def load_config(path: Optional[str] = None) -> SagaflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SAGAFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("SAGAFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = SagaflowConfig(**data)
    else:
        config = SagaflowConfig()

    env_db_url = os.getenv("SAGAFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
