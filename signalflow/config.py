from __future__ import annotations

import logging
import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class RuntimeSettings(BaseModel):
    """Timing knobs of the workflow runtime, in seconds."""

    keepalive_interval: float = 60.0
    ping_timeout: float = 5.0
    ping_watchdog: float = 120.0
    request_timeout: float = 60.0
    retry_delay: float = 1.0
    stability_window: float = 60.0
    backoff_base: float = 0.1
    backoff_jitter: float = 1.0
    max_start_attempts: int = 10
    token_lifetime: int = 60


class SchemaConfig(BaseModel):
    """Where connector schemas are fetched from."""

    base_url: Optional[str] = None
    web3_connector_url: Optional[str] = None
    timeout: float = 10.0


class SignalflowConfig(BaseModel):
    """Top-level configuration model."""

    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)
    schemas: SchemaConfig = Field(default_factory=SchemaConfig)
    database_url: Optional[str] = None
    master_key: Optional[str] = None
    log_level: str = "INFO"
    load_workflows: bool = True


def load_config(path: Optional[str] = None) -> SignalflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SIGNALFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("SIGNALFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = SignalflowConfig(**data)
    else:
        config = SignalflowConfig()

    keepalive_ms = os.getenv("KEEPALIVE_INTERVAL")
    if keepalive_ms:
        try:
            config.runtime.keepalive_interval = int(keepalive_ms) / 1000
        except ValueError:
            logger.warning(
                f"Ignoring invalid KEEPALIVE_INTERVAL {keepalive_ms!r}, expected milliseconds"
            )

    env_db_url = os.getenv("SIGNALFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    if os.getenv("CONNECTOR_SCHEMA_URL"):
        config.schemas.base_url = os.getenv("CONNECTOR_SCHEMA_URL")
    if os.getenv("WEB3_CONNECTOR_URL"):
        config.schemas.web3_connector_url = os.getenv("WEB3_CONNECTOR_URL")
    if os.getenv("MASTER_KEY"):
        config.master_key = os.getenv("MASTER_KEY")
    if os.getenv("SIGNALFLOW_LOG_LEVEL"):
        config.log_level = os.getenv("SIGNALFLOW_LOG_LEVEL")
    load_flag = os.getenv("SIGNALFLOW_LOAD_WORKFLOWS")
    if load_flag:
        config.load_workflows = load_flag.lower() not in ("0", "false", "no")
    return config
