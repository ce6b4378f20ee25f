from __future__ import annotations

import logging
import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_NODE_TIMEOUT_MS, DEFAULT_RUN_TIMEOUT_MS, MAX_EXECUTION_STEPS


class EngineConfig(BaseModel):
    """Execution limits applied by the workflow engine."""

    max_execution_steps: int = Field(default=MAX_EXECUTION_STEPS, gt=0)
    default_run_timeout_ms: int = Field(default=DEFAULT_RUN_TIMEOUT_MS, gt=0)
    default_node_timeout_ms: int = Field(default=DEFAULT_NODE_TIMEOUT_MS, gt=0)


class AgentConfig(BaseModel):
    """Settings for the default pydantic-ai prompt executor."""

    model: str = "openai:gpt-4o"
    instructions: Optional[str] = None


class FlowLedgerConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    engine: EngineConfig = EngineConfig()
    agent: AgentConfig = AgentConfig()


def load_config(path: Optional[str] = None) -> FlowLedgerConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWLEDGER_CONFIG env
            variable or 'flowledger.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWLEDGER_CONFIG", "flowledger.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowLedgerConfig(**data)
    else:
        config = FlowLedgerConfig()

    env_db_url = os.getenv("FLOWLEDGER_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_level = os.getenv("FLOWLEDGER_LOG_LEVEL")
    if env_level:
        config.log_level = env_level
    return config


def configure_logging(config: FlowLedgerConfig) -> None:
    """Apply ``config.log_level`` to the root logger."""
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
