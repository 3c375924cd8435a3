from __future__ import annotations

import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field


class EngineConfig(BaseModel):
    """Tuning knobs for the graph interpreter."""

    max_execution_depth: int = 200
    retry_base_delay: float = 1.0
    webhook_timeout: float = 10.0


class NodeflowConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = EngineConfig()
    database_url: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)


def load_config(path: Optional[str] = None) -> NodeflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to NODEFLOW_CONFIG env
            variable or 'nodeflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("NODEFLOW_CONFIG", "nodeflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = NodeflowConfig(**data)
    else:
        config = NodeflowConfig()

    env_db_url = os.getenv("NODEFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
