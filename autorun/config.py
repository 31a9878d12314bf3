from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for the Redis change transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Change notification transport settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class HttpExecutorConfig(BaseModel):
    """Defaults for steps executed against an HTTP generation proxy."""

    base_url: str = "http://localhost:8000"
    timeout: float = 60.0
    headers: Dict[str, str] = Field(default_factory=dict)
    # step_type -> endpoint path on base_url
    routes: Dict[str, str] = Field(default_factory=dict)


class ExecutionConfig(BaseModel):
    step_timeout: Optional[float] = None
    http: HttpExecutorConfig = HttpExecutorConfig()


class SecurityConfig(BaseModel):
    privileged_ids: List[str] = Field(default_factory=list)


class AutorunConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    execution: ExecutionConfig = ExecutionConfig()
    security: SecurityConfig = SecurityConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> AutorunConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to AUTORUN_CONFIG env
            variable or 'autorun.yaml' in the current directory.
    """

    config_path = path or os.getenv("AUTORUN_CONFIG", "autorun.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = AutorunConfig(**data)
    else:
        config = AutorunConfig()

    env_db_url = os.getenv("AUTORUN_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
