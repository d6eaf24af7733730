from __future__ import annotations

import logging
import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class LoggingConfig(BaseModel):
    """Root logger settings applied by the CLI."""

    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class EngineConfig(BaseModel):
    """Defaults used when starting instances."""

    business_key_prefix: str = "PROC"
    default_priority: Literal["low", "medium", "high", "critical"] = "medium"


class SecurityConfig(BaseModel):
    """Tenant scoping and token validation settings."""

    tenant_scoped: bool = False
    jwt_secret: Optional[str] = None
    jwt_algorithms: List[str] = Field(default_factory=lambda: ["HS256"])
    audience: Optional[str] = None
    issuer: Optional[str] = None
    leeway: int = 0
    tenant_claim: str = "tenant_id"
    roles_claim: str = "roles"


class ProcflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    logging: LoggingConfig = LoggingConfig()
    engine: EngineConfig = EngineConfig()
    security: SecurityConfig = SecurityConfig()


def load_config(path: Optional[str] = None) -> ProcflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PROCFLOW_CONFIG env
            variable or 'procflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("PROCFLOW_CONFIG", "procflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ProcflowConfig(**data)
    else:
        config = ProcflowConfig()

    env_db_url = os.getenv("PROCFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config


def configure_logging(config: ProcflowConfig) -> None:
    logging.basicConfig(level=config.logging.level.upper(), format=config.logging.format)
