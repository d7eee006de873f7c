"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


class ApiConfig(BaseModel):
    base_url: str = "http://localhost:8787"
    auth_token: Optional[str] = None
    session_header: str = "X-Session-Id"
    github_base_url: str = "https://github.com"
    connect_timeout: float = 10.0


class SessionConfig(BaseModel):
    request_timeout: float = 30.0  # wall-clock deadline per exchange, seconds
    max_turns: int = 10
    permission_mode: str = "bypassPermissions"  # "bypassPermissions" | "required"
    create_pr: bool = False
    title_max_length: int = 50


class StorageConfig(BaseModel):
    db_path: str = "./data/cloud_session.db"
    retention_hours: float = 24
    history_limit: int = 50


class SyncConfig(BaseModel):
    connectivity_poll_seconds: float = 15
    queue_poll_seconds: float = 5
    health_path: str = "/health"
    sync_on_reconnect: bool = True
    auto_sync: bool = True


class AppConfig(BaseModel):
    log_level: str = "INFO"
    data_dir: str = "./data"
    api: ApiConfig = Field(default_factory=ApiConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    # data_dir may be referenced by other values, e.g. ${data_dir}/cloud_session.db
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    return AppConfig(**data)
