"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator


class ProviderConfig(BaseModel):
    backend: Literal["anthropic", "openai", "gemini", "ollama"] = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    api_key: str | None = None
    base_url: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.7
    timeout: int = 120
    max_retries: int = 3
    cache_system_prompt: bool = False  # anthropic only


class AgentConfig(BaseModel):
    max_iterations: int = Field(default=10, ge=1)
    system_prompt: str = ""
    conversation_history: int = Field(default=0, ge=0)  # 0 sends the full history
    enable_planning: bool = False
    enable_user_input: bool = False


class StorageConfig(BaseModel):
    backend: Literal["none", "memory", "file", "sqlite"] = "memory"
    db_path: str = "${data_dir}/conversations.db"
    dir: str = "${data_dir}/conversations"


class AppConfig(BaseModel):
    log_level: str = "INFO"
    json_logs: bool = False
    data_dir: str = "./data"
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @model_validator(mode="after")
    def _resolve_storage_paths(self) -> AppConfig:
        extra = {"data_dir": self.data_dir}
        self.storage.db_path = _interpolate_env_vars(self.storage.db_path, extra)
        self.storage.dir = _interpolate_env_vars(self.storage.dir, extra)
        return self


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
    """Load and validate configuration from a YAML file.

    ``${VAR}`` references resolve against the environment (after loading the
    optional ``.env`` file); ``${data_dir}`` resolves against the file's own
    ``data_dir`` key.
    """
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    return AppConfig(**data)
