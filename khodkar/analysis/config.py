"""Configuration management for Khodkar."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigurationError

logger = logging.getLogger("khodkar.config")

APP_DIR_NAME = ".khodkar"
CONFIG_FILENAME = "config.json"

DEFAULT_MAX_STEPS = 50
MIN_MAX_STEPS, MAX_MAX_STEPS = 10, 500
MIN_MAX_TOKENS, MAX_MAX_TOKENS = 1000, 32000

DEFAULT_CONFIG: dict[str, Any] = {
    "llm_provider": "openai",
    "llm_timeout": 300.0,
    "llm_max_retries": 2,
    "llm_max_tokens": 4096,
    "llm_max_steps": DEFAULT_MAX_STEPS,
    "llm_temperature": 0.2,
    "tool_call_timeout": 60.0,
    "mcp_init_timeout": 30.0,
    "tool_result_max_chars": 50_000,
    "mcp_servers": {
        "filesystem": {
            "command": "npx",
            "args": ["-y", "@modelcontextprotocol/server-filesystem", "{directory}"],
        },
    },
    "log_file": str(Path.home() / APP_DIR_NAME / "logs" / "khodkar.log"),
}


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from ~/.khodkar/config.json."""

    # LLM transport
    llm_provider: str
    llm_timeout: float
    llm_max_retries: int
    llm_temperature: float

    # Defaults for values the CLI may override
    llm_max_tokens: int
    llm_max_steps: int

    # Tool servers
    tool_call_timeout: float
    mcp_init_timeout: float
    tool_result_max_chars: int
    mcp_servers: dict[str, dict[str, Any]] = field(default_factory=dict)

    # Logging
    log_file: str = ""

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> Config:
        """Load config from specified path or default ~/.khodkar/config.json."""
        if config_path:
            config_file = Path(config_path)
        else:
            config_dir = Path.home() / APP_DIR_NAME
            config_file = config_dir / CONFIG_FILENAME
            if not config_dir.exists():
                config_dir.mkdir(parents=True, exist_ok=True)

        current_config = json.loads(json.dumps(DEFAULT_CONFIG))

        if config_file.exists():
            try:
                with open(config_file, "r", encoding="utf-8") as f:
                    user_config = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigurationError(
                    f"Failed to load config from {config_file}: {e}",
                    file_path=str(config_file),
                ) from e
            if not isinstance(user_config, dict):
                raise ConfigurationError(
                    f"Config file {config_file} must contain a JSON object",
                    file_path=str(config_file),
                )
            unknown = sorted(set(user_config) - set(DEFAULT_CONFIG))
            if unknown:
                logger.warning(f"Ignoring unknown config keys in {config_file}: {', '.join(unknown)}")
            current_config.update({k: v for k, v in user_config.items() if k in DEFAULT_CONFIG})
        elif config_path is None:
            logger.info(f"No config found. Generating default config at {config_file}")
            try:
                with open(config_file, "w", encoding="utf-8") as f:
                    json.dump(DEFAULT_CONFIG, f, indent=4)
            except OSError as e:
                logger.warning(f"Failed to write default config: {e}")
        else:
            raise ConfigurationError(
                f"Configuration file not found at {config_file}",
                file_path=str(config_file),
            )

        # Environment overrides, e.g. KHODKAR_TOOL_CALL_TIMEOUT=120
        for key, default_val in DEFAULT_CONFIG.items():
            env_key = f"KHODKAR_{key.upper()}"
            if env_key not in os.environ:
                continue
            val = os.environ[env_key]
            try:
                if isinstance(default_val, bool):
                    current_config[key] = val.lower() in ("true", "1", "yes")
                elif isinstance(default_val, int):
                    current_config[key] = int(val)
                elif isinstance(default_val, float):
                    current_config[key] = float(val)
                elif isinstance(default_val, dict):
                    current_config[key] = json.loads(val)
                else:
                    current_config[key] = val
            except ValueError:
                logger.warning(f"Ignoring unparsable override {env_key}={val!r}")

        return cls(**current_config)


# Singleton
_config: Config | None = None


def get_config(config_path: str | None = None) -> Config:
    """Get or create the global config instance, optionally loading from a path."""
    global _config
    if _config is None:
        _config = Config.load(config_path)
    return _config


class LLMConfig(BaseModel):
    """Connection settings for the chat endpoint, as given on the command line."""

    base_url: str
    api_key: str = ""
    model: str
    max_tokens: int = Field(default=4096, ge=MIN_MAX_TOKENS, le=MAX_MAX_TOKENS)
    max_steps: int = Field(default=DEFAULT_MAX_STEPS, ge=MIN_MAX_STEPS, le=MAX_MAX_STEPS)
    provider: Literal["openai", "ollama"] = "openai"

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return value.rstrip("/")

    @field_validator("model")
    @classmethod
    def _check_model(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value.strip()

    @model_validator(mode="after")
    def _check_api_key(self) -> LLMConfig:
        if self.provider != "ollama" and not self.api_key.strip():
            raise ValueError("api_key must not be empty")
        return self


def build_llm_config(**values: Any) -> LLMConfig:
    """Validate LLM settings, dropping unset (None) values so defaults apply."""
    try:
        return LLMConfig(**{k: v for k, v in values.items() if v is not None})
    except PydanticValidationError as e:
        issues = []
        for err in e.errors():
            loc = ".".join(str(part) for part in err["loc"]) or "config"
            issues.append(f"{loc}: {err['msg']}")
        raise ConfigurationError(
            "LLM Configuration Error: " + "; ".join(issues),
        ) from e
