"""Process configuration for the bot engine.

Rules:
- YAML provides defaults for non-secret config.
- Secrets (Deriv token, persistence API token) come from .env / environment
  variables and override YAML.
- YAML is never injected into os.environ.
- The bot itself (strategy, contract, amounts...) is a BotConfiguration loaded
  from its own YAML/JSON file or from the persistence API.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from strategybot.models.bot_config import BotConfiguration

_PLACEHOLDER_TOKENS = {"DUMMY", "PLACEHOLDER", "CHANGEME", "DONT_USE_YAML_TOKEN"}


class DerivConfig(BaseModel):
    """Deriv API configuration."""

    app_id: str = Field(default="1089", description="Deriv application ID")
    api_token: str = Field(default="", description="Default account token; bots may carry their own")
    websocket_url: str = Field(default="wss://ws.derivws.com/websockets/v3")
    request_timeout_sec: float = Field(default=15.0, gt=0)
    heartbeat_interval_sec: float = Field(default=15.0, gt=0)

    @field_validator("app_id")
    @classmethod
    def validate_app_id(cls, v: str) -> str:
        if not v or not str(v).isdigit():
            raise ValueError("app_id must be a non-empty numeric string")
        return str(v)

    @field_validator("api_token")
    @classmethod
    def validate_api_token(cls, v: str) -> str:
        if not v or str(v).upper() in _PLACEHOLDER_TOKENS:
            return str(v or "")
        if len(str(v)) < 10:
            raise ValueError("api_token must be at least 10 characters long")
        return str(v)


class ExecutorConfig(BaseModel):
    """Retry / stake bounds for contract execution."""

    max_retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_delay_base_sec: float = Field(default=1.0, gt=0)
    max_retry_delay_sec: float = Field(default=30.0, gt=0)
    settlement_timeout_sec: float = Field(default=300.0, gt=0)
    min_stake: float = Field(default=0.35, gt=0)
    max_stake: float = Field(default=50000.0, gt=0)

    @model_validator(mode="after")
    def validate_stake_bounds(self) -> "ExecutorConfig":
        if self.max_stake <= self.min_stake:
            raise ValueError("max_stake must be greater than min_stake")
        return self


class LoopConfig(BaseModel):
    schedule_poll_sec: float = Field(default=30.0, gt=0)
    defer_delay_sec: float = Field(default=5.0, gt=0)
    error_retry_delay_sec: float = Field(default=5.0, ge=0)
    max_consecutive_failures: int = Field(default=5, ge=1)
    persist_every_n_trades: int = Field(default=5, ge=1)
    provider_timeout_sec: float = Field(default=5.0, gt=0)


class PersistenceApiConfig(BaseModel):
    enabled: bool = Field(default=False)
    base_url: str = Field(default="http://localhost:3000/api")
    auth_token: str = Field(default="")
    timeout_sec: float = Field(default=15.0, gt=0)


class APIConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1024, le=65535)
    cors_origins: List[str] = Field(default=["http://localhost:3000", "http://localhost:5173"])


class AppSettings(BaseSettings):
    """Main process settings.

    YAML is parsed as the base, env overrides for secrets are re-applied on top.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True)
    bot_config_path: str = Field(default="config/bot.yaml")
    killswitch_path: str = Field(default="data/killswitch.json")

    deriv: DerivConfig = Field(default_factory=DerivConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    persistence_api: PersistenceApiConfig = Field(default_factory=PersistenceApiConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if str(v).upper() not in valid:
            raise ValueError(f"Log level must be one of: {sorted(valid)}")
        return str(v).upper()

    @classmethod
    def from_yaml(cls, yaml_path: Path) -> "AppSettings":
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        try:
            with open(yaml_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}") from e

        try:
            base = cls.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Configuration validation error: {e}") from e

        return base.with_env_overrides()

    def with_env_overrides(self) -> "AppSettings":
        if os.getenv("DERIV__APP_ID"):
            self.deriv.app_id = os.environ["DERIV__APP_ID"]
        if os.getenv("DERIV__API_TOKEN"):
            self.deriv.api_token = os.environ["DERIV__API_TOKEN"]
        if os.getenv("PERSISTENCE_API__BASE_URL"):
            self.persistence_api.base_url = os.environ["PERSISTENCE_API__BASE_URL"]
        if os.getenv("PERSISTENCE_API__AUTH_TOKEN"):
            self.persistence_api.auth_token = os.environ["PERSISTENCE_API__AUTH_TOKEN"]
        if os.getenv("LOG_LEVEL"):
            self.log_level = os.environ["LOG_LEVEL"].upper()
        if os.getenv("BOT_CONFIG_PATH"):
            self.bot_config_path = os.environ["BOT_CONFIG_PATH"]
        return self


def load_config(config_path: Optional[Path] = None) -> AppSettings:
    """Load settings from YAML + .env (env wins for secrets)."""

    load_dotenv(dotenv_path=Path(".env"))

    if config_path is None:
        for path in (Path("config/default.yaml"), Path("config/config.yaml"), Path("config.yaml")):
            if path.exists():
                config_path = path
                break
        else:
            return AppSettings().with_env_overrides()

    return AppSettings.from_yaml(config_path)


def load_bot_configuration(path: Path) -> BotConfiguration:
    """Read a BotConfiguration from YAML or JSON; the token may come from the env."""

    if not path.exists():
        raise FileNotFoundError(f"Bot configuration not found: {path}")

    text = path.read_text(encoding="utf-8")
    try:
        data: Dict[str, Any] = json.loads(text) if path.suffix == ".json" else (yaml.safe_load(text) or {})
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValueError(f"Invalid bot configuration file {path}: {e}") from e

    if not data.get("account_token") and not data.get("accountToken") and os.getenv("DERIV__API_TOKEN"):
        data["account_token"] = os.environ["DERIV__API_TOKEN"]

    try:
        return BotConfiguration.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Bot configuration validation error: {e}") from e
