"""
config/settings.py — chatbridge Runtime Settings

Merges config.yaml (defaults/structure) with .env (secrets).
Pydantic-powered — all fields are validated and typed.

  - Field validators reject bad ports, clock times, log levels and unknown
    short-link modes at parse time
  - validate_all() performs cross-field startup validation and raises
    ConfigError with a clear, human-readable message listing every problem
  - load_settings() respects CHATBRIDGE_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

DEFAULT_SHORTLINK_API = "https://www.urlc.cn/api/url/add"
DEFAULT_SUSPENDED_NOTICE = "消息推送受限，不再向频道转发消息！"


class ShortLinkMode(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"
    REDACT = "redact"


# Option values used by earlier releases of the bridge
_LEGACY_SHORTLINK_MODES = {
    "true": ShortLinkMode.ENABLED,
    "false": ShortLinkMode.DISABLED,
    "delete": ShortLinkMode.REDACT,
}


def _check_clock(value: tuple[int, int], name: str) -> tuple[int, int]:
    hour, minute = value
    if not (0 <= hour <= 23):
        raise ValueError(f"schedule.{name} hour must be 0-23, got {hour}")
    if not (0 <= minute <= 59):
        raise ValueError(f"schedule.{name} minute must be 0-59, got {minute}")
    return value


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class GatewayConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 5555

    @field_validator("port")
    @classmethod
    def _valid_port(cls, v: int) -> int:
        if not (0 <= v <= 65535):
            raise ValueError(f"gateway.port must be between 0 and 65535, got {v}")
        return v


class ForwardingConfig(BaseModel):
    # chat → game
    chat_trigger_enabled: bool = False
    chat_trigger: str = "mc"
    # game → chat
    game_trigger_enabled: bool = False
    game_trigger: str = "pd"
    notice_sender: str = "Koishi"
    suspended_notice: str = DEFAULT_SUSPENDED_NOTICE

    @field_validator("chat_trigger", "game_trigger")
    @classmethod
    def _single_token(cls, v: str) -> str:
        v = v.strip()
        if not v or " " in v:
            raise ValueError("trigger commands must be a single non-empty word")
        return v


class ShortLinkConfig(BaseModel):
    mode: ShortLinkMode = ShortLinkMode.DISABLED
    api_url: str = DEFAULT_SHORTLINK_API
    placeholder: str = "省略"
    timeout_seconds: float = 10.0

    @field_validator("mode", mode="before")
    @classmethod
    def _coerce_mode(cls, v: Any) -> Any:
        if isinstance(v, bool):
            return ShortLinkMode.ENABLED if v else ShortLinkMode.DISABLED
        if isinstance(v, str):
            lowered = v.strip().lower()
            if lowered in _LEGACY_SHORTLINK_MODES:
                return _LEGACY_SHORTLINK_MODES[lowered]
            return lowered
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("shortlink.timeout_seconds must be > 0")
        return v


class DeliveryConfig(BaseModel):
    primary_platform: Optional[str] = None
    passive: bool = False
    flush_delay_seconds: float = 2.0
    fallback_enabled: bool = False
    fallback_channel: str = ""

    @field_validator("flush_delay_seconds")
    @classmethod
    def _non_negative_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("delivery.flush_delay_seconds must be >= 0")
        return v


class ScheduleConfig(BaseModel):
    enabled: bool = False
    stop: tuple[int, int] = (0, 0)
    start: tuple[int, int] = (6, 0)

    @field_validator("stop")
    @classmethod
    def _valid_stop(cls, v: tuple[int, int]) -> tuple[int, int]:
        return _check_clock(v, "stop")

    @field_validator("start")
    @classmethod
    def _valid_start(cls, v: tuple[int, int]) -> tuple[int, int]:
        return _check_clock(v, "start")

    @model_validator(mode="after")
    def _distinct_boundaries(self) -> "ScheduleConfig":
        if self.start == self.stop:
            raise ValueError("schedule.start and schedule.stop must differ")
        return self


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 10
    backup_count: int = 5
    console_output: bool = True
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    chatbridge runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # -- Secrets from .env ---------------------------------------------------
    gateway_token: Optional[str] = Field(default=None, alias="GATEWAY_TOKEN")
    shortlink_secret: Optional[str] = Field(default=None, alias="SHORTLINK_SECRET")
    telegram_bot_token: Optional[str] = Field(default=None, alias="TELEGRAM_BOT_TOKEN")

    # -- Structured config (from config.yaml) --------------------------------
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    channels: dict[str, str] = Field(default_factory=dict)
    forwarding: ForwardingConfig = Field(default_factory=ForwardingConfig)
    shortlink: ShortLinkConfig = Field(default_factory=ShortLinkConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("channels", mode="before")
    @classmethod
    def _stringify_channel_ids(cls, v: Any) -> Any:
        # YAML turns numeric chat ids into ints
        if isinstance(v, dict):
            return {str(k): str(cid) for k, cid in v.items()}
        return v

    # -- Convenience properties ----------------------------------------------

    @property
    def primary_platform(self) -> Optional[str]:
        """Platform whose channel is swapped for the fallback on rate limits."""
        if self.delivery.primary_platform:
            return self.delivery.primary_platform
        return next(iter(self.channels), None)

    @property
    def fallback_channel(self) -> Optional[str]:
        if self.delivery.fallback_enabled and self.delivery.fallback_channel:
            return self.delivery.fallback_channel
        return None

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    def validate_required_for_interface(self, interface: str) -> list[str]:
        """Return list of missing required secrets for a given interface."""
        missing = []
        if self.gateway.enabled and not self.gateway_token:
            missing.append("GATEWAY_TOKEN")
        if interface == "telegram" and not self.telegram_bot_token:
            missing.append("TELEGRAM_BOT_TOKEN")
        if self.shortlink.mode is ShortLinkMode.ENABLED and not self.shortlink_secret:
            missing.append("SHORTLINK_SECRET")
        return missing

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches cross-field problems that Pydantic can't see.
        """
        errors: list[str] = []

        if self.gateway.enabled and not self.gateway_token:
            errors.append(
                "gateway.enabled is true but GATEWAY_TOKEN is not set. "
                "Add it to your .env file."
            )

        if self.shortlink.mode is ShortLinkMode.ENABLED and not self.shortlink_secret:
            errors.append(
                "shortlink.mode is 'enabled' but SHORTLINK_SECRET is not set. "
                "Add it to .env or switch the mode to 'disabled' / 'redact'."
            )

        if not self.channels:
            errors.append(
                "channels is empty. Map at least one platform to a channel id, "
                "e.g. channels: {telegram: '-1001234567890'}."
            )
        elif self.primary_platform not in self.channels:
            errors.append(
                f"delivery.primary_platform '{self.primary_platform}' has no "
                f"entry in channels ({sorted(self.channels)})."
            )

        if self.delivery.fallback_enabled and not self.delivery.fallback_channel.strip():
            errors.append(
                "delivery.fallback_enabled is true but delivery.fallback_channel "
                "is empty."
            )

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nchatbridge startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader
# ─────────────────────────────────────────────────────────────────────────────

_KNOWN_SECTIONS = {
    "gateway", "channels", "forwarding", "shortlink",
    "delivery", "schedule", "logging",
}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. CHATBRIDGE_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("CHATBRIDGE_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    resolved_path = _resolve_config_path(config_path)
    yaml_data = _load_yaml(resolved_path)

    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    return Settings(**init_kwargs)

