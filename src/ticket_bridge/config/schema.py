"""Pydantic models for configuration schema."""

import re
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

TELEGRAM_TOKEN_PATTERN = re.compile(r"^\d+:[\w-]+$")


class TelegramConfig(BaseModel):
    """Telegram Bot API configuration (origin side)."""

    bot_token: str
    api_base_url: str = "https://api.telegram.org"
    poll_timeout: int = Field(25, ge=0, le=50, description="Long-poll timeout in seconds")
    request_timeout: float = Field(10.0, gt=0, description="Timeout for non-polling calls")
    messages_per_second: float = Field(25.0, gt=0, le=30)

    @field_validator("bot_token")
    @classmethod
    def validate_bot_token(cls, v: str) -> str:
        """Validate Telegram bot token format."""
        if not TELEGRAM_TOKEN_PATTERN.match(v):
            raise ValueError("Bot token must look like <bot id>:<secret>")
        return v


class SlackConfig(BaseModel):
    """Slack-specific configuration (destination side)."""

    bot_token: str
    app_token: str
    staff_user_ids: list[str] = []
    staff_channel: str | None = None  # ticket announcements, optional
    private_channels: bool = True

    @field_validator("bot_token")
    @classmethod
    def validate_bot_token(cls, v: str) -> str:
        """Validate Slack bot token format."""
        if not v.startswith("xoxb-"):
            raise ValueError("Bot token must start with xoxb-")
        return v

    @field_validator("app_token")
    @classmethod
    def validate_app_token(cls, v: str) -> str:
        """Validate Slack app token format."""
        if not v.startswith("xapp-"):
            raise ValueError("App token must start with xapp-")
        return v


class OriginConfig(BaseModel):
    """Origin (end-user) platform configuration."""

    provider: Literal["telegram"]
    telegram: TelegramConfig | None = None


class DestinationConfig(BaseModel):
    """Destination (staff) platform configuration."""

    provider: Literal["slack"]
    slack: SlackConfig | None = None


class DatabaseConfig(BaseModel):
    """Ticket datastore configuration."""

    path: Path = Path("data/tickets.db")
    timeout: float = Field(5.0, gt=0, description="Seconds to wait on a locked database")


class CategoryConfig(BaseModel):
    """A support category seeded into the datastore at startup."""

    id: int = Field(..., ge=1)
    name: str = Field(..., min_length=1)
    destination_category_ref: str = Field(..., min_length=1)
    transcript_category_ref: str | None = None


class BridgeSettings(BaseModel):
    """Relay behaviour."""

    send_timeout: float = Field(15.0, gt=0, le=120, description="Timeout per adapter call")
    redelivery_delay: float = Field(
        5.0, ge=0, le=300, description="Delay before a rejected event is redelivered"
    )
    default_category_id: int | None = None
    archive_on_close: bool = False
    user_close_requires_confirmation: bool = Field(
        False, description="A user /close only asks staff to close the ticket"
    )
    welcome_notice: str = (
        "Your ticket has been opened. A member of our team will reply here shortly."
    )
    claimed_notice: str = "A support agent has picked up your ticket."
    closing_notice: str = "Your ticket has been closed. Send a new message to open another."
    degraded_notice: str = (
        "Our support workspace is temporarily unreachable. Your message is saved and "
        "staff will see it once connectivity is restored."
    )


class OutageConfig(BaseModel):
    """Reconnect policy for platform adapters."""

    reconnect_delay: float = Field(10.0, gt=0, le=600)
    max_reconnect_delay: float = Field(300.0, gt=0, le=3600)
    transient_budget: int = Field(5, ge=1, description="Transient errors tolerated per window")
    budget_window: float = Field(3600.0, gt=0, description="Rolling window in seconds")

    @model_validator(mode="after")
    def check_delays(self) -> "OutageConfig":
        """Ensure the cap is not below the base delay."""
        if self.max_reconnect_delay < self.reconnect_delay:
            raise ValueError("max_reconnect_delay must be >= reconnect_delay")
        return self


class WatchdogConfig(BaseModel):
    """Supervisor restart policy."""

    initial_delay: float = Field(2.0, gt=0, le=60)
    max_delay: float = Field(30.0, gt=0, le=3600)
    max_restarts: int = Field(10, ge=1, description="Restarts tolerated per window")
    restart_window: float = Field(3600.0, gt=0)
    history_path: Path = Path("data/restart-history.json")
    grace_period: float = Field(5.0, gt=0, le=120)

    @model_validator(mode="after")
    def check_delays(self) -> "WatchdogConfig":
        """Ensure the cap is not below the base delay."""
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self


class FileLoggingConfig(BaseModel):
    """File logging configuration."""

    enabled: bool = False
    path: Path = Path("/var/log/ticket-bridge/bridge.log")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["json", "console"] = "json"
    file: FileLoggingConfig = FileLoggingConfig()


class RuntimeConfig(BaseModel):
    """Runtime configuration."""

    max_concurrent: int = Field(10, ge=1, le=100, description="Max concurrent inbound events")
    shutdown_timeout: float = Field(30.0, ge=1, le=300)
    health_interval: float = Field(30.0, ge=1, description="Seconds between health reports")
    health_file: Path | None = None
    metrics_file: Path | None = None  # Prometheus text export


class RetryConfig(BaseModel):
    """Retry configuration for adapter handshakes."""

    max_attempts: int = Field(3, ge=1, le=10)
    initial_delay: float = Field(1.0, ge=0.1, le=10.0)
    max_delay: float = Field(30.0, ge=1.0, le=300.0)


class BridgeConfig(BaseSettings):
    """Root configuration for ticket-bridge."""

    origin: OriginConfig
    destination: DestinationConfig
    database: DatabaseConfig = DatabaseConfig()
    categories: list[CategoryConfig] = []
    bridge: BridgeSettings = BridgeSettings()
    outage: OutageConfig = OutageConfig()
    watchdog: WatchdogConfig = WatchdogConfig()
    logging: LoggingConfig = LoggingConfig()
    runtime: RuntimeConfig = RuntimeConfig()
    retry: RetryConfig = RetryConfig()

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
    )
