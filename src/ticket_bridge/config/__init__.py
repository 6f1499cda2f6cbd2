"""Configuration loading and validation."""

from .loader import load_config
from .schema import (
    BridgeConfig,
    BridgeSettings,
    CategoryConfig,
    DatabaseConfig,
    DestinationConfig,
    OriginConfig,
    OutageConfig,
    SlackConfig,
    TelegramConfig,
    WatchdogConfig,
)

__all__ = [
    # Loader
    "load_config",
    # Root config
    "BridgeConfig",
    # Top-level configs
    "OriginConfig",
    "DestinationConfig",
    "DatabaseConfig",
    "CategoryConfig",
    "BridgeSettings",
    "OutageConfig",
    "WatchdogConfig",
    # Provider-specific configs
    "TelegramConfig",
    "SlackConfig",
]
