"""Configuration loader with YAML parsing and environment variable substitution."""

import os
import re
from pathlib import Path

import yaml

from .schema import BridgeConfig


def substitute_env_vars(text: str) -> str:
    """
    Replace ${VAR_NAME} patterns with environment variable values.

    Args:
        text: Text containing ${VAR_NAME} patterns

    Returns:
        Text with environment variables substituted

    Raises:
        ValueError: If a referenced environment variable is not found
    """

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ValueError(f"Environment variable {var_name} not found")
        return value

    return re.sub(r"\$\{([^}]+)\}", replacer, text)


def load_config(path: Path) -> BridgeConfig:
    """
    Load configuration from YAML file with environment variable substitution.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated BridgeConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If environment variables are missing or config is invalid
        ValidationError: If config doesn't match schema
    """
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with path.open() as f:
        raw_yaml = f.read()

    config_dict = yaml.safe_load(substitute_env_vars(raw_yaml))
    if not isinstance(config_dict, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")

    config = BridgeConfig.model_validate(config_dict)
    validate_config(config)

    return config


def validate_config(config: BridgeConfig) -> None:
    """
    Perform additional cross-field validation.

    Ensures provider-specific sections exist for the selected providers and
    that category references are consistent.

    Args:
        config: Configuration to validate

    Raises:
        ValueError: If provider-specific config is missing or categories clash
    """
    if config.origin.provider == "telegram" and config.origin.telegram is None:
        raise ValueError("Telegram provider selected but telegram config missing")

    if config.destination.provider == "slack" and config.destination.slack is None:
        raise ValueError("Slack provider selected but slack config missing")

    ids = [category.id for category in config.categories]
    if len(ids) != len(set(ids)):
        raise ValueError("Category ids must be unique")

    names = [category.name.lower() for category in config.categories]
    if len(names) != len(set(names)):
        raise ValueError("Category names must be unique (case-insensitive)")

    default_id = config.bridge.default_category_id
    if default_id is not None and default_id not in ids:
        raise ValueError(f"default_category_id {default_id} is not a configured category")
