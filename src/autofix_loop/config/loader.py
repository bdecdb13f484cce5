"""Configuration loader with YAML parsing and environment variable substitution."""

import os
import re
from pathlib import Path

import yaml

from .schema import AutofixConfig


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


def load_config(path: Path | None) -> AutofixConfig:
    """
    Load configuration from YAML file with environment variable substitution.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated AutofixConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If environment variables are missing or config is invalid
        ValidationError: If config doesn't match schema
    """
    if path is None:
        config = AutofixConfig()
        validate_config(config)
        return config

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with path.open() as f:
        raw_yaml = f.read()

    yaml_with_env = substitute_env_vars(raw_yaml)

    # An empty file is a valid "all defaults" config
    config_dict = yaml.safe_load(yaml_with_env) or {}

    config = AutofixConfig.model_validate(config_dict)

    validate_config(config)

    return config


def validate_config(config: AutofixConfig) -> None:
    """
    Perform additional cross-field validation.

    Args:
        config: Configuration to validate

    Raises:
        ValueError: If dependent configuration is missing
    """
    if config.oracle.provider == "anthropic" and config.oracle.anthropic is None:
        raise ValueError("Anthropic provider selected but anthropic config missing")

    if config.browser.enabled and not config.browser.target_url:
        raise ValueError("Browser enabled but browser.target_url missing")

    if config.validation.benchmark_expression and not config.browser.enabled:
        raise ValueError("validation.benchmark_expression requires an enabled browser")
