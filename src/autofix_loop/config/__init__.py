"""Configuration loading and validation."""

from .loader import load_config
from .schema import (
    AnthropicConfig,
    ApplierConfig,
    AutofixConfig,
    BrowserConfig,
    CollectorConfig,
    IngestionConfig,
    LoggingConfig,
    LoopConfig,
    OracleConfig,
    RetryConfig,
    TargetConfig,
    ValidationConfig,
)

__all__ = [
    # Loader
    "load_config",
    # Root config
    "AutofixConfig",
    # Sections
    "TargetConfig",
    "CollectorConfig",
    "IngestionConfig",
    "OracleConfig",
    "BrowserConfig",
    "ValidationConfig",
    "ApplierConfig",
    "LoopConfig",
    "LoggingConfig",
    "RetryConfig",
    # Provider-specific configs
    "AnthropicConfig",
]
