"""Pydantic models for configuration schema."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TargetConfig(BaseModel):
    """The application whose source artifacts are being repaired."""

    root: Path = Path(".")
    language: Literal["javascript", "python"] = "javascript"


class CollectorConfig(BaseModel):
    """Error collection and deduplication configuration."""

    dedup_window: float = Field(5.0, gt=0.0, le=3600.0, description="Seconds")
    max_queue_size: int = Field(100, ge=1, le=10000)
    max_action_history: int = Field(50, ge=1, le=1000)
    actions_per_error: int = Field(10, ge=0, le=1000)
    critical_components: list[str] = ["character-creation", "game-init", "save-system"]

    @model_validator(mode="after")
    def check_action_window(self) -> "CollectorConfig":
        """Actions attached to an error cannot exceed the retained history."""
        if self.actions_per_error > self.max_action_history:
            raise ValueError("actions_per_error cannot exceed max_action_history")
        return self


class IngestionConfig(BaseModel):
    """WebSocket ingestion channel configuration."""

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = Field(3002, ge=1, le=65535)
    path: str = "/ws"

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Validate the WebSocket route."""
        if not v.startswith("/"):
            raise ValueError("Ingestion path must start with /")
        return v


class AnthropicConfig(BaseModel):
    """Anthropic-specific configuration."""

    api_key: str
    model: str = "claude-3-5-sonnet-20241022"
    max_tokens: int = 4096
    temperature: float = 0.2


class OracleConfig(BaseModel):
    """Fix-generation oracle configuration."""

    provider: Literal["anthropic", "none"] = "none"
    anthropic: AnthropicConfig | None = None
    timeout: float = Field(30.0, gt=0.0, le=600.0)
    cache_ttl: float = Field(300.0, ge=0.0, description="Seconds a response is reused")
    cache_size: int = Field(256, ge=1)
    max_requests_per_hour: int = Field(100, ge=1)
    success_bonus: int = Field(15, ge=0, le=100)
    complexity_penalty: int = Field(10, ge=0, le=100)
    complexity_line_threshold: int = Field(20, ge=1)
    context_lines: int = Field(15, ge=1, le=200)


class BrowserConfig(BaseModel):
    """Browser-automation configuration for functional replay."""

    enabled: bool = False
    target_url: str | None = None
    headless: bool = True
    navigation_timeout: float = Field(30.0, gt=0.0)
    settle_time: float = Field(1.0, ge=0.0, description="Seconds to wait after replay")
    max_sessions: int = Field(1, ge=1, le=8)


class ValidationConfig(BaseModel):
    """Validation pipeline configuration."""

    pass_threshold: float = Field(70.0, ge=0.0, le=100.0)
    regression_command: list[str] = []
    regression_timeout: int = Field(300, ge=1, le=3600)
    performance_multiple: float = Field(1.2, gt=1.0, le=10.0)
    benchmark_expression: str | None = None
    benchmark_runs: int = Field(5, ge=1, le=100)
    copy_ignore: list[str] = [".git", "node_modules", ".autofix", "__pycache__"]


class ApplierConfig(BaseModel):
    """Fix application and backup configuration."""

    backup_dir: Path = Path(".autofix/backups")


class LoopConfig(BaseModel):
    """Remediation loop configuration."""

    max_iterations: int = Field(10, ge=1, le=1000)
    confidence_threshold: int = Field(70, ge=0, le=100)
    parallelism: int = Field(3, ge=1, le=32)
    batch_size: int = Field(10, ge=1, le=1000)
    auto_apply: bool = True
    max_attempts_per_error: int = Field(3, ge=1, le=20)
    max_duration: float | None = Field(None, gt=0.0, description="Wall-clock budget in seconds")
    warmup: float = Field(0.0, ge=0.0, description="Seconds to collect before the first drain")
    state_file: Path = Path(".autofix/state.json")
    strategy_history_size: int = Field(200, ge=1)


class FileLoggingConfig(BaseModel):
    """File logging configuration."""

    enabled: bool = False
    path: Path = Path(".autofix/autofix.log")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["json", "console"] = "console"
    file: FileLoggingConfig = FileLoggingConfig()


class RetryConfig(BaseModel):
    """Retry configuration for transient oracle failures."""

    max_attempts: int = Field(3, ge=1, le=10)
    initial_delay: float = Field(1.0, ge=0.1, le=10.0)
    max_delay: float = Field(30.0, ge=1.0, le=300.0)
    exponential_base: float = Field(2.0, ge=1.5, le=4.0)


class AutofixConfig(BaseSettings):
    """Root configuration for autofix-loop."""

    target: TargetConfig = TargetConfig()
    collector: CollectorConfig = CollectorConfig()
    ingestion: IngestionConfig = IngestionConfig()
    oracle: OracleConfig = OracleConfig()
    browser: BrowserConfig = BrowserConfig()
    validation: ValidationConfig = ValidationConfig()
    applier: ApplierConfig = ApplierConfig()
    loop: LoopConfig = LoopConfig()
    logging: LoggingConfig = LoggingConfig()
    retry: RetryConfig = RetryConfig()

    model_config = SettingsConfigDict(
        env_prefix="AUTOFIX_",
        env_file=".env",
        env_nested_delimiter="__",
    )
