"""Configuration for observability components."""

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TracingConfig(BaseModel):
    """Configuration for distributed tracing."""

    enabled: bool = True
    service_name: str = "workflow-automation"
    max_attribute_length: int = 1024


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: str = "INFO"
    format: str = "json"  # json or console
    enable_correlation: bool = True
    enable_tracing_integration: bool = True
    cache_logger_on_first_use: bool = True
    processors: list[str] = Field(
        default_factory=lambda: [
            "structlog.contextvars.merge_contextvars",
            "structlog.processors.TimeStamper",
            "structlog.processors.add_log_level",
            "structlog.processors.StackInfoRenderer",
        ]
    )


class ObservabilityConfig(BaseSettings):
    """Main observability configuration."""

    model_config = SettingsConfigDict(
        env_prefix="OBSERVABILITY_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    enabled: bool = True
    environment: str = "development"
    service_name: str = "workflow-automation"
    service_version: str = "1.0.0"

    tracing: TracingConfig = Field(default_factory=TracingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


_observability_config: ObservabilityConfig | None = None


def get_observability_config() -> ObservabilityConfig:
    """Get the observability configuration singleton."""
    global _observability_config

    if _observability_config is None:
        _observability_config = ObservabilityConfig()

    return _observability_config
