"""Engine configuration loaded from the environment."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .retry import BackoffKind, RetryPolicy


class WorkflowEngineSettings(BaseSettings):
    """Workflow automation engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_",
        env_file=".env",
        extra="ignore",
    )

    # Retry defaults for definitions that do not declare a policy
    default_max_attempts: int = Field(default=3, ge=1, le=20)
    default_backoff: BackoffKind = Field(default=BackoffKind.EXPONENTIAL)
    default_base_delay_seconds: float = Field(default=1.0, ge=0.0)
    default_max_delay_seconds: float = Field(default=300.0, ge=0.0)
    default_jitter_ratio: float = Field(default=0.1, ge=0.0, le=0.5)

    # Execution
    step_worker_threads: int = Field(
        default=4, ge=1, description="Threads for synchronous step bodies"
    )
    max_retained_executions: int = Field(
        default=1000, ge=1, description="Finished executions kept in memory"
    )
    persistence_retry_attempts: int = Field(default=3, ge=1)
    persistence_retry_delay_seconds: float = Field(default=0.5, ge=0.0)

    # Human review
    default_reviewer_id: str = Field(default="compliance-team")
    review_deadline_hours: float = Field(default=24.0, gt=0)

    # Triggers and drift monitoring
    trigger_check_interval_seconds: float = Field(default=30.0, gt=0)
    drift_check_interval_seconds: float = Field(default=3600.0, gt=0)
    drift_report_all_features: bool = Field(
        default=False, description="Emit signals for features below threshold too"
    )
    max_retained_drift_signals: int = Field(
        default=5000, ge=1, description="Drift signals kept in memory"
    )

    # Service wiring
    definitions_directory: str | None = Field(
        default=None, description="Directory of YAML workflow definitions"
    )
    configure_logging: bool = Field(default=True)
    start_trigger_loop: bool = Field(default=True)

    def default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.default_max_attempts,
            backoff=self.default_backoff,
            base_delay_seconds=self.default_base_delay_seconds,
            max_delay_seconds=self.default_max_delay_seconds,
            jitter_ratio=self.default_jitter_ratio,
        )


_settings: WorkflowEngineSettings | None = None


def get_settings() -> WorkflowEngineSettings:
    """Get the engine settings singleton."""
    global _settings

    if _settings is None:
        _settings = WorkflowEngineSettings()

    return _settings


def configure_settings(settings: WorkflowEngineSettings | None) -> None:
    """Replace the engine settings (for testing)."""
    global _settings
    _settings = settings
