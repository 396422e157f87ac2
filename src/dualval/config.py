"""
DualVal Configuration

Centralized configuration using Pydantic Settings.
All configuration is loaded from environment variables with sensible defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ScoringSettings(BaseSettings):
    """Confidence scoring weights, floors and threshold."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    confidence_threshold: float = Field(
        default=85.0, ge=0.0, le=100.0, alias="DUALVAL_CONFIDENCE_THRESHOLD"
    )

    # Factor weights (must sum to 1.0)
    weight_accuracy: float = Field(default=0.30, ge=0.0, le=1.0, alias="DUALVAL_WEIGHT_ACCURACY")
    weight_bias: float = Field(default=0.25, ge=0.0, le=1.0, alias="DUALVAL_WEIGHT_BIAS")
    weight_clarity: float = Field(default=0.20, ge=0.0, le=1.0, alias="DUALVAL_WEIGHT_CLARITY")
    weight_consistency: float = Field(
        default=0.15, ge=0.0, le=1.0, alias="DUALVAL_WEIGHT_CONSISTENCY"
    )
    weight_compliance: float = Field(
        default=0.10, ge=0.0, le=1.0, alias="DUALVAL_WEIGHT_COMPLIANCE"
    )

    # Hard per-factor floors
    floor_accuracy: float = Field(default=40.0, ge=0.0, le=100.0, alias="DUALVAL_FLOOR_ACCURACY")
    floor_bias: float = Field(default=50.0, ge=0.0, le=100.0, alias="DUALVAL_FLOOR_BIAS")
    floor_clarity: float = Field(default=40.0, ge=0.0, le=100.0, alias="DUALVAL_FLOOR_CLARITY")
    floor_consistency: float = Field(
        default=40.0, ge=0.0, le=100.0, alias="DUALVAL_FLOOR_CONSISTENCY"
    )
    floor_compliance: float = Field(
        default=50.0, ge=0.0, le=100.0, alias="DUALVAL_FLOOR_COMPLIANCE"
    )

    # Blend between heuristic analyzers and an external evaluator (when configured)
    evaluator_weight: float = Field(default=0.5, ge=0.0, le=1.0, alias="DUALVAL_EVALUATOR_WEIGHT")

    # Tolerance for numeric agreement (accuracy / consistency checks)
    numeric_tolerance: float = Field(default=5.0, ge=0.0)

    # Disclosures required per node type, e.g. {"summary": ["not a clinical diagnosis"]}
    required_disclosures: dict[str, list[str]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_weights(self) -> "ScoringSettings":
        """Factor weights must sum to 1.0."""
        total = sum(self.weights.values())
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Confidence factor weights must sum to 1.0, got {total:.4f}")
        return self

    @property
    def weights(self) -> dict[str, float]:
        """Factor weights keyed by factor name."""
        return {
            "accuracy": self.weight_accuracy,
            "bias": self.weight_bias,
            "clarity": self.weight_clarity,
            "consistency": self.weight_consistency,
            "compliance": self.weight_compliance,
        }

    @property
    def floors(self) -> dict[str, float]:
        """Hard floors keyed by factor name."""
        return {
            "accuracy": self.floor_accuracy,
            "bias": self.floor_bias,
            "clarity": self.floor_clarity,
            "consistency": self.floor_consistency,
            "compliance": self.floor_compliance,
        }


class WorkflowSettings(BaseSettings):
    """Iteration loop configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    max_iterations: int = Field(default=3, ge=1, le=10, alias="DUALVAL_MAX_ITERATIONS")
    revision_timeout_seconds: float = Field(
        default=7 * 24 * 3600, gt=0, alias="DUALVAL_REVISION_TIMEOUT"
    )
    consistency_sweep_interval: int = Field(
        default=2, ge=1, alias="DUALVAL_CONSISTENCY_SWEEP_INTERVAL"
    )
    regression_tolerance: float = Field(default=0.5, ge=0.0)
    scoring_concurrency: int = Field(default=10, ge=1, le=50, alias="DUALVAL_SCORING_CONCURRENCY")


class DisagreementSettings(BaseSettings):
    """Disagreement trigger and resolution policy."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    confidence_delta: float = Field(default=0.3, ge=0.0, le=1.0, alias="DUALVAL_CONFIDENCE_DELTA")
    severity_threshold: Literal["low", "medium", "high", "critical"] = Field(
        default="high", alias="DUALVAL_SEVERITY_THRESHOLD"
    )
    issue_count_threshold: int = Field(default=3, ge=0, alias="DUALVAL_ISSUE_COUNT_THRESHOLD")
    resolution_timeout_seconds: float = Field(
        default=60.0, gt=0, alias="DUALVAL_RESOLUTION_TIMEOUT"
    )
    enable_automatic_resolution: bool = Field(default=True, alias="DUALVAL_AUTO_RESOLUTION")
    automatic_resolution_margin: float = Field(default=0.2, ge=0.0, le=1.0)


class LearningSettings(BaseSettings):
    """Continuous learning batches and retraining policy."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    batch_size: int = Field(default=100, ge=1, le=10000, alias="DUALVAL_LEARNING_BATCH_SIZE")
    batch_interval_seconds: float = Field(
        default=300.0, gt=0, alias="DUALVAL_LEARNING_BATCH_INTERVAL"
    )
    insight_min_events: int = Field(default=3, ge=1, alias="DUALVAL_INSIGHT_MIN_EVENTS")
    insight_impact_threshold: float = Field(
        default=0.5, ge=0.0, le=1.0, alias="DUALVAL_INSIGHT_IMPACT_THRESHOLD"
    )
    max_insights_per_batch: int = Field(default=10, ge=1)
    max_epochs: int = Field(default=50, ge=1, le=1000)
    retraining_min_interval_seconds: float = Field(
        default=3600.0, ge=0, alias="DUALVAL_RETRAINING_MIN_INTERVAL"
    )
    disagreement_rate_trigger: float = Field(default=0.15, ge=0.0, le=1.0)
    auto_retraining: bool = Field(default=False, alias="DUALVAL_AUTO_RETRAINING")
    retraining_target_model: str = Field(default="validator", alias="DUALVAL_RETRAINING_TARGET")


class ProviderSettings(BaseSettings):
    """External generation/evaluation provider configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    generator_url: str | None = Field(default=None, alias="DUALVAL_GENERATOR_URL")
    evaluator_url: str | None = Field(default=None, alias="DUALVAL_EVALUATOR_URL")
    api_key: str | None = Field(default=None, alias="DUALVAL_PROVIDER_API_KEY")

    call_timeout_seconds: float = Field(default=30.0, gt=0, alias="DUALVAL_PROVIDER_TIMEOUT")
    max_retries: int = Field(default=3, ge=1, le=10, alias="DUALVAL_PROVIDER_MAX_RETRIES")
    retry_min_wait: float = Field(default=1.0, ge=0.0)
    retry_max_wait: float = Field(default=30.0, ge=0.0)

    # Concurrency ceilings per operation
    generation_concurrency: int = Field(default=5, ge=1, le=20)
    evaluation_concurrency: int = Field(default=10, ge=1, le=20)

    # Sliding window rate limit shared by all provider calls
    rate_limit_calls: int = Field(default=60, ge=1, alias="DUALVAL_RATE_LIMIT_CALLS")
    rate_limit_window_seconds: float = Field(default=60.0, gt=0, alias="DUALVAL_RATE_LIMIT_WINDOW")


class StorageSettings(BaseSettings):
    """Storage configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    db_path: Path = Field(default=Path("~/.dualval/dualval.db"), alias="DUALVAL_DB_PATH")
    trace_path: Path = Field(default=Path("~/.dualval/traces"), alias="DUALVAL_TRACE_PATH")
    cache_max_size: int = Field(default=5000, ge=1)

    @field_validator("db_path", "trace_path", mode="before")
    @classmethod
    def resolve_path(cls, v: str | Path) -> Path:
        """Resolve path and expand user."""
        return Path(v).expanduser().resolve()


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", alias="LOG_LEVEL"
    )
    log_format: Literal["json", "text"] = Field(default="json", alias="LOG_FORMAT")


class FeatureFlags(BaseSettings):
    """Feature flags for optional functionality."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    debug: bool = Field(default=False, alias="DUALVAL_DEBUG")
    strict_feedback: bool = Field(default=True, alias="DUALVAL_STRICT_FEEDBACK")


class Settings(BaseSettings):
    """
    Main DualVal settings aggregator.

    Usage:
        from dualval.config import get_settings
        settings = get_settings()
        print(settings.scoring.confidence_threshold)
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    workflow: WorkflowSettings = Field(default_factory=WorkflowSettings)
    disagreement: DisagreementSettings = Field(default_factory=DisagreementSettings)
    learning: LearningSettings = Field(default_factory=LearningSettings)
    providers: ProviderSettings = Field(default_factory=ProviderSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    features: FeatureFlags = Field(default_factory=FeatureFlags)


# Singleton pattern for settings
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings (useful for testing)."""
    global _settings
    _settings = None
