"""Ensemble learning specific configuration."""

from pydantic import Field, field_validator
from pydantic_settings import SettingsConfigDict

from .base import BaseConfiguration, Environment


class SuperLearningSettings(BaseConfiguration):
    """Environment-driven defaults for ensemble training jobs.

    Every field can be overridden with a ``SUPER_LEARNING_``-prefixed
    environment variable, e.g. ``SUPER_LEARNING_N_JOBS=4``.
    """

    model_config = SettingsConfigDict(
        env_prefix="SUPER_LEARNING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Cross-validation defaults
    default_n_folds: int = Field(
        default=10, description="Default number of cross-validation folds"
    )
    default_fold_fun: str = Field(
        default="stratified", description="Default fold generation strategy"
    )
    random_state: int | None = Field(
        default=None, description="Default random seed for fold generation"
    )

    # Computation
    n_jobs: int = Field(default=1, description="Number of parallel workers")
    parallel_backend: str = Field(
        default="threading", description="joblib backend for parallel training"
    )
    learner_timeout_seconds: float | None = Field(
        default=None, description="Timeout for a single learner's training call"
    )
    fold_timeout_seconds: float | None = Field(
        default=None, description="Timeout for a single cross-validation fold"
    )

    # Logging
    log_level: str | None = Field(
        default=None, description="Explicit log level overriding the environment"
    )

    @field_validator("default_n_folds")
    @classmethod
    def validate_default_n_folds(cls, v: int) -> int:
        """Validate fold count allows a train/validation split."""
        if v < 2:
            raise ValueError("default_n_folds must be at least 2")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str | None) -> str | None:
        """Validate log level is a standard logging level name."""
        if v is None:
            return v
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}")
        return v.upper()

    def validate_configuration(self) -> list[str]:
        """Validate ensemble learning specific configuration."""
        issues = super().validate_configuration()

        if self.environment == Environment.PRODUCTION:
            if self.learner_timeout_seconds is None:
                issues.append(
                    "A learner timeout is recommended in production so a single "
                    "learner cannot stall an ensemble fit"
                )
            if self.random_state is None:
                issues.append("Fold generation is not reproducible without random_state")

        if self.n_jobs != 1 and self.parallel_backend == "sequential":
            issues.append("n_jobs is ignored with the sequential backend")

        if self.default_n_folds > 20:
            issues.append("More than 20 folds multiplies training cost substantially")

        return issues
