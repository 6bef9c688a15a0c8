"""Configuration models for tasks, parallel execution and ensemble fitting."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Literal, Union

from pydantic import BaseModel, Field, field_validator

if TYPE_CHECKING:
    from shared.config import SuperLearningSettings

FoldFunction = Callable[..., Any]


class TaskConfig(BaseModel):
    """Options controlling how a Task is built from a raw table.

    Attributes:
        n_folds: Number of cross-validation folds (V)
        fold_fun: Fold generation strategy name or a custom callable
        random_state: Seed for fold generation
        outcome_type: Outcome type, or "auto" to detect it from the data
        impute_missing: Impute missing covariates and add indicator columns
    """

    n_folds: int = Field(default=10, description="Number of cross-validation folds")

    fold_fun: Union[
        Literal["stratified", "vfold", "grouped"], FoldFunction
    ] = Field(default="stratified", description="Fold generation strategy")

    random_state: Union[int, None] = Field(
        default=None, description="Seed for fold generation"
    )

    outcome_type: Literal["auto", "continuous", "binary", "categorical"] = Field(
        default="auto", description="Outcome type or automatic detection"
    )

    impute_missing: bool = Field(
        default=True, description="Impute missing covariate values"
    )

    model_config = {"arbitrary_types_allowed": True, "frozen": True}

    @field_validator("n_folds")
    @classmethod
    def validate_n_folds(cls, v: int) -> int:
        """Validate fold count allows a train/validation split."""
        if v < 2:
            raise ValueError("n_folds must be at least 2")
        return v

    @classmethod
    def from_settings(cls, settings: SuperLearningSettings, **overrides: Any) -> TaskConfig:
        """Build a task configuration from environment-driven settings."""
        values: dict[str, Any] = {
            "n_folds": settings.default_n_folds,
            "fold_fun": settings.default_fold_fun,
            "random_state": settings.random_state,
        }
        values.update(overrides)
        return cls(**values)


class ParallelConfig(BaseModel):
    """Configuration for parallel training of folds and stack constituents."""

    n_jobs: int = Field(default=1, description="Number of parallel workers")

    parallel_backend: Literal["threading", "loky", "multiprocessing", "sequential"] = (
        Field(default="threading", description="joblib backend")
    )

    learner_timeout_seconds: Union[float, None] = Field(
        default=None, gt=0.0, description="Timeout for one learner's training call"
    )

    fold_timeout_seconds: Union[float, None] = Field(
        default=None, gt=0.0, description="Timeout for one cross-validation fold"
    )

    model_config = {"frozen": True}

    @field_validator("n_jobs")
    @classmethod
    def validate_n_jobs(cls, v: int) -> int:
        """Validate n_jobs follows the joblib convention."""
        if v == 0:
            raise ValueError("n_jobs cannot be 0")
        return v

    @property
    def use_parallel(self) -> bool:
        """Whether joblib workers should be used."""
        return self.n_jobs != 1 and self.parallel_backend != "sequential"


class SuperLearnerConfig(BaseModel):
    """Configuration for fitting a Super Learner ensemble.

    Attributes:
        parallel: Parallel execution settings for folds and constituents
        on_learner_failure: "raise" to fail the ensemble when any base learner
            fails, or "drop" to exclude failing learners from every fold
        keep_fold_fits: Retain the fold-local fitted stacks in the fit artifact
        random_state: Seed for external holdout splits
    """

    parallel: ParallelConfig = Field(default_factory=ParallelConfig)

    on_learner_failure: Literal["raise", "drop"] = Field(
        default="raise", description="Policy for failing base learners"
    )

    keep_fold_fits: bool = Field(
        default=False, description="Retain fold-local fitted stacks"
    )

    random_state: Union[int, None] = Field(
        default=None, description="Seed for external holdout splits"
    )

    model_config = {"frozen": True}

    @classmethod
    def from_settings(
        cls, settings: SuperLearningSettings, **overrides: Any
    ) -> SuperLearnerConfig:
        """Build an ensemble configuration from environment-driven settings."""
        parallel = ParallelConfig(
            n_jobs=settings.n_jobs,
            parallel_backend=settings.parallel_backend,
            learner_timeout_seconds=settings.learner_timeout_seconds,
            fold_timeout_seconds=settings.fold_timeout_seconds,
        )
        values: dict[str, Any] = {"parallel": parallel, "random_state": settings.random_state}
        values.update(overrides)
        return cls(**values)
