"""Core exceptions, outcome types and configuration models."""

from .base import (
    OUTCOME_TYPES,
    ConfigurationError,
    LearnerTrainingFailure,
    NotFittedError,
    OutcomeType,
    SuperLearningError,
    TimeoutExceeded,
    UnsupportedOutcomeType,
)
from .config import ParallelConfig, SuperLearnerConfig, TaskConfig

__all__ = [
    "OUTCOME_TYPES",
    "OutcomeType",
    "SuperLearningError",
    "ConfigurationError",
    "NotFittedError",
    "UnsupportedOutcomeType",
    "LearnerTrainingFailure",
    "TimeoutExceeded",
    "ParallelConfig",
    "SuperLearnerConfig",
    "TaskConfig",
]
