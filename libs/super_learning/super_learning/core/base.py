"""Base exceptions and shared type definitions for ensemble learning.

This module provides the exception hierarchy used across the library
and the outcome-type vocabulary that learners declare capabilities against.
"""

from __future__ import annotations

from typing import Literal

OutcomeType = Literal["continuous", "binary", "categorical"]

OUTCOME_TYPES: frozenset[str] = frozenset({"continuous", "binary", "categorical"})


class SuperLearningError(Exception):
    """Base exception class for ensemble learning specific errors."""

    pass


class ConfigurationError(SuperLearningError, ValueError):
    """Raised when a task, fold plan or learner is misconfigured.

    Configuration errors are always raised before any training starts.
    """

    pass


class NotFittedError(SuperLearningError):
    """Raised when a fitted artifact is required but not available."""

    pass


class UnsupportedOutcomeType(SuperLearningError):
    """Raised when a learner cannot handle the task's outcome type.

    Attributes:
        learner_name: Identifier of the learner that rejected the task
        outcome_type: Outcome type of the rejected task
    """

    def __init__(self, learner_name: str, outcome_type: str) -> None:
        self.learner_name = learner_name
        self.outcome_type = outcome_type
        super().__init__(
            f"Learner '{learner_name}' does not support {outcome_type} outcomes"
        )

    def __reduce__(self):
        return (type(self), (self.learner_name, self.outcome_type))


class LearnerTrainingFailure(SuperLearningError):
    """Raised when a single learner fails to train.

    The underlying exception is always chained as ``__cause__``.

    Attributes:
        learner_name: Identifier of the failed learner
        reason: Description of the failure
        fold_id: Cross-validation fold in which the failure occurred, if any
    """

    def __init__(
        self,
        learner_name: str,
        reason: str,
        fold_id: int | None = None,
    ) -> None:
        self.learner_name = learner_name
        self.reason = reason
        self.fold_id = fold_id
        location = f" in fold {fold_id}" if fold_id is not None else ""
        super().__init__(f"Learner '{learner_name}' failed{location}: {reason}")

    def __reduce__(self):
        return (type(self), (self.learner_name, self.reason, self.fold_id))


class TimeoutExceeded(LearnerTrainingFailure):
    """Raised when a learner exceeds its training timeout."""

    def __init__(
        self,
        learner_name: str,
        timeout_seconds: float,
        fold_id: int | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            learner_name,
            f"training exceeded timeout of {timeout_seconds:g} seconds",
            fold_id=fold_id,
        )

    def __reduce__(self):
        return (type(self), (self.learner_name, self.timeout_seconds, self.fold_id))


def tag_fold(failure: LearnerTrainingFailure, fold_id: int) -> LearnerTrainingFailure:
    """Return a copy of a training failure tagged with the fold it occurred in."""
    if isinstance(failure, TimeoutExceeded):
        tagged: LearnerTrainingFailure = TimeoutExceeded(
            failure.learner_name, failure.timeout_seconds, fold_id=fold_id
        )
    else:
        tagged = LearnerTrainingFailure(
            failure.learner_name, failure.reason, fold_id=fold_id
        )
    tagged.__cause__ = failure.__cause__
    return tagged
