"""Learner interface shared by every model wrapper and composite.

A :class:`Learner` is a stateless description: a name, hyperparameters and
a declared capability set. ``train`` never mutates the learner or the task;
it returns a :class:`FittedLearner`, an immutable artifact holding what was
learned from one task. The same learner can therefore be trained on many
fold-local tasks concurrently.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Any, ClassVar, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from ..core.base import (
    OUTCOME_TYPES,
    ConfigurationError,
    LearnerTrainingFailure,
    NotFittedError,
    SuperLearningError,
    UnsupportedOutcomeType,
)
from ..data.task import Task, TaskSchema

logger = logging.getLogger(__name__)

__all__ = [
    "FittedLearner",
    "Learner",
    "check_is_fitted",
    "prediction_frame",
]

TaskLike = Union[Task, pd.DataFrame]


def _format_param(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:g}"
    if isinstance(value, (list, tuple)):
        return "-".join(_format_param(v) for v in value)
    return str(value)


def prediction_frame(
    name: str, predictions: NDArray[Any], outcome_levels: tuple[Any, ...] | None
) -> pd.DataFrame:
    """Wrap one learner's predictions as named columns.

    One-dimensional predictions become a single column ``name``; ``(n, K)``
    class probabilities become columns ``name__<level>``.
    """
    predictions = np.asarray(predictions)
    if predictions.ndim == 1:
        return pd.DataFrame({name: predictions})
    levels = outcome_levels or tuple(range(predictions.shape[1]))
    return pd.DataFrame(
        predictions, columns=[f"{name}__{level}" for level in levels]
    )


class Learner(abc.ABC):
    """Abstract base class for all learners.

    Subclasses declare capabilities through class attributes and implement
    ``_train`` and ``_predict``.

    Attributes:
        registry_name: Base name used to build default identifiers
        outcome_types: Outcome types the learner can be trained on
        supports_weights: Whether observation weights are used in fitting
        supports_offset: Whether offsets are used in fitting and prediction
        params: Hyperparameters of this learner
    """

    registry_name: ClassVar[str] = "learner"
    outcome_types: ClassVar[frozenset[str]] = OUTCOME_TYPES
    supports_weights: ClassVar[bool] = False
    supports_offset: ClassVar[bool] = False

    def __init__(self, name: str | None = None, **params: Any) -> None:
        """Initialize the learner.

        Args:
            name: Identifier; defaults to the registry name suffixed with
                the given hyperparameters
            **params: Learner-specific hyperparameters
        """
        self.params = dict(params)
        self._name = name

    @property
    def name(self) -> str:
        """Identifier used in stacks, risk tables and weights."""
        if self._name is not None:
            return self._name
        parts = [self.registry_name]
        for key in sorted(self.params):
            parts.append(f"{key}_{_format_param(self.params[key])}")
        return "_".join(parts)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name='{self.name}')"

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def check_capabilities(self, task: Task) -> None:
        """Fail fast when the task's outcome type is not supported.

        Raises:
            UnsupportedOutcomeType: If the outcome type is not declared
        """
        if task.outcome_type not in self.outcome_types:
            raise UnsupportedOutcomeType(self.name, task.outcome_type)

    def train(self, task: Task) -> FittedLearner:
        """Train on ``task`` and return the fitted artifact.

        Args:
            task: Training task; not modified

        Returns:
            FittedLearner owning the learned parameters

        Raises:
            UnsupportedOutcomeType: If the outcome type is not supported
            LearnerTrainingFailure: If the underlying fitting fails
        """
        self.check_capabilities(task)
        if not task.has_outcome:
            raise ConfigurationError("Training task must have an observed outcome")

        weights = task.weights if task.has_weights else None
        if weights is not None and not self.supports_weights:
            logger.warning("Learner '%s' does not support weights; ignoring them", self.name)
            weights = None

        offsets = task.offsets
        if offsets is not None and not self.supports_offset:
            logger.warning("Learner '%s' does not support offsets; ignoring them", self.name)
            offsets = None

        try:
            fit_object = self._train(task, weights, offsets)
        except SuperLearningError:
            raise
        except Exception as e:
            raise LearnerTrainingFailure(self.name, str(e)) from e

        return self._make_fitted(task, fit_object)

    def _make_fitted(self, task: Task, fit_object: Any) -> FittedLearner:
        return FittedLearner(
            learner=self,
            fit_object=fit_object,
            schema=task.schema,
            n_training_rows=task.n_rows,
        )

    @abc.abstractmethod
    def _train(
        self,
        task: Task,
        weights: NDArray[Any] | None,
        offsets: NDArray[Any] | None,
    ) -> Any:
        """Fit the model and return its fit object.

        Args:
            task: Training task
            weights: Observation weights, or None when unused
            offsets: Offsets, or None when unused

        Returns:
            Any object ``_predict`` can use
        """
        pass

    @abc.abstractmethod
    def _predict(self, fitted: FittedLearner, task: Task) -> NDArray[Any]:
        """Predict for the rows of ``task`` using ``fitted.fit_object``."""
        pass

    def _chain(self, fitted: FittedLearner, task: Task) -> Task:
        """Default task transform: covariates become this learner's predictions."""
        columns = prediction_frame(fitted.name, fitted.predict(task), task.outcome_levels)
        return task.next_in_chain(covariates=list(columns.columns), new_columns=columns)


@dataclass(frozen=True, eq=False)
class FittedLearner:
    """Immutable result of training one learner on one task.

    Attributes:
        learner: The learner that produced this fit
        fit_object: Learner-specific learned parameters
        schema: Column roles and encodings of the training task
        n_training_rows: Number of rows the learner was trained on
    """

    learner: Learner
    fit_object: Any
    schema: TaskSchema
    n_training_rows: int

    @property
    def name(self) -> str:
        return self.learner.name

    @property
    def outcome_type(self) -> str:
        return self.schema.outcome_type

    @property
    def outcome_levels(self) -> tuple[Any, ...] | None:
        return self.schema.outcome_levels

    def as_task(self, data: TaskLike) -> Task:
        """Coerce raw rows into a task using the training schema."""
        if isinstance(data, Task):
            return data
        if isinstance(data, pd.DataFrame):
            return self.schema.prepare(data)
        raise TypeError(f"Expected a Task or DataFrame, got {type(data).__name__}")

    def predict(self, data: TaskLike) -> NDArray[Any]:
        """Predict for a task or raw rows sharing the training covariate schema.

        Returns:
            ``(n,)`` predictions for continuous outcomes, ``(n,)``
            probabilities of the second level for binary outcomes, or an
            ``(n, K)`` probability matrix for categorical outcomes
        """
        task = self.as_task(data)
        return self.learner._predict(self, task)

    def chain(self, data: TaskLike) -> Task:
        """Task for the next pipeline stage."""
        return self.learner._chain(self, self.as_task(data))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name='{self.name}', n_training_rows={self.n_training_rows})"


def check_is_fitted(fitted: Any) -> FittedLearner:
    """Return ``fitted`` if it is a trained artifact.

    Raises:
        NotFittedError: If a learner (or anything else) is passed where the
            result of ``Learner.train`` is required
    """
    if isinstance(fitted, Learner):
        raise NotFittedError(
            f"Learner '{fitted.name}' has not been trained; call train() and use its result"
        )
    if not isinstance(fitted, FittedLearner):
        raise NotFittedError(f"Expected a fitted learner, got {type(fitted).__name__}")
    return fitted
