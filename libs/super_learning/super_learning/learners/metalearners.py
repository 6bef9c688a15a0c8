"""Metalearners combining base-learner predictions into an ensemble.

A metalearner is an ordinary learner whose covariates are the prediction
columns of a Stack (one column per learner, or one per learner and outcome
level for categorical outcomes). It is trained on out-of-fold predictions
and learns one non-negative weight per base learner; weights sum to 1.
"""

from __future__ import annotations

import abc
import logging
import warnings
from dataclasses import dataclass
from typing import Any, Union

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import minimize, nnls

from ..core.base import ConfigurationError
from ..data.task import Task
from ..evaluation.losses import LossFunction, get_loss, loss_squared_error, risk
from .base import FittedLearner, Learner

logger = logging.getLogger(__name__)

__all__ = [
    "ConvexLossMetalearner",
    "DiscreteSelectorMetalearner",
    "FittedMetalearner",
    "Metalearner",
    "NNLSMetalearner",
    "combine_predictions",
    "default_metalearner",
]

WEIGHT_TOLERANCE = 1e-6


def combine_predictions(predictions: NDArray[Any], weights: NDArray[Any]) -> NDArray[Any]:
    """Weighted combination of stacked predictions.

    Args:
        predictions: ``(n, L)`` or ``(n, L, K)`` stacked predictions
        weights: ``(L,)`` learner weights

    Returns:
        ``(n,)`` or ``(n, K)`` combined predictions
    """
    predictions = np.asarray(predictions, dtype=float)
    if predictions.ndim == 3:
        return np.einsum("nlk,l->nk", predictions, weights)
    return predictions @ weights


def _learner_names(task: Task) -> list[str]:
    """Base learner names encoded in a metalearner task's covariates."""
    if task.outcome_type != "categorical":
        return list(task.covariates)
    levels = task.outcome_levels or ()
    n_levels = len(levels)
    suffix = f"__{levels[0]}"
    names = []
    for column in task.covariates[::n_levels]:
        names.append(column[: -len(suffix)] if column.endswith(suffix) else column)
    return names


def stacked_predictions(task: Task) -> tuple[list[str], NDArray[Any]]:
    """Recover learner names and the ``(n, L)`` or ``(n, L, K)`` array from a task."""
    names = _learner_names(task)
    values = task.get_covariate_frame().to_numpy(dtype=float)
    if task.outcome_type == "categorical":
        n_levels = len(task.outcome_levels or ())
        if values.shape[1] != len(names) * n_levels:
            raise ConfigurationError(
                "Metalearner covariates must hold one column per learner and outcome level"
            )
        values = values.reshape(values.shape[0], len(names), n_levels)
    return names, values


def _duplicate_columns(predictions: NDArray[Any]) -> NDArray[np.bool_]:
    """Mark learners whose predictions repeat an earlier learner's exactly."""
    n_learners = predictions.shape[1]
    duplicate = np.zeros(n_learners, dtype=bool)
    for j in range(n_learners):
        for i in range(j):
            if not duplicate[i] and np.array_equal(predictions[:, i], predictions[:, j]):
                duplicate[j] = True
                break
    return duplicate


@dataclass(frozen=True)
class MetalearnerFit:
    """Learned combination: one weight per base learner, in stack order."""

    learner_names: tuple[str, ...]
    weights: NDArray[Any]


class Metalearner(Learner):
    """Base class for metalearners producing convex combination weights.

    Subclasses implement ``_solve`` on the stacked prediction array. Learners
    whose predictions duplicate an earlier learner's receive weight 0 and
    the earlier learner is solved for alone.
    """

    supports_weights = True

    def _train(self, task, weights, offsets):
        names, predictions = stacked_predictions(task)
        y = task.Y

        duplicate = _duplicate_columns(predictions)
        if duplicate.any():
            warnings.warn(
                "Identical predictions from learners "
                f"{[n for n, d in zip(names, duplicate) if d]}; "
                "they receive weight 0 in favor of the first occurrence"
            )

        solved = self._solve(predictions[:, ~duplicate], y, weights, task)
        full = np.zeros(len(names))
        full[~duplicate] = solved
        return MetalearnerFit(tuple(names), full)

    @abc.abstractmethod
    def _solve(
        self,
        predictions: NDArray[Any],
        y: NDArray[Any],
        weights: NDArray[Any] | None,
        task: Task,
    ) -> NDArray[Any]:
        """Return non-negative weights summing to 1, one per prediction column."""
        pass

    def _make_fitted(self, task, fit_object):
        return FittedMetalearner(
            learner=self,
            fit_object=fit_object,
            schema=task.schema,
            n_training_rows=task.n_rows,
        )

    def _predict(self, fitted, task):
        names, predictions = stacked_predictions(task)
        fit: MetalearnerFit = fitted.fit_object
        if tuple(names) != fit.learner_names:
            raise ConfigurationError(
                f"Metalearner was trained on learners {list(fit.learner_names)}, "
                f"got {names}"
            )
        return combine_predictions(predictions, fit.weights)

    @staticmethod
    def _lowest_risk_weights(
        predictions: NDArray[Any],
        y: NDArray[Any],
        weights: NDArray[Any] | None,
        loss: LossFunction,
    ) -> NDArray[Any]:
        n_learners = predictions.shape[1]
        risks = [risk(loss(predictions[:, j], y), weights) for j in range(n_learners)]
        risks = np.nan_to_num(np.asarray(risks, dtype=float), nan=np.inf)
        selected = np.zeros(n_learners)
        selected[int(np.argmin(risks))] = 1.0
        return selected


@dataclass(frozen=True, eq=False)
class FittedMetalearner(FittedLearner):
    """Fitted metalearner exposing its combination weights."""

    @property
    def learner_names(self) -> list[str]:
        return list(self.fit_object.learner_names)

    @property
    def weights(self) -> dict[str, float]:
        return {
            name: float(weight)
            for name, weight in zip(self.fit_object.learner_names, self.fit_object.weights)
        }


class NNLSMetalearner(Metalearner):
    """Non-negative least squares on out-of-fold predictions.

    Categorical outcomes are handled by stacking the per-level probability
    columns against one-hot outcomes.

    Args:
        convex: Normalize the non-negative solution to sum to 1
    """

    registry_name = "nnls"

    def __init__(self, convex: bool = True, name: str | None = None) -> None:
        super().__init__(name=name)
        self.convex = convex

    def _solve(self, predictions, y, weights, task):
        if predictions.ndim == 3:
            n_rows, n_learners, n_levels = predictions.shape
            design = predictions.transpose(0, 2, 1).reshape(n_rows * n_levels, n_learners)
            target = np.eye(n_levels)[y.astype(int)].reshape(-1)
            row_weights = None if weights is None else np.repeat(weights, n_levels)
        else:
            design, target, row_weights = predictions, y, weights

        if row_weights is not None:
            scale = np.sqrt(row_weights)
            design = design * scale[:, None]
            target = target * scale

        coefficients, _ = nnls(design, target)
        total = coefficients.sum()
        if total <= 0 or not np.isfinite(total):
            logger.warning(
                "NNLS metalearner found no positive weight; using the lowest-risk learner"
            )
            loss = get_loss(None, "categorical") if predictions.ndim == 3 else loss_squared_error
            return self._lowest_risk_weights(predictions, y, weights, loss)
        if not self.convex:
            return coefficients
        return coefficients / total


class ConvexLossMetalearner(Metalearner):
    """Convex combination minimizing an arbitrary loss via SLSQP.

    Minimizes the (weighted) mean loss of ``sum_l w_l p_l`` subject to
    ``w >= 0`` and ``sum(w) = 1``. Works for continuous, binary and
    categorical predictions.

    Args:
        loss: Loss name or function; defaults to the outcome type's default
        max_iter: Maximum SLSQP iterations
    """

    registry_name = "solnp"

    def __init__(
        self,
        loss: Union[str, LossFunction, None] = None,
        max_iter: int = 500,
        name: str | None = None,
    ) -> None:
        super().__init__(name=name)
        self.loss = loss
        self.max_iter = max_iter

    def _solve(self, predictions, y, weights, task):
        loss = get_loss(self.loss, task.outcome_type)
        n_learners = predictions.shape[1]
        start = np.full(n_learners, 1.0 / n_learners)
        if n_learners == 1:
            return start

        def objective(w: NDArray[Any]) -> float:
            return risk(loss(combine_predictions(predictions, w), y), weights)

        result = minimize(
            objective,
            start,
            method="SLSQP",
            bounds=[(0.0, 1.0)] * n_learners,
            constraints=[{"type": "eq", "fun": lambda w: np.sum(w) - 1.0}],
            options={"maxiter": self.max_iter},
        )

        solution = np.clip(result.x, 0.0, None)
        total = solution.sum()
        if not result.success:
            logger.warning("Convex metalearner did not converge: %s", result.message)
        if total <= 0 or not np.all(np.isfinite(solution)):
            logger.warning("Convex metalearner found no usable weights; using uniform weights")
            return start
        return solution / total


class DiscreteSelectorMetalearner(Metalearner):
    """Weight 1 on the learner with the lowest cross-validated risk.

    Ties go to the learner listed first.

    Args:
        loss: Loss name or function; defaults to the outcome type's default
    """

    registry_name = "cv_selector"

    def __init__(
        self,
        loss: Union[str, LossFunction, None] = None,
        name: str | None = None,
    ) -> None:
        super().__init__(name=name)
        self.loss = loss

    def _solve(self, predictions, y, weights, task):
        return self._lowest_risk_weights(
            predictions, y, weights, get_loss(self.loss, task.outcome_type)
        )


def default_metalearner(outcome_type: str) -> Metalearner:
    """NNLS for continuous and binary outcomes; multinomial convex loss for categorical."""
    if outcome_type == "categorical":
        return ConvexLossMetalearner(loss="loglik_multinomial")
    return NNLSMetalearner()
