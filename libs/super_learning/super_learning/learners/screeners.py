"""Covariate screeners for use as the first stage of a Pipeline.

A screener learns a covariate subset from the training task. Its ``chain``
restricts the next stage's covariates to that subset; it does not produce
predictions of its own.
"""

from __future__ import annotations

import abc
import warnings
from typing import Any

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from sklearn.linear_model import LassoCV, LogisticRegressionCV
from sklearn.preprocessing import StandardScaler

from ..core.base import ConfigurationError
from ..data.task import Task
from .base import FittedLearner, Learner

__all__ = [
    "CorrelationScreener",
    "LassoScreener",
    "Screener",
]


def _covariate_design(task: Task) -> dict[str, pd.DataFrame]:
    """Numeric columns representing each covariate (dummies for categoricals)."""
    frame = task.get_covariate_frame()
    design = {}
    for column in task.covariates:
        if column in task.schema.categorical_levels:
            design[column] = pd.get_dummies(frame[column], dtype=float)
        else:
            design[column] = frame[[column]].astype(float)
    return design


def _outcome_design(task: Task) -> NDArray[Any]:
    y = task.Y
    if task.outcome_type == "categorical":
        return np.eye(len(task.outcome_levels))[y.astype(int)]
    return y.reshape(-1, 1)


def _abs_correlations(columns: NDArray[Any], targets: NDArray[Any]) -> NDArray[Any]:
    """Absolute Pearson correlations; zero-variance columns score 0."""
    centered = columns - columns.mean(axis=0)
    targets_centered = targets - targets.mean(axis=0)
    column_norm = np.sqrt((centered**2).sum(axis=0))
    target_norm = np.sqrt((targets_centered**2).sum(axis=0))
    denominator = np.outer(column_norm, target_norm)
    with np.errstate(divide="ignore", invalid="ignore"):
        correlations = np.abs(centered.T @ targets_centered) / denominator
    return np.nan_to_num(correlations, nan=0.0, posinf=0.0)


class Screener(Learner):
    """Base class for screeners.

    Args:
        num_screen: Keep at most this many covariates (highest scores first)
        min_screen: Always keep at least this many covariates
    """

    def __init__(
        self,
        num_screen: int | None = None,
        min_screen: int = 2,
        name: str | None = None,
        **params: Any,
    ) -> None:
        if num_screen is not None and num_screen < 1:
            raise ConfigurationError("num_screen must be at least 1")
        if min_screen < 1:
            raise ConfigurationError("min_screen must be at least 1")
        if num_screen is not None:
            params["num_screen"] = num_screen
        super().__init__(name=name, **params)
        self.num_screen = num_screen
        self.min_screen = min_screen

    @abc.abstractmethod
    def _score_covariates(
        self, task: Task, weights: NDArray[Any] | None
    ) -> tuple[NDArray[Any], NDArray[np.bool_]]:
        """Return a score per covariate and whether each is selected on its own."""
        pass

    def _train(self, task, weights, offsets):
        scores, selected = self._score_covariates(task, weights)
        # Stable sort keeps declaration order among ties
        order = np.argsort(-scores, kind="stable")
        chosen = set(np.flatnonzero(selected))

        for index in order:
            if len(chosen) >= min(self.min_screen, len(order)):
                break
            chosen.add(index)

        if self.num_screen is not None and len(chosen) > self.num_screen:
            ranked = [i for i in order if i in chosen]
            chosen = set(ranked[: max(self.num_screen, self.min_screen)])

        return tuple(c for i, c in enumerate(task.covariates) if i in chosen)

    def _predict(self, fitted, task):
        raise ConfigurationError(
            f"Screener '{self.name}' does not produce predictions; "
            "use it as a non-final Pipeline stage"
        )

    def _chain(self, fitted: FittedLearner, task: Task) -> Task:
        return task.next_in_chain(covariates=list(fitted.fit_object))


class CorrelationScreener(Screener):
    """Keep covariates most correlated with the outcome.

    A covariate is selected on its own when its absolute correlation exceeds
    ``threshold``; categorical covariates and categorical outcomes use the
    largest correlation over their indicator columns.

    Args:
        threshold: Absolute correlation needed for selection
    """

    registry_name = "screener_correlation"

    def __init__(
        self,
        threshold: float = 0.1,
        num_screen: int | None = None,
        min_screen: int = 2,
        name: str | None = None,
    ) -> None:
        super().__init__(num_screen=num_screen, min_screen=min_screen, name=name)
        self.threshold = threshold

    def _score_covariates(self, task, weights):
        targets = _outcome_design(task)
        scores = []
        for column, design in _covariate_design(task).items():
            values = design.to_numpy()
            if np.all(values.std(axis=0) == 0):
                warnings.warn(
                    f"Covariate '{column}' has zero variance; its correlation is set to 0"
                )
            scores.append(_abs_correlations(values, targets).max())
        scores = np.asarray(scores)
        return scores, scores > self.threshold


class LassoScreener(Screener):
    """Keep covariates with a non-zero lasso coefficient.

    The lasso penalty is chosen by internal cross-validation on standardized
    covariates. Covariates are ranked by their largest absolute coefficient.
    """

    registry_name = "screener_lasso"
    supports_weights = True

    def __init__(
        self,
        n_folds: int = 5,
        num_screen: int | None = None,
        min_screen: int = 2,
        random_state: int | None = None,
        name: str | None = None,
    ) -> None:
        super().__init__(num_screen=num_screen, min_screen=min_screen, name=name)
        self.n_folds = n_folds
        self.random_state = random_state

    def _score_covariates(self, task, weights):
        design = _covariate_design(task)
        blocks = list(design.values())
        X = StandardScaler().fit_transform(np.hstack([b.to_numpy() for b in blocks]))
        y = task.Y

        if task.outcome_type == "continuous":
            model = LassoCV(cv=self.n_folds, random_state=self.random_state, max_iter=5000)
            model.fit(X, y, sample_weight=weights)
            coefficients = np.abs(np.atleast_2d(model.coef_))
        else:
            model = LogisticRegressionCV(
                Cs=10,
                cv=self.n_folds,
                penalty="l1",
                solver="saga",
                max_iter=5000,
                random_state=self.random_state,
            )
            model.fit(X, y.astype(int), sample_weight=weights)
            coefficients = np.abs(np.atleast_2d(model.coef_))

        column_scores = coefficients.max(axis=0)
        scores = []
        start = 0
        for block in blocks:
            width = block.shape[1]
            scores.append(column_scores[start : start + width].max())
            start += width
        scores = np.asarray(scores)
        return scores, scores > 0
