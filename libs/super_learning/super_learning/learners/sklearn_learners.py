"""Concrete learners backed by scikit-learn estimators.

Every learner here builds a fresh estimator per ``train`` call (via
``sklearn.base.clone``), so a learner instance can be trained on many tasks
concurrently without shared mutable state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import numpy as np
from numpy.typing import NDArray
from sklearn.base import BaseEstimator as SklearnBaseEstimator
from sklearn.base import clone, is_classifier, is_regressor
from sklearn.ensemble import (
    GradientBoostingClassifier,
    GradientBoostingRegressor,
    RandomForestClassifier,
    RandomForestRegressor,
)
from sklearn.linear_model import (
    ElasticNetCV,
    LinearRegression,
    LogisticRegression,
    LogisticRegressionCV,
    RidgeCV,
)
from sklearn.pipeline import Pipeline as SklearnPipeline
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import StandardScaler
from sklearn.utils.validation import has_fit_parameter

from ..core.base import ConfigurationError
from ..data.task import Task
from .base import Learner

logger = logging.getLogger(__name__)

__all__ = [
    "GLMLearner",
    "GLMNetLearner",
    "GradientBoostingLearner",
    "MeanLearner",
    "RandomForestLearner",
    "SklearnLearner",
]


@dataclass(frozen=True)
class EstimatorFit:
    """Fit object of a scikit-learn backed learner.

    Attributes:
        estimator: Fitted estimator, or None when the training outcome was
            constant and a constant prediction is used instead
        design_columns: Design matrix columns seen in training
        constant: Constant prediction used when ``estimator`` is None
    """

    estimator: Any
    design_columns: tuple[str, ...]
    constant: NDArray[Any] | None = None


def _class_probabilities(
    proba: NDArray[Any], classes: NDArray[Any], n_levels: int
) -> NDArray[Any]:
    """Expand predict_proba output to all outcome levels.

    A fold may lack some outcome levels; their probabilities are zero.
    """
    full = np.zeros((proba.shape[0], n_levels))
    full[:, np.asarray(classes).astype(int)] = proba
    return full


class MeanLearner(Learner):
    """Predicts the (weighted) training mean; the usual benchmark learner.

    For binary outcomes this is the outcome prevalence and for categorical
    outcomes the vector of class frequencies. With offsets, the mean of
    ``Y - offset`` is learned and the offset is added back at prediction.
    """

    registry_name = "mean"
    supports_weights = True
    supports_offset = True

    def _train(self, task, weights, offsets):
        y = task.Y
        if task.outcome_type == "categorical":
            n_levels = len(task.outcome_levels)
            one_hot = np.eye(n_levels)[y.astype(int)]
            return np.average(one_hot, axis=0, weights=weights), False
        if offsets is not None:
            y = y - offsets
        return np.average(y, weights=weights), offsets is not None

    def _predict(self, fitted, task):
        mean, uses_offset = fitted.fit_object
        if fitted.outcome_type == "categorical":
            return np.tile(mean, (task.n_rows, 1))
        predictions = np.full(task.n_rows, float(mean))
        offsets = task.offsets
        if uses_offset and offsets is not None:
            predictions = predictions + offsets
        return predictions


class SklearnLearner(Learner):
    """Wraps any scikit-learn estimator as a learner.

    Regressors support continuous outcomes; classifiers support binary and
    categorical outcomes and predict class probabilities.

    Args:
        estimator: Unfitted scikit-learn estimator (cloned for every fit)
        name: Identifier; defaults to the estimator's class name
        **params: Parameters set on the cloned estimator
    """

    registry_name = "sklearn"
    supports_weights = True

    def __init__(
        self,
        estimator: SklearnBaseEstimator | None = None,
        name: str | None = None,
        **params: Any,
    ) -> None:
        super().__init__(name=name, **params)
        self.estimator = estimator

    @property
    def name(self) -> str:
        if self._name is None and self.estimator is not None and type(self) is SklearnLearner:
            base = type(self.estimator).__name__.lower()
            suffix = super().name[len(self.registry_name):]
            return base + suffix
        return super().name

    @property
    def outcome_types(self) -> frozenset[str]:  # type: ignore[override]
        if self.estimator is None:
            return frozenset({"continuous", "binary", "categorical"})
        if is_classifier(self.estimator):
            return frozenset({"binary", "categorical"})
        if is_regressor(self.estimator):
            return frozenset({"continuous"})
        return frozenset({"continuous", "binary", "categorical"})

    def _make_estimator(self, task: Task) -> SklearnBaseEstimator:
        """Build an unfitted estimator for the task's outcome type."""
        if self.estimator is None:
            raise ConfigurationError(f"Learner '{self.name}' has no estimator")
        estimator = clone(self.estimator)
        if self.params:
            estimator.set_params(**self.params)
        return estimator

    @staticmethod
    def _fit_kwargs(estimator: Any, weights: NDArray[Any] | None) -> dict[str, Any]:
        if weights is None:
            return {}
        if isinstance(estimator, SklearnPipeline):
            step_name, step = estimator.steps[-1]
            if has_fit_parameter(step, "sample_weight"):
                return {f"{step_name}__sample_weight": weights}
        elif has_fit_parameter(estimator, "sample_weight"):
            return {"sample_weight": weights}
        logger.warning(
            "Estimator %s does not accept sample_weight; ignoring weights",
            type(estimator).__name__,
        )
        return {}

    def _train(self, task, weights, offsets):
        X = task.X
        y = task.Y
        design_columns = tuple(X.columns)

        if task.outcome_type != "continuous":
            y = y.astype(int)
            observed = np.unique(y)
            if len(observed) < 2:
                # Single-class training data: predict that class with certainty
                n_levels = len(task.outcome_levels)
                constant = np.zeros(n_levels)
                constant[observed[0]] = 1.0
                logger.debug(
                    "Learner '%s' saw a single outcome class; using constant predictions",
                    self.name,
                )
                return EstimatorFit(None, design_columns, constant)

        estimator = self._make_estimator(task)
        estimator.fit(X.to_numpy(), y, **self._fit_kwargs(estimator, weights))
        return EstimatorFit(estimator, design_columns)

    def _predict(self, fitted, task):
        fit: EstimatorFit = fitted.fit_object
        n_rows = task.n_rows

        if fit.estimator is None:
            probabilities = np.tile(fit.constant, (n_rows, 1))
        else:
            X = task.X.reindex(columns=list(fit.design_columns), fill_value=0.0).to_numpy()
            if fitted.outcome_type == "continuous":
                return np.asarray(fit.estimator.predict(X), dtype=float)
            probabilities = _class_probabilities(
                fit.estimator.predict_proba(X),
                fit.estimator.classes_,
                len(fitted.outcome_levels),
            )

        if fitted.outcome_type == "binary":
            return probabilities[:, 1]
        return probabilities


class GLMLearner(SklearnLearner):
    """Generalized linear model: linear regression or logistic regression."""

    registry_name = "glm"

    def __init__(self, name: str | None = None, **params: Any) -> None:
        super().__init__(estimator=None, name=name, **params)

    @property
    def outcome_types(self) -> frozenset[str]:  # type: ignore[override]
        return frozenset({"continuous", "binary", "categorical"})

    def _make_estimator(self, task):
        if task.outcome_type == "continuous":
            estimator = LinearRegression()
        else:
            estimator = LogisticRegression(max_iter=1000)
        if self.params:
            estimator.set_params(**self.params)
        return estimator


class GLMNetLearner(SklearnLearner):
    """Penalized GLM with the penalty strength chosen by internal CV.

    ``alpha`` mixes the penalties as in glmnet: 1 is the lasso, 0 is ridge,
    values in between are the elastic net. Covariates are standardized
    before fitting.

    Args:
        alpha: Elastic-net mixing parameter in [0, 1]
        n_folds: Internal folds for choosing the penalty strength
    """

    registry_name = "glmnet"

    def __init__(
        self,
        alpha: float = 1.0,
        n_folds: int = 5,
        name: str | None = None,
        **params: Any,
    ) -> None:
        if not 0.0 <= alpha <= 1.0:
            raise ConfigurationError(f"alpha must be in [0, 1], got {alpha}")
        super().__init__(estimator=None, name=name, **params)
        self.alpha = alpha
        self.n_folds = n_folds

    @property
    def name(self) -> str:
        if self._name is not None:
            return self._name
        return f"{super().name}_alpha_{self.alpha:g}"

    @property
    def outcome_types(self) -> frozenset[str]:  # type: ignore[override]
        return frozenset({"continuous", "binary", "categorical"})

    def _make_estimator(self, task):
        if task.outcome_type == "continuous":
            if self.alpha == 0.0:
                model = RidgeCV(alphas=np.logspace(-3, 3, 13))
            else:
                model = ElasticNetCV(l1_ratio=self.alpha, cv=self.n_folds, max_iter=5000)
        elif self.alpha == 0.0:
            model = LogisticRegressionCV(Cs=10, cv=self.n_folds, max_iter=2000)
        else:
            model = LogisticRegressionCV(
                Cs=10,
                cv=self.n_folds,
                penalty="elasticnet",
                solver="saga",
                l1_ratios=[self.alpha],
                max_iter=5000,
                random_state=0,
            )
        if self.params:
            model.set_params(**self.params)
        return make_pipeline(StandardScaler(), model)


class RandomForestLearner(SklearnLearner):
    """Random forest regression or classification.

    The forest is seeded with ``random_state=0`` unless a seed is passed, so
    repeated fits on the same task agree.
    """

    registry_name = "random_forest"

    def __init__(self, name: str | None = None, **params: Any) -> None:
        super().__init__(estimator=None, name=name, **params)

    @property
    def outcome_types(self) -> frozenset[str]:  # type: ignore[override]
        return frozenset({"continuous", "binary", "categorical"})

    def _make_estimator(self, task):
        settings = {"n_estimators": 100, "min_samples_leaf": 5, "random_state": 0, **self.params}
        if task.outcome_type == "continuous":
            return RandomForestRegressor(**settings)
        return RandomForestClassifier(**settings)


class GradientBoostingLearner(SklearnLearner):
    """Gradient boosted trees, seeded with ``random_state=0`` by default."""

    registry_name = "gradient_boosting"

    def __init__(self, name: str | None = None, **params: Any) -> None:
        super().__init__(estimator=None, name=name, **params)

    @property
    def outcome_types(self) -> frozenset[str]:  # type: ignore[override]
        return frozenset({"continuous", "binary", "categorical"})

    def _make_estimator(self, task):
        settings = {
            "n_estimators": 100,
            "max_depth": 3,
            "learning_rate": 0.1,
            "random_state": 0,
            **self.params,
        }
        if task.outcome_type == "continuous":
            return GradientBoostingRegressor(**settings)
        return GradientBoostingClassifier(**settings)

