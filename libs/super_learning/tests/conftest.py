"""Shared test fixtures for the super learning library.

This module provides seeded synthetic tables, ready-made tasks and a few
purpose-built learners (failing, slow, leak-detecting) used across the
test suite.
"""

import time

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from super_learning.data.synthetic import make_ensemble_data
from super_learning.data.task import Task
from super_learning.learners import GLMLearner, Learner, MeanLearner, RandomForestLearner


class FailingLearner(Learner):
    """Learner whose training always raises."""

    registry_name = "failing"

    def _train(self, task, weights, offsets):
        raise RuntimeError("singular matrix")

    def _predict(self, fitted, task):
        return np.zeros(task.n_rows)


class BinaryOnlyLearner(Learner):
    """Learner declaring support for binary outcomes only."""

    registry_name = "binary_only"
    outcome_types = frozenset({"binary"})

    def _train(self, task, weights, offsets):
        return float(np.mean(task.Y))

    def _predict(self, fitted, task):
        return np.full(task.n_rows, fitted.fit_object)


class SlowLearner(Learner):
    """Mean learner that sleeps before fitting."""

    registry_name = "slow"

    def __init__(self, seconds=2.0, name=None):
        super().__init__(name=name)
        self.seconds = seconds

    def _train(self, task, weights, offsets):
        time.sleep(self.seconds)
        return float(np.mean(task.Y))

    def _predict(self, fitted, task):
        return np.full(task.n_rows, fitted.fit_object)


class LeakDetectorLearner(Learner):
    """Predicts 1 for rows seen in training and 0 otherwise.

    Rows are recognized by the ``row_key`` covariate.
    """

    registry_name = "leak_detector"

    def _train(self, task, weights, offsets):
        return frozenset(task.get_covariate_frame()["row_key"].tolist())

    def _predict(self, fitted, task):
        keys = task.get_covariate_frame()["row_key"].to_numpy()
        return np.array([1.0 if key in fitted.fit_object else 0.0 for key in keys])


class ConstantLearner(Learner):
    """Predicts a fixed value regardless of the data."""

    registry_name = "constant"

    def __init__(self, value=0.0, name=None):
        super().__init__(name=name, value=value)
        self.value = value

    def _train(self, task, weights, offsets):
        return self.value

    def _predict(self, fitted, task):
        return np.full(task.n_rows, float(fitted.fit_object))


@pytest.fixture
def random_state():
    """Provide a consistent random state for reproducible tests."""
    return 42


@pytest.fixture
def regression_data(random_state):
    """Continuous outcome table with noise covariates and a categorical site."""
    return make_ensemble_data(
        n_samples=200, outcome_type="continuous", n_noise=2, random_state=random_state
    )


@pytest.fixture
def classification_data(random_state):
    """Binary outcome table."""
    return make_ensemble_data(
        n_samples=200, outcome_type="binary", n_noise=2, random_state=random_state
    )


@pytest.fixture
def categorical_data(random_state):
    """Three-level categorical outcome table."""
    return make_ensemble_data(
        n_samples=240, outcome_type="categorical", n_noise=1, random_state=random_state
    )


@pytest.fixture
def covariate_names():
    return ["x1", "x2", "x3", "noise1", "noise2", "site"]


@pytest.fixture
def regression_task(regression_data, covariate_names, random_state):
    """Continuous task with 5 folds."""
    return Task(regression_data, "y", covariate_names, n_folds=5, random_state=random_state)


@pytest.fixture
def binary_task(classification_data, covariate_names, random_state):
    """Binary task with 5 stratified folds."""
    return Task(classification_data, "y", covariate_names, n_folds=5, random_state=random_state)


@pytest.fixture
def categorical_task(categorical_data, random_state):
    """Categorical task with 4 folds."""
    return Task(
        categorical_data,
        "y",
        ["x1", "x2", "x3", "noise1", "site"],
        n_folds=4,
        random_state=random_state,
    )


@pytest.fixture
def leak_task(random_state):
    """Task whose ``row_key`` covariate identifies every row."""
    rng = np.random.default_rng(random_state)
    n = 60
    frame = pd.DataFrame(
        {
            "row_key": np.arange(n, dtype=float) + 0.5,
            "x": rng.normal(size=n),
            "y": rng.normal(size=n),
        }
    )
    return Task(frame, "y", ["row_key", "x"], n_folds=5, random_state=random_state)


@pytest.fixture
def fast_learners():
    """Small, deterministic learner library."""
    return [
        MeanLearner(),
        GLMLearner(),
        RandomForestLearner(n_estimators=20, random_state=0),
    ]
