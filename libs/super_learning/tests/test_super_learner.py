"""End-to-end tests for the Super Learner ensemble."""

import logging

import numpy as np
import pandas as pd
import pytest
from sklearn.linear_model import LinearRegression
from sklearn.model_selection import KFold

from super_learning.core.base import ConfigurationError, LearnerTrainingFailure, NotFittedError
from super_learning.core.config import ParallelConfig, SuperLearnerConfig
from super_learning.data.task import Task
from super_learning.learners import (
    DiscreteSelectorMetalearner,
    GLMLearner,
    MeanLearner,
    RandomForestLearner,
    Stack,
)
from super_learning.ml import (
    FittedSuperLearner,
    SuperLearner,
    cv_super_learner,
    evaluate,
    holdout_risk,
)

from .conftest import BinaryOnlyLearner, ConstantLearner, FailingLearner


class TestSuperLearnerFit:
    """Test fitting on each outcome type."""

    def test_regression(self, regression_task, fast_learners):
        fitted = SuperLearner(fast_learners).train(regression_task)

        assert isinstance(fitted, FittedSuperLearner)
        predictions = fitted.predict(regression_task)
        assert predictions.shape == (regression_task.n_rows,)
        assert sum(fitted.weights.values()) == pytest.approx(1.0)
        assert all(w >= 0 for w in fitted.weights.values())
        assert fitted.weights["mean"] < 0.5

    def test_ensemble_is_weighted_combination(self, regression_task, fast_learners):
        fitted = SuperLearner(fast_learners).train(regression_task)
        learner_predictions = fitted.predict_learners(regression_task)
        weights = fitted.learner_weights()
        expected = learner_predictions[weights.index].to_numpy() @ weights.to_numpy()
        np.testing.assert_allclose(fitted.predict(regression_task), expected)

    def test_binary(self, binary_task, fast_learners):
        fitted = SuperLearner(fast_learners).train(binary_task)
        predictions = fitted.predict(binary_task)
        assert np.all((predictions >= 0) & (predictions <= 1))
        assert fitted.cv_risk_table["learner"].tolist() == fitted.learner_names

    def test_categorical(self, categorical_task):
        fitted = SuperLearner([MeanLearner(), GLMLearner()]).train(categorical_task)
        predictions = fitted.predict(categorical_task)
        assert predictions.shape == (categorical_task.n_rows, 3)
        np.testing.assert_allclose(predictions.sum(axis=1), 1.0, atol=1e-6)
        assert fitted.discrete_selector == "glm"

    def test_risk_table_matches_cross_validation(self, regression_task):
        fitted = SuperLearner([MeanLearner(), GLMLearner()]).train(regression_task)
        table = fitted.cv_risk_table.set_index("learner")
        oof = fitted.cv_result.learner_predictions("glm")
        assert table.loc["glm", "risk"] == pytest.approx(np.mean((oof - regression_task.Y) ** 2))
        assert fitted.discrete_selector == table["risk"].idxmin()

    def test_fitting_logs_progress(self, regression_task, caplog):
        with caplog.at_level(logging.INFO, logger="super_learning"):
            SuperLearner([MeanLearner(), GLMLearner()]).train(regression_task)
        assert "Fitting Super Learner" in caplog.text
        assert "discrete selector: glm" in caplog.text

    def test_deterministic(self, regression_task, fast_learners):
        first = SuperLearner(fast_learners).train(regression_task)
        second = SuperLearner(fast_learners).train(regression_task)
        np.testing.assert_array_equal(
            first.predict(regression_task), second.predict(regression_task)
        )

    def test_parallel_matches_sequential(self, regression_task, fast_learners):
        config = SuperLearnerConfig(parallel=ParallelConfig(n_jobs=2))
        sequential = SuperLearner(fast_learners).train(regression_task)
        parallel = SuperLearner(fast_learners, config=config).train(regression_task)
        np.testing.assert_allclose(
            parallel.predict(regression_task), sequential.predict(regression_task)
        )

    def test_default_forest_seed_makes_fits_repeatable(self, regression_task):
        learner = SuperLearner([MeanLearner(), RandomForestLearner(n_estimators=10)])
        first = learner.train(regression_task)
        second = learner.train(regression_task)
        np.testing.assert_array_equal(
            first.cv_result.out_of_fold, second.cv_result.out_of_fold
        )

    def test_validation_fold_with_zero_weights(self, regression_data):
        frame = regression_data.head(40).copy()
        frame["w"] = np.where(np.arange(40) < 4, 0.0, 1.0)

        def contiguous_folds(n_rows, n_folds, outcome, groups, random_state):
            return KFold(n_splits=n_folds).split(np.zeros(n_rows))

        task = Task(
            frame, "y", ["x1", "x2"], weight_column="w", n_folds=10, fold_fun=contiguous_folds
        )
        assert task.folds[0].validation_row_ids.tolist() == [0, 1, 2, 3]

        fitted = SuperLearner([MeanLearner(), GLMLearner()]).train(task)
        table = fitted.cv_risk_table
        assert np.all(np.isfinite(table["risk"]))
        assert np.all(np.isfinite(table["fold_min_risk"]))


class TestLibraryArguments:
    """Test the ways a learner library can be given."""

    def test_registry_names(self, regression_task):
        fitted = SuperLearner(["mean", "glm"]).train(regression_task)
        assert fitted.learner_names == ["mean", "glm"]

    def test_named_mapping(self, regression_task):
        fitted = SuperLearner({"baseline": "mean", "ols": LinearRegression()}).train(
            regression_task
        )
        assert fitted.learner_names == ["baseline", "ols"]

    def test_unknown_name(self):
        with pytest.raises(ConfigurationError, match="Unknown learner"):
            SuperLearner(["mean", "deep_forest"])

    def test_empty_library(self):
        with pytest.raises(ConfigurationError):
            SuperLearner([])

    def test_metalearner_by_name(self, regression_task):
        learner = SuperLearner(["mean", "glm"], metalearner="cv_selector")
        assert isinstance(learner.metalearner, DiscreteSelectorMetalearner)
        fitted = learner.train(regression_task)
        np.testing.assert_allclose(
            fitted.predict(regression_task), fitted.predict_discrete(regression_task)
        )


class TestPrediction:
    """Test predicting for new rows."""

    def test_raw_rows_with_missing_values(self, regression_data):
        frame = regression_data.copy()
        frame.loc[::9, "x2"] = np.nan
        task = Task(frame, "y", ["x1", "x2", "site"], n_folds=5, random_state=0)
        fitted = SuperLearner([MeanLearner(), GLMLearner()]).train(task)

        new_rows = pd.DataFrame({"x1": [0.1, np.nan], "x2": [np.nan, 1.0], "site": ["south"] * 2})
        predictions = fitted.predict(new_rows)
        assert predictions.shape == (2,)
        assert np.all(np.isfinite(predictions))

    def test_predict_discrete(self, regression_task, fast_learners):
        fitted = SuperLearner(fast_learners).train(regression_task)
        selected = fitted.fitted_stack.fitted_learners[fitted.discrete_selector]
        np.testing.assert_array_equal(
            fitted.predict_discrete(regression_task), selected.predict(regression_task)
        )

    def test_summary(self, regression_task):
        summary = SuperLearner([MeanLearner(), GLMLearner()]).train(regression_task).summary()
        assert "Cross-validated risk:" in summary
        assert "Discrete selector: glm" in summary
        assert "Metalearner weights:" in summary


class TestFailurePolicies:
    """Test raise and drop handling of failing base learners."""

    def test_raise_names_learner_and_fold(self, regression_task):
        with pytest.raises(LearnerTrainingFailure) as excinfo:
            SuperLearner([MeanLearner(), FailingLearner()]).train(regression_task)
        assert excinfo.value.learner_name == "failing"
        assert excinfo.value.fold_id is not None

    def test_unsupported_learner_fails_before_training(self, regression_task):
        with pytest.raises(LearnerTrainingFailure) as excinfo:
            SuperLearner([MeanLearner(), BinaryOnlyLearner()]).train(regression_task)
        assert excinfo.value.learner_name == "binary_only"
        assert excinfo.value.fold_id is None

    def test_drop_excludes_failing_learners(self, regression_task):
        config = SuperLearnerConfig(on_learner_failure="drop")
        learner = SuperLearner([MeanLearner(), FailingLearner(), GLMLearner()], config=config)
        fitted = learner.train(regression_task)

        assert fitted.learner_names == ["mean", "glm"]
        assert "failing" not in fitted.weights
        assert "failing" in fitted.cv_result.failed_learners
        assert "Dropped learners: failing" in fitted.summary()

    def test_drop_with_unsupported_learner(self, regression_task):
        config = SuperLearnerConfig(on_learner_failure="drop")
        fitted = SuperLearner([BinaryOnlyLearner(), GLMLearner()], config=config).train(
            regression_task
        )
        assert fitted.weights == {"glm": 1.0}


class TestComposition:
    """Test Super Learners as ordinary learners."""

    def test_nested_in_stack(self, regression_task):
        inner = SuperLearner([MeanLearner(), GLMLearner()], name="inner_sl")
        fitted = Stack([inner, RandomForestLearner(n_estimators=10, random_state=0)]).train(
            regression_task
        )
        assert fitted.predict(regression_task).shape == (regression_task.n_rows, 2)
        assert isinstance(fitted.fitted_learners["inner_sl"], FittedSuperLearner)

    def test_nested_super_learner(self, regression_task):
        inner = SuperLearner([MeanLearner(), GLMLearner()], name="inner_sl")
        outer = SuperLearner([inner, ConstantLearner(value=0.0)])
        fitted = outer.train(regression_task)
        assert fitted.discrete_selector == "inner_sl"


class TestEvaluation:
    """Test external and nested evaluation."""

    def test_evaluate_rows(self, regression_task):
        fitted = SuperLearner([MeanLearner(), GLMLearner()]).train(regression_task)
        table = evaluate(fitted, regression_task)
        assert table["learner"].tolist() == ["mean", "glm", "discrete_sl", "super_learner"]
        discrete = table.set_index("learner")["risk"]
        assert discrete["discrete_sl"] == pytest.approx(discrete["glm"])

    def test_evaluate_plain_learner(self, regression_task):
        fitted = GLMLearner().train(regression_task)
        table = evaluate(fitted, regression_task, loss="absolute_error")
        assert table["learner"].tolist() == ["glm"]

    def test_holdout_risk(self, regression_task):
        fitted, table = holdout_risk(
            SuperLearner([MeanLearner(), GLMLearner()]), regression_task, fraction=0.25,
            random_state=0,
        )
        assert fitted.n_training_rows == 150
        assert {"discrete_sl", "super_learner"} <= set(table["learner"])

    def test_cv_super_learner(self, regression_task):
        table = cv_super_learner(SuperLearner([MeanLearner(), GLMLearner()]), regression_task)
        assert table["learner"].tolist() == ["mean", "glm", "discrete_sl", "super_learner"]
        risks = table.set_index("learner")["risk"]
        assert risks["super_learner"] < risks["mean"]

    def test_cv_super_learner_needs_folds(self, regression_task):
        task = regression_task.subset(np.arange(30), with_folds=False)
        with pytest.raises(ConfigurationError, match="at least 2 folds"):
            cv_super_learner(SuperLearner(["mean"]), task)

    def test_evaluate_requires_fitted_learner(self, regression_task):
        with pytest.raises(NotFittedError, match="has not been trained"):
            evaluate(GLMLearner(), regression_task)

    def test_holdout_split_uses_config_seed(self, regression_task):
        config = SuperLearnerConfig(random_state=3)
        first, _ = holdout_risk(SuperLearner(["mean", "glm"], config=config), regression_task)
        second, _ = holdout_risk(SuperLearner(["mean", "glm"], config=config), regression_task)
        np.testing.assert_array_equal(
            first.predict(regression_task), second.predict(regression_task)
        )
