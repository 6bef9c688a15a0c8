"""Tests for out-of-fold prediction, cross-validated risk and discrete selection."""

import numpy as np
import pandas as pd
import pytest

from super_learning.core.base import ConfigurationError, LearnerTrainingFailure
from super_learning.core.config import ParallelConfig
from super_learning.evaluation.losses import loss_squared_error
from super_learning.learners import GLMLearner, MeanLearner, Stack
from super_learning.ml.cross_validation import (
    RISK_TABLE_COLUMNS,
    CrossValidationSelector,
    cross_validate_stack,
    risk_table,
    select_discrete,
)

from .conftest import ConstantLearner, FailingLearner, LeakDetectorLearner


class TestOutOfFoldPredictions:
    """Test the fold-local training of a Stack."""

    def test_no_row_is_predicted_by_a_model_that_saw_it(self, leak_task):
        """A learner that memorizes its training rows never recognizes a validation row."""
        cv_result = cross_validate_stack(Stack([LeakDetectorLearner()]), leak_task)
        np.testing.assert_array_equal(cv_result.learner_predictions("leak_detector"), 0.0)

    def test_every_row_held_out_exactly_once(self, regression_task, fast_learners):
        cv_result = cross_validate_stack(Stack(fast_learners), regression_task)
        assert cv_result.out_of_fold.shape == (regression_task.n_rows, 3)
        assert cv_result.n_folds == 5
        for fold in regression_task.folds:
            np.testing.assert_array_equal(
                cv_result.validation_fold[fold.validation_row_ids], fold.fold_id
            )

    def test_mean_learner_uses_training_rows_only(self, regression_task):
        cv_result = cross_validate_stack(Stack([MeanLearner()]), regression_task)
        y = regression_task.Y
        for fold in regression_task.folds:
            expected = y[fold.training_row_ids].mean()
            np.testing.assert_allclose(
                cv_result.out_of_fold[fold.validation_row_ids, 0], expected
            )

    def test_categorical_shape(self, categorical_task):
        cv_result = cross_validate_stack(Stack([MeanLearner(), GLMLearner()]), categorical_task)
        assert cv_result.out_of_fold.shape == (categorical_task.n_rows, 2, 3)
        frame = cv_result.predictions_frame()
        assert "glm__mid" in frame.columns
        np.testing.assert_allclose(cv_result.out_of_fold.sum(axis=2), 1.0)

    def test_keep_fold_fits(self, regression_task):
        stack = Stack([MeanLearner(), GLMLearner()])
        assert cross_validate_stack(stack, regression_task).fold_fits is None

        cv_result = cross_validate_stack(stack, regression_task, keep_fold_fits=True)
        assert len(cv_result.fold_fits) == 5
        assert cv_result.fold_fits[0].learner_names == ["mean", "glm"]

    def test_deterministic(self, regression_task, fast_learners):
        first = cross_validate_stack(Stack(fast_learners), regression_task)
        second = cross_validate_stack(Stack(fast_learners), regression_task)
        np.testing.assert_array_equal(first.out_of_fold, second.out_of_fold)

    def test_parallel_matches_sequential(self, regression_task, fast_learners):
        sequential = cross_validate_stack(Stack(fast_learners), regression_task)
        parallel = cross_validate_stack(
            Stack(fast_learners), regression_task, parallel=ParallelConfig(n_jobs=2)
        )
        np.testing.assert_allclose(parallel.out_of_fold, sequential.out_of_fold)

    def test_metalearner_task(self, regression_task):
        cv_result = cross_validate_stack(Stack([MeanLearner(), GLMLearner()]), regression_task)
        meta_task = cv_result.metalearner_task(regression_task)
        assert meta_task.covariates == ("mean", "glm")
        np.testing.assert_array_equal(meta_task.Y, regression_task.Y)

    def test_unknown_learner_predictions(self, regression_task):
        cv_result = cross_validate_stack(Stack([MeanLearner()]), regression_task)
        with pytest.raises(KeyError):
            cv_result.learner_predictions("glm")


class TestFoldFailures:
    """Test failure handling across folds."""

    def test_failure_is_tagged_with_fold(self, regression_task):
        with pytest.raises(LearnerTrainingFailure) as excinfo:
            cross_validate_stack(Stack([MeanLearner(), FailingLearner()]), regression_task)
        assert excinfo.value.learner_name == "failing"
        assert excinfo.value.fold_id is not None
        assert isinstance(excinfo.value.__cause__, RuntimeError)

    def test_dropped_learner_removed_from_every_fold(self, regression_task):
        stack = Stack([MeanLearner(), FailingLearner(), GLMLearner()], on_failure="drop")
        cv_result = cross_validate_stack(stack, regression_task)
        assert cv_result.learner_names == ("mean", "glm")
        assert set(cv_result.failed_learners) == {"failing"}
        assert cv_result.failed_learners["failing"].fold_id is not None

    def test_task_without_folds(self, regression_task):
        task = regression_task.subset(np.arange(20), with_folds=False)
        with pytest.raises(ConfigurationError, match="at least 2 folds"):
            cross_validate_stack(Stack([MeanLearner()]), task)


class TestRiskTable:
    """Test cross-validated risk summaries."""

    def test_columns_and_order(self, regression_task, fast_learners):
        selector = CrossValidationSelector()
        cv_result, table, best = selector.evaluate(Stack(fast_learners), regression_task)
        assert list(table.columns) == RISK_TABLE_COLUMNS
        assert table["learner"].tolist() == ["mean", "glm", fast_learners[2].name]
        assert best in table["learner"].tolist()

    def test_risk_matches_out_of_fold_loss(self, regression_task):
        selector = CrossValidationSelector()
        cv_result, table, _ = selector.evaluate(Stack([GLMLearner()]), regression_task)
        expected = np.mean((cv_result.out_of_fold[:, 0] - regression_task.Y) ** 2)
        assert table.loc[0, "risk"] == pytest.approx(expected)

    def test_fold_range_brackets_risk(self, regression_task, fast_learners):
        _, table, _ = CrossValidationSelector().evaluate(Stack(fast_learners), regression_task)
        assert (table["fold_min_risk"] <= table["risk"] + 1e-12).all()
        assert (table["risk"] <= table["fold_max_risk"] + 1e-12).all()
        assert (table["se"] > 0).all()

    def test_glm_beats_mean_on_linear_signal(self, regression_task):
        _, table, best = CrossValidationSelector().evaluate(
            Stack([MeanLearner(), GLMLearner()]), regression_task
        )
        assert best == "glm"

    def test_constant_learner_risk_is_exact(self, regression_task):
        _, table, _ = CrossValidationSelector().evaluate(
            Stack([ConstantLearner(value=0.0)]), regression_task
        )
        assert table.loc[0, "risk"] == pytest.approx(np.mean(regression_task.Y**2))

    def test_weighted_risk(self):
        values = {"a": np.array([1.0, 3.0, 5.0, 7.0])}
        folds = np.array([0, 0, 1, 1])
        table = risk_table(values, folds, weights=np.array([1.0, 1.0, 0.0, 2.0]))
        assert table.loc[0, "risk"] == pytest.approx((1.0 + 3.0 + 14.0) / 4.0)
        assert table.loc[0, "fold_min_risk"] == pytest.approx(2.0)
        assert table.loc[0, "fold_max_risk"] == pytest.approx(7.0)

    def test_fold_with_zero_total_weight_is_skipped(self):
        values = {"a": np.array([1.0, 3.0, 5.0, 7.0])}
        folds = np.array([0, 0, 1, 1])
        table = risk_table(values, folds, weights=np.array([0.0, 0.0, 1.0, 1.0]))
        assert table.loc[0, "risk"] == pytest.approx(6.0)
        assert table.loc[0, "fold_min_risk"] == pytest.approx(6.0)
        assert table.loc[0, "fold_max_risk"] == pytest.approx(6.0)
        assert np.isnan(table.loc[0, "fold_sd"])

    def test_loss_values_per_learner(self, regression_task):
        selector = CrossValidationSelector(loss="squared_error")
        cv_result = cross_validate_stack(Stack([MeanLearner()]), regression_task)
        values = selector.loss_values(cv_result, regression_task)
        np.testing.assert_allclose(
            values["mean"], loss_squared_error(cv_result.out_of_fold[:, 0], regression_task.Y)
        )


class TestDiscreteSelection:
    """Test choosing the minimum-risk learner."""

    def test_minimum_wins(self):
        assert select_discrete({"A": 0.5, "B": 0.2, "C": 0.3}) == "B"

    def test_ties_go_to_first_listed(self):
        assert select_discrete({"A": 0.5, "B": 0.3, "C": 0.3}) == "B"
        assert select_discrete({"C": 0.3, "B": 0.3}) == "C"

    def test_nan_risk_never_wins(self):
        assert select_discrete({"A": np.nan, "B": 0.9}) == "B"

    def test_empty(self):
        with pytest.raises(ConfigurationError):
            select_discrete({})

    def test_all_undefined(self):
        with pytest.raises(ConfigurationError, match="undefined"):
            select_discrete({"A": np.nan})

    def test_selector_reads_risk_table(self):
        table = pd.DataFrame({"learner": ["x", "y"], "risk": [1.0, 1.0]})
        assert CrossValidationSelector().discrete_selector(table) == "x"
