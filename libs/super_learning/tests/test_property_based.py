"""Property-based tests for fold plans, metalearner weights and selection.

## Key Properties Tested

1. **Fold Partition**: Every row is a validation row in exactly one fold and
   never appears in the training rows of that fold
2. **Grouped Folds**: Rows sharing an id never straddle training and validation
3. **Convex Weights**: Metalearner weights are non-negative and sum to 1
4. **Discrete Selection**: The selector returns the first learner with
   minimum risk
5. **Probability Simplex**: Convex combinations of class probabilities are
   class probabilities

Sizes are kept small (at most a few hundred rows, five learners) so each
example runs quickly.
"""

import numpy as np
import pandas as pd
import pytest
from hypothesis import assume, given, settings
from hypothesis import strategies as st
from hypothesis.extra.numpy import arrays

from super_learning.data.folds import make_folds
from super_learning.data.task import Task
from super_learning.learners import ConvexLossMetalearner, NNLSMetalearner
from super_learning.learners.metalearners import combine_predictions
from super_learning.ml import select_discrete


@st.composite
def fold_plans(draw, max_rows=200):
    """Generate a row count, a fold count and a seed."""
    n_rows = draw(st.integers(min_value=2, max_value=max_rows))
    n_folds = draw(st.integers(min_value=2, max_value=min(10, n_rows)))
    seed = draw(st.integers(min_value=0, max_value=2**16))
    return n_rows, n_folds, seed


@st.composite
def stacked_predictions(draw, min_rows=10, max_rows=80):
    """Generate an ``(n, L)`` prediction matrix and an outcome vector.

    Elements are bounded so least squares stays well conditioned.
    """
    n_rows = draw(st.integers(min_value=min_rows, max_value=max_rows))
    n_learners = draw(st.integers(min_value=1, max_value=5))
    elements = st.floats(min_value=-3, max_value=3, allow_nan=False, allow_infinity=False)
    predictions = draw(arrays(np.float64, (n_rows, n_learners), elements=elements))
    y = draw(arrays(np.float64, n_rows, elements=elements))
    return predictions, y


def _meta_task(predictions, y):
    frame = pd.DataFrame(predictions, columns=[f"learner{j}" for j in range(predictions.shape[1])])
    frame["y"] = y
    return Task(
        frame,
        "y",
        list(frame.columns[:-1]),
        n_folds=2,
        fold_fun="vfold",
        outcome_type="continuous",
    )


class TestFoldProperties:
    """Fold plans partition the rows."""

    @given(fold_plans())
    @settings(max_examples=50, deadline=None)
    def test_validation_sets_partition_rows(self, plan):
        n_rows, n_folds, seed = plan
        folds = make_folds(n_rows, n_folds=n_folds, fold_fun="vfold", random_state=seed)

        counts = np.zeros(n_rows, dtype=int)
        for fold in folds:
            counts[fold.validation_row_ids] += 1
            assert not np.intersect1d(fold.training_row_ids, fold.validation_row_ids).size
        np.testing.assert_array_equal(counts, 1)

    @given(
        n_groups=st.integers(min_value=4, max_value=40),
        group_size=st.integers(min_value=1, max_value=5),
        n_folds=st.integers(min_value=2, max_value=4),
    )
    @settings(max_examples=30, deadline=None)
    def test_grouped_folds_keep_ids_together(self, n_groups, group_size, n_folds):
        groups = np.repeat(np.arange(n_groups), group_size)
        folds = make_folds(len(groups), n_folds=n_folds, fold_fun="grouped", groups=groups)
        for fold in folds:
            assert not set(groups[fold.training_row_ids]) & set(groups[fold.validation_row_ids])


class TestMetalearnerProperties:
    """Metalearner weights are convex."""

    @pytest.mark.filterwarnings("ignore::UserWarning")
    @given(stacked_predictions())
    @settings(max_examples=40, deadline=None)
    def test_nnls_weights_are_convex(self, data):
        predictions, y = data
        fitted = NNLSMetalearner().train(_meta_task(predictions, y))
        weights = np.array(list(fitted.weights.values()))

        assert np.all(weights >= 0)
        assert weights.sum() == pytest.approx(1.0, abs=1e-6)

    @pytest.mark.filterwarnings("ignore::UserWarning")
    @given(stacked_predictions(max_rows=40))
    @settings(max_examples=25, deadline=None)
    def test_convex_loss_weights_are_convex(self, data):
        predictions, y = data
        fitted = ConvexLossMetalearner(loss="squared_error").train(_meta_task(predictions, y))
        weights = np.array(list(fitted.weights.values()))

        assert np.all(weights >= 0)
        assert weights.sum() == pytest.approx(1.0, abs=1e-6)


class TestSelectionProperties:
    """Discrete selection picks the first minimum."""

    @given(
        st.lists(
            st.floats(min_value=0, max_value=10, allow_nan=False),
            min_size=1,
            max_size=8,
        )
    )
    def test_first_minimum_wins(self, risks):
        named = {f"learner{i}": value for i, value in enumerate(risks)}
        expected = f"learner{risks.index(min(risks))}"
        assert select_discrete(named) == expected


class TestCombinationProperties:
    """Convex combinations stay on the probability simplex."""

    @given(
        n_learners=st.integers(min_value=1, max_value=4),
        n_levels=st.integers(min_value=2, max_value=5),
        seed=st.integers(min_value=0, max_value=2**16),
    )
    def test_class_probabilities_sum_to_one(self, n_learners, n_levels, seed):
        rng = np.random.default_rng(seed)
        predictions = rng.dirichlet(np.ones(n_levels), size=(20, n_learners))
        weights = rng.dirichlet(np.ones(n_learners))
        assume(np.all(np.isfinite(weights)))

        combined = combine_predictions(predictions, weights)
        assert combined.shape == (20, n_levels)
        np.testing.assert_allclose(combined.sum(axis=1), 1.0)
        assert np.all(combined >= 0)
