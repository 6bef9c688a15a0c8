"""Example: Super Learner for a continuous and a binary outcome.

This example builds a task from a synthetic table with missing covariates,
fits a Super Learner over a small library (including a screened GLM), and
reports the cross-validated risk table, metalearner weights, nested
cross-validated risk and permutation variable importance.
"""

import matplotlib.pyplot as plt

from shared.config import SuperLearningSettings
from shared.observability import setup_logging
from super_learning import (
    CorrelationScreener,
    GLMLearner,
    MeanLearner,
    Pipeline,
    RandomForestLearner,
    SuperLearner,
    Task,
    cv_super_learner,
    format_risk_table,
    permutation_importance,
    plot_cv_risk,
    plot_importance,
)
from super_learning.core.config import SuperLearnerConfig, TaskConfig
from super_learning.data.synthetic import make_ensemble_data
from super_learning.reporting import format_importance


def build_library():
    """Learner library: benchmark, linear, screened linear and a forest."""
    return [
        MeanLearner(),
        GLMLearner(),
        Pipeline(CorrelationScreener(threshold=0.1), GLMLearner()),
        RandomForestLearner(n_estimators=200, min_samples_leaf=5, random_state=0),
    ]


def continuous_outcome_example(settings: SuperLearningSettings) -> None:
    """Fit and evaluate a Super Learner for a continuous outcome."""
    print("\n" + "=" * 60)
    print("CONTINUOUS OUTCOME")
    print("=" * 60)

    data = make_ensemble_data(
        n_samples=800, outcome_type="continuous", n_noise=3, missing_rate=0.05, random_state=1
    )
    covariates = [c for c in data.columns if c != "y"]
    task = Task(data, "y", covariates, config=TaskConfig.from_settings(settings))
    print(f"Task: {task.n_rows} rows, covariates {list(task.covariates)}")

    learner = SuperLearner(build_library(), config=SuperLearnerConfig.from_settings(settings))
    fitted = learner.train(task)
    print(fitted.summary())

    print("\nNested cross-validated risk:")
    print(format_risk_table(cv_super_learner(learner, task)))

    importance = permutation_importance(fitted, task, n_repeats=3, random_state=0)
    print("\nPermutation importance:")
    print(format_importance(importance))

    plot_cv_risk(fitted.cv_risk_table, title="Continuous outcome: cross-validated risk")
    plot_importance(importance)


def binary_outcome_example(settings: SuperLearningSettings) -> None:
    """Fit a Super Learner with the log-likelihood loss for a binary outcome."""
    print("\n" + "=" * 60)
    print("BINARY OUTCOME")
    print("=" * 60)

    data = make_ensemble_data(n_samples=800, outcome_type="binary", n_noise=3, random_state=2)
    covariates = [c for c in data.columns if c != "y"]
    task = Task(data, "y", covariates, config=TaskConfig.from_settings(settings))

    learner = SuperLearner(
        build_library(),
        metalearner="solnp",
        config=SuperLearnerConfig.from_settings(settings),
    )
    fitted = learner.train(task)
    print(fitted.summary())

    new_rows = data.drop(columns="y").head(5)
    print("\nEnsemble probabilities for five new rows:")
    print(fitted.predict(new_rows).round(3))


def main() -> None:
    settings = SuperLearningSettings(default_n_folds=5, random_state=42)
    setup_logging(settings)

    continuous_outcome_example(settings)
    binary_outcome_example(settings)
    plt.show()


if __name__ == "__main__":
    main()
