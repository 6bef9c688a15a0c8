"""Cross-validated risk estimation for stacks of learners.

Every fold trains a fold-local copy of the Stack on the fold's training
rows and predicts its validation rows, so each row receives exactly one
out-of-fold prediction per learner from a model that never saw it. The
out-of-fold predictions give the cross-validated risk table, the discrete
selector and the training data of the metalearner.
"""

from __future__ import annotations

import logging
import multiprocessing
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from numpy.typing import NDArray

from ..core.base import (
    ConfigurationError,
    LearnerTrainingFailure,
    SuperLearningError,
    TimeoutExceeded,
    tag_fold,
)
from ..core.config import ParallelConfig
from ..data.folds import FoldAssignment
from ..data.task import Task
from ..evaluation.losses import LossFunction, get_loss, risk, risk_standard_error
from ..learners.base import prediction_frame
from ..learners.composites import FittedStack, Stack

logger = logging.getLogger(__name__)

__all__ = [
    "CVResult",
    "CrossValidationSelector",
    "FoldResult",
    "cross_validate_stack",
    "risk_table",
    "select_discrete",
]

RISK_TABLE_COLUMNS = ["learner", "risk", "se", "fold_sd", "fold_min_risk", "fold_max_risk"]

_TIMEOUT_ERRORS = (TimeoutError, multiprocessing.TimeoutError)


@dataclass(frozen=True)
class FoldResult:
    """Validation predictions of one fold-local Stack."""

    fold_id: int
    validation_row_ids: NDArray[np.intp]
    predictions: dict[str, NDArray[Any]]
    failed_learners: dict[str, LearnerTrainingFailure]
    seconds: float
    fitted_stack: FittedStack | None = None


@dataclass(frozen=True)
class CVResult:
    """Out-of-fold predictions of every learner of a Stack.

    Attributes:
        learner_names: Learners with out-of-fold predictions, in stack order
        out_of_fold: ``(n, L)`` or ``(n, L, K)`` out-of-fold predictions
        validation_fold: Fold id in which each row was held out
        fold_timings: Seconds spent per fold, in fold order
        fold_fits: Fold-local fitted stacks when retained
        failed_learners: Learners dropped because they failed in some fold
        outcome_levels: Outcome levels for categorical predictions
    """

    learner_names: tuple[str, ...]
    out_of_fold: NDArray[Any]
    validation_fold: NDArray[np.intp]
    fold_timings: tuple[float, ...]
    fold_fits: tuple[FittedStack, ...] | None = None
    failed_learners: dict[str, LearnerTrainingFailure] = field(default_factory=dict)
    outcome_levels: tuple[Any, ...] | None = None

    @property
    def n_folds(self) -> int:
        return len(self.fold_timings)

    def learner_predictions(self, name: str) -> NDArray[Any]:
        """Out-of-fold predictions of one learner."""
        if name not in self.learner_names:
            raise KeyError(f"No out-of-fold predictions for learner '{name}'")
        return self.out_of_fold[:, self.learner_names.index(name)]

    def predictions_frame(self) -> pd.DataFrame:
        """Out-of-fold predictions as a wide table, one column per learner (and level)."""
        frames = [
            prediction_frame(name, self.out_of_fold[:, j], self.outcome_levels)
            for j, name in enumerate(self.learner_names)
        ]
        return pd.concat(frames, axis=1)

    def metalearner_task(self, task: Task) -> Task:
        """Task whose covariates are the out-of-fold prediction columns."""
        columns = self.predictions_frame()
        return task.next_in_chain(covariates=list(columns.columns), new_columns=columns)


def _fit_fold(stack: Stack, task: Task, fold: FoldAssignment, keep_fit: bool) -> FoldResult:
    """Train one fold-local stack and predict the fold's validation rows."""
    fold_start_time = time.perf_counter()

    training = task.subset(fold.training_row_ids)
    validation = task.subset(fold.validation_row_ids, with_folds=False)
    try:
        fitted = stack.train(training)
    except LearnerTrainingFailure as e:
        tagged = tag_fold(e, fold.fold_id)
        raise tagged from e.__cause__

    predictions = {
        name: fit.predict(validation) for name, fit in fitted.fitted_learners.items()
    }
    seconds = time.perf_counter() - fold_start_time
    logger.debug("Fold %d trained in %.2fs", fold.fold_id, seconds)

    return FoldResult(
        fold_id=fold.fold_id,
        validation_row_ids=fold.validation_row_ids,
        predictions=predictions,
        failed_learners=fitted.failed_learners,
        seconds=seconds,
        fitted_stack=fitted if keep_fit else None,
    )


def _run_folds(
    stack: Stack, task: Task, parallel: ParallelConfig, keep_fold_fits: bool
) -> list[FoldResult]:
    folds = task.folds
    if not parallel.use_parallel:
        return [_fit_fold(stack, task, fold, keep_fold_fits) for fold in folds]

    results: list[FoldResult] = []
    parallel_jobs = Parallel(
        n_jobs=parallel.n_jobs,
        backend=parallel.parallel_backend,
        timeout=parallel.fold_timeout_seconds,
        return_as="generator",
    )
    try:
        for result in parallel_jobs(
            delayed(_fit_fold)(stack, task, fold, keep_fold_fits) for fold in folds
        ):
            results.append(result)
    except _TIMEOUT_ERRORS as e:
        # Results arrive in fold order, so the first missing fold timed out
        raise TimeoutExceeded(
            stack.name, parallel.fold_timeout_seconds or 0.0, fold_id=folds[len(results)].fold_id
        ) from e
    return results


def cross_validate_stack(
    stack: Stack,
    task: Task,
    parallel: ParallelConfig | None = None,
    keep_fold_fits: bool = False,
) -> CVResult:
    """Compute out-of-fold predictions of every learner in ``stack``.

    Folds are independent and run in parallel when ``parallel`` allows it;
    collecting all folds is the only synchronization point. A failure in
    any fold aborts the whole computation. With a "drop" stack, a learner
    failing in any fold is dropped from every fold.

    Args:
        stack: Stack of base learners
        task: Task with a fold plan
        parallel: Parallel settings for the folds (defaults to the stack's)
        keep_fold_fits: Keep the fold-local fitted stacks in the result

    Returns:
        CVResult with one out-of-fold prediction per row and learner

    Raises:
        ConfigurationError: If the task has no fold plan
        LearnerTrainingFailure: If a learner fails (tagged with its fold)
        SuperLearningError: If some row has no out-of-fold prediction
    """
    if task.n_folds < 2:
        raise ConfigurationError("Cross-validation needs a task with at least 2 folds")
    stack.check_capabilities(task)
    parallel = parallel or stack.parallel

    start_time = time.perf_counter()
    fold_results = _run_folds(stack, task, parallel, keep_fold_fits)

    failed: dict[str, LearnerTrainingFailure] = {}
    for result in fold_results:
        for name, failure in result.failed_learners.items():
            failed.setdefault(name, tag_fold(failure, result.fold_id))
    names = tuple(name for name in stack.learner_names if name not in failed)
    if not names:
        raise LearnerTrainingFailure(
            stack.name, f"every learner failed in some fold: {sorted(failed)}"
        )
    if failed:
        logger.warning("Dropped learners that failed during cross-validation: %s", sorted(failed))

    n_levels = len(task.outcome_levels or ()) if task.outcome_type == "categorical" else 0
    shape = (task.n_rows, len(names), n_levels) if n_levels else (task.n_rows, len(names))
    out_of_fold = np.full(shape, np.nan)
    validation_fold = np.full(task.n_rows, -1, dtype=np.intp)

    for result in fold_results:
        rows = result.validation_row_ids
        validation_fold[rows] = result.fold_id
        for j, name in enumerate(names):
            out_of_fold[rows, j] = result.predictions[name]

    if np.any(validation_fold < 0) or np.any(np.isnan(out_of_fold)):
        raise SuperLearningError("Some rows are missing out-of-fold predictions")

    logger.info(
        "Cross-validated %d learners over %d folds in %.2fs",
        len(names),
        len(fold_results),
        time.perf_counter() - start_time,
    )

    fold_fits = None
    if keep_fold_fits:
        fold_fits = tuple(r.fitted_stack for r in fold_results if r.fitted_stack is not None)

    return CVResult(
        learner_names=names,
        out_of_fold=out_of_fold,
        validation_fold=validation_fold,
        fold_timings=tuple(r.seconds for r in fold_results),
        fold_fits=fold_fits,
        failed_learners=failed,
        outcome_levels=task.outcome_levels if n_levels else None,
    )


def risk_table(
    loss_values: Mapping[str, NDArray[Any]],
    validation_fold: NDArray[Any],
    weights: NDArray[Any] | None = None,
) -> pd.DataFrame:
    """Risk summary per learner from per-row losses.

    Args:
        loss_values: Per-row loss values keyed by learner, in display order
        validation_fold: Fold id of each row, for the per-fold spread
        weights: Optional observation weights

    Returns:
        DataFrame with columns learner, risk, se, fold_sd, fold_min_risk,
        fold_max_risk
    """
    fold_ids = np.unique(validation_fold)
    rows = []
    for name, values in loss_values.items():
        fold_risks = []
        for fold_id in fold_ids:
            in_fold = validation_fold == fold_id
            fold_weights = None if weights is None else weights[in_fold]
            fold_risks.append(risk(values[in_fold], fold_weights))
        # Folds whose validation rows all have weight 0 have no risk
        fold_risks = np.asarray(fold_risks)
        fold_risks = fold_risks[~np.isnan(fold_risks)]
        rows.append(
            {
                "learner": name,
                "risk": risk(values, weights),
                "se": risk_standard_error(values, weights),
                "fold_sd": float(np.std(fold_risks, ddof=1)) if len(fold_risks) > 1 else np.nan,
                "fold_min_risk": float(fold_risks.min()) if len(fold_risks) else np.nan,
                "fold_max_risk": float(fold_risks.max()) if len(fold_risks) else np.nan,
            }
        )
    return pd.DataFrame(rows, columns=RISK_TABLE_COLUMNS)


def select_discrete(risks: Mapping[str, float]) -> str:
    """Learner with minimum risk; the first listed wins ties.

    Missing (NaN) risks never win.

    Raises:
        ConfigurationError: If ``risks`` is empty
    """
    if not risks:
        raise ConfigurationError("Cannot select from an empty risk table")
    best_name = None
    best_risk = np.inf
    for name, value in risks.items():
        value = float(value)
        if np.isnan(value):
            continue
        if best_name is None or value < best_risk:
            best_name, best_risk = name, value
    if best_name is None:
        raise ConfigurationError("Every learner has an undefined risk")
    return best_name


class CrossValidationSelector:
    """Cross-validated risk and discrete selection for a Stack.

    Args:
        loss: Loss name or function; defaults to the outcome type's default
    """

    def __init__(self, loss: Union[str, LossFunction, None] = None) -> None:
        self.loss = loss

    def loss_for(self, task: Task) -> LossFunction:
        return get_loss(self.loss, task.outcome_type)

    def loss_values(self, cv_result: CVResult, task: Task) -> dict[str, NDArray[Any]]:
        """Per-row out-of-fold loss of every learner."""
        loss = self.loss_for(task)
        y = task.Y
        return {
            name: np.asarray(loss(cv_result.out_of_fold[:, j], y), dtype=float)
            for j, name in enumerate(cv_result.learner_names)
        }

    def cv_risk_table(self, cv_result: CVResult, task: Task) -> pd.DataFrame:
        """Cross-validated risk of each learner, in stack order."""
        weights = task.weights if task.has_weights else None
        return risk_table(self.loss_values(cv_result, task), cv_result.validation_fold, weights)

    def discrete_selector(self, table: pd.DataFrame) -> str:
        """Identifier of the learner with minimum cross-validated risk."""
        return select_discrete(dict(zip(table["learner"], table["risk"])))

    def evaluate(
        self, stack: Stack, task: Task, parallel: ParallelConfig | None = None
    ) -> tuple[CVResult, pd.DataFrame, str]:
        """Cross-validate ``stack`` and return its result, risk table and selector."""
        cv_result = cross_validate_stack(stack, task, parallel=parallel)
        table = self.cv_risk_table(cv_result, task)
        return cv_result, table, self.discrete_selector(table)
