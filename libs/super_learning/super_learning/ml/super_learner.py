"""Super Learner: cross-validated stacking of a library of learners.

Fitting proceeds in four steps:

1. Cross-validate the Stack of base learners (V fold-local fits).
2. Build a task from the out-of-fold predictions and train the
   metalearner on it.
3. Refit the Stack on the full data.
4. Assemble the immutable fit artifact.

Predictions for new data are the metalearner applied to the full-data
Stack's predictions. The Super Learner is itself a Learner, so it can be
nested in Stacks, Pipelines and other Super Learners.
"""

from __future__ import annotations

import logging
import multiprocessing
import time
from dataclasses import dataclass
from typing import Any, Mapping, Sequence, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from numpy.typing import NDArray
from sklearn.base import BaseEstimator as SklearnBaseEstimator

from ..core.base import ConfigurationError, TimeoutExceeded
from ..core.config import ParallelConfig, SuperLearnerConfig
from ..data.folds import FoldAssignment
from ..data.task import Task
from ..evaluation.losses import LossFunction, get_loss
from ..learners import as_learner, default_metalearner, make_learner
from ..learners.base import FittedLearner, Learner, TaskLike, check_is_fitted
from ..learners.composites import FittedStack, Stack
from ..learners.metalearners import FittedMetalearner
from ..reporting.summary import format_risk_table, format_weights
from .cross_validation import CrossValidationSelector, CVResult, cross_validate_stack, risk_table

logger = logging.getLogger(__name__)

__all__ = [
    "FittedSuperLearner",
    "SuperLearner",
    "SuperLearnerFit",
    "cv_super_learner",
    "evaluate",
    "holdout_risk",
]

DISCRETE_ROW = "discrete_sl"
ENSEMBLE_ROW = "super_learner"

LearnerLike = Union[Learner, str, SklearnBaseEstimator]

_TIMEOUT_ERRORS = (TimeoutError, multiprocessing.TimeoutError)


def _coerce_learners(
    learners: Union[Sequence[LearnerLike], Mapping[str, LearnerLike]],
) -> list[Learner]:
    if isinstance(learners, Mapping):
        return [as_learner(candidate, name=name) for name, candidate in learners.items()]
    if isinstance(learners, (str, Learner, SklearnBaseEstimator)):
        return [as_learner(learners)]
    return [as_learner(candidate) for candidate in learners]


@dataclass(frozen=True)
class SuperLearnerFit:
    """Everything learned by one Super Learner fit."""

    fitted_stack: FittedStack
    fitted_metalearner: FittedLearner
    cv_result: CVResult
    cv_risk_table: pd.DataFrame
    discrete_selector: str
    loss: LossFunction
    seconds: float


class SuperLearner(Learner):
    """Super Learner ensemble over a library of base learners.

    Args:
        learners: Base learners as Learner instances, registry names,
            scikit-learn estimators, or a mapping of name to either
        metalearner: Metalearner (instance or registry name); defaults to
            NNLS for continuous and binary outcomes and a multinomial convex
            combination for categorical outcomes
        loss: Loss used for the risk table and discrete selector; defaults to
            the outcome type's default loss
        config: Parallelism, failure policy and artifact options
        name: Identifier of the ensemble

    Raises:
        ConfigurationError: If the library is empty, names repeat, or a
            learner name is unknown
    """

    registry_name = "super_learner"
    supports_weights = True
    supports_offset = True

    def __init__(
        self,
        learners: Union[Sequence[LearnerLike], Mapping[str, LearnerLike]],
        metalearner: Learner | str | None = None,
        loss: Union[str, LossFunction, None] = None,
        config: SuperLearnerConfig | None = None,
        name: str | None = None,
    ) -> None:
        super().__init__(name=name)
        self.config = config or SuperLearnerConfig()
        self.stack = Stack(
            _coerce_learners(learners),
            parallel=self.config.parallel,
            on_failure=self.config.on_learner_failure,
        )
        if isinstance(metalearner, str):
            metalearner = make_learner(metalearner)
        self.metalearner = metalearner
        self.loss = loss
        self.selector = CrossValidationSelector(loss)

    @property
    def learners(self) -> tuple[Learner, ...]:
        return self.stack.learners

    @property
    def outcome_types(self) -> frozenset[str]:  # type: ignore[override]
        if self.config.on_learner_failure == "raise":
            return self.stack.outcome_types
        supported: set[str] = set()
        for learner in self.stack.learners:
            supported |= set(learner.outcome_types)
        return frozenset(supported)

    def check_capabilities(self, task: Task) -> None:
        self.stack.check_capabilities(task)
        super().check_capabilities(task)

    def metalearner_for(self, outcome_type: str) -> Learner:
        """Metalearner used for tasks of ``outcome_type``."""
        if self.metalearner is not None:
            return self.metalearner
        return default_metalearner(outcome_type)

    def _train(self, task, weights, offsets):
        start_time = time.perf_counter()
        logger.info(
            "Fitting Super Learner '%s' with %d learners on %d rows (%d folds)",
            self.name,
            len(self.stack.learners),
            task.n_rows,
            task.n_folds,
        )

        cv_result = cross_validate_stack(
            self.stack,
            task,
            parallel=self.config.parallel,
            keep_fold_fits=self.config.keep_fold_fits,
        )
        table = self.selector.cv_risk_table(cv_result, task)
        discrete = self.selector.discrete_selector(table)

        fitted_metalearner = self.metalearner_for(task.outcome_type).train(
            cv_result.metalearner_task(task)
        )

        # Learners that survived cross-validation must also fit the full data
        survivors = [
            learner for learner in self.stack.learners if learner.name in cv_result.learner_names
        ]
        full_stack = Stack(survivors, parallel=self.config.parallel, on_failure="raise")
        fitted_stack = full_stack.train(task)

        seconds = time.perf_counter() - start_time
        logger.info(
            "Fitted Super Learner '%s' in %.2fs; discrete selector: %s",
            self.name,
            seconds,
            discrete,
        )
        return SuperLearnerFit(
            fitted_stack=fitted_stack,
            fitted_metalearner=fitted_metalearner,
            cv_result=cv_result,
            cv_risk_table=table,
            discrete_selector=discrete,
            loss=self.selector.loss_for(task),
            seconds=seconds,
        )

    def _make_fitted(self, task, fit_object):
        return FittedSuperLearner(
            learner=self,
            fit_object=fit_object,
            schema=task.schema,
            n_training_rows=task.n_rows,
        )

    def _predict(self, fitted, task):
        fit: SuperLearnerFit = fitted.fit_object
        return fit.fitted_metalearner.predict(fit.fitted_stack.chain(task))


@dataclass(frozen=True, eq=False)
class FittedSuperLearner(FittedLearner):
    """Fitted Super Learner.

    Owns the full-data fitted Stack, the fitted metalearner, the
    cross-validated risk table and the discrete selector.
    """

    @property
    def fitted_stack(self) -> FittedStack:
        return self.fit_object.fitted_stack

    @property
    def fitted_metalearner(self) -> FittedLearner:
        return self.fit_object.fitted_metalearner

    @property
    def cv_result(self) -> CVResult:
        return self.fit_object.cv_result

    @property
    def cv_risk_table(self) -> pd.DataFrame:
        return self.fit_object.cv_risk_table.copy()

    @property
    def discrete_selector(self) -> str:
        return self.fit_object.discrete_selector

    @property
    def loss(self) -> LossFunction:
        return self.fit_object.loss

    @property
    def learner_names(self) -> list[str]:
        return self.fitted_stack.learner_names

    @property
    def weights(self) -> dict[str, float]:
        """Metalearner weight per base learner; empty for weight-free metalearners."""
        if isinstance(self.fitted_metalearner, FittedMetalearner):
            return self.fitted_metalearner.weights
        return {}

    def learner_weights(self) -> pd.Series:
        """Metalearner weights as a Series indexed by learner."""
        return pd.Series(self.weights, name="weight", dtype=float)

    def predict_discrete(self, data: TaskLike) -> NDArray[Any]:
        """Predictions of the discrete selector's full-data fit."""
        task = self.as_task(data)
        return self.fitted_stack.fitted_learners[self.discrete_selector].predict(task)

    def predict_learners(self, data: TaskLike) -> pd.DataFrame:
        """Full-data predictions of every base learner, one column each."""
        return self.fitted_stack.predict_frame(self.as_task(data))

    def summary(self) -> str:
        """Text summary: cross-validated risks, discrete selector and weights."""
        lines = [
            f"Super Learner '{self.name}' ({self.outcome_type} outcome, "
            f"{self.n_training_rows} rows, {self.cv_result.n_folds} folds)",
            "",
            "Cross-validated risk:",
            format_risk_table(self.cv_risk_table),
            "",
            f"Discrete selector: {self.discrete_selector}",
        ]
        if self.weights:
            lines += ["", "Metalearner weights:", format_weights(self.weights)]
        failed = self.cv_result.failed_learners
        if failed:
            lines += ["", f"Dropped learners: {', '.join(sorted(failed))}"]
        return "\n".join(lines)


def _row_losses(
    fitted: FittedLearner, task: Task, loss: LossFunction
) -> dict[str, NDArray[Any]]:
    """Per-row loss of each reported prediction of ``fitted`` on ``task``."""
    y = task.Y
    if not isinstance(fitted, FittedSuperLearner):
        return {fitted.name: np.asarray(loss(fitted.predict(task), y), dtype=float)}

    losses = {
        name: np.asarray(loss(fit.predict(task), y), dtype=float)
        for name, fit in fitted.fitted_stack.fitted_learners.items()
    }
    losses[DISCRETE_ROW] = losses[fitted.discrete_selector].copy()
    losses[ENSEMBLE_ROW] = np.asarray(loss(fitted.predict(task), y), dtype=float)
    return losses


def evaluate(
    fitted: FittedLearner,
    data: TaskLike,
    loss: Union[str, LossFunction, None] = None,
) -> pd.DataFrame:
    """Risk of a fitted learner on external data.

    For a fitted Super Learner the table holds every base learner, the
    discrete selector ("discrete_sl") and the ensemble ("super_learner").

    Args:
        fitted: Fitted learner
        data: Task or raw rows with an observed outcome
        loss: Loss; defaults to the fit's loss or the outcome type's default

    Returns:
        Risk table with columns learner, risk, se, fold_sd, fold_min_risk,
        fold_max_risk (fold columns describe a single evaluation fold)
    """
    fitted = check_is_fitted(fitted)
    task = fitted.as_task(data)
    if not task.has_outcome:
        raise ConfigurationError("Evaluation data must have an observed outcome")
    if loss is None and isinstance(fitted, FittedSuperLearner):
        resolved = fitted.loss
    else:
        resolved = get_loss(loss, task.outcome_type)
    weights = task.weights if task.has_weights else None
    losses = _row_losses(fitted, task, resolved)
    return risk_table(losses, np.zeros(task.n_rows, dtype=np.intp), weights)


def holdout_risk(
    learner: Learner,
    task: Task,
    fraction: float = 0.2,
    random_state: int | None = None,
    loss: Union[str, LossFunction, None] = None,
) -> tuple[FittedLearner, pd.DataFrame]:
    """Train on all but an external holdout and evaluate on the holdout only.

    The holdout rows take no part in any fold's training or validation.
    Without ``random_state`` a Super Learner's ``config.random_state`` seeds
    the split.

    Returns:
        Tuple of (fitted learner, holdout risk table)
    """
    if random_state is None and isinstance(learner, SuperLearner):
        random_state = learner.config.random_state
    training, holdout = task.split_holdout(fraction=fraction, random_state=random_state)
    logger.info(
        "Holding out %d of %d rows for external evaluation", holdout.n_rows, task.n_rows
    )
    fitted = learner.train(training)
    return fitted, evaluate(fitted, holdout, loss=loss)


def _outer_fold(
    learner: SuperLearner, task: Task, fold: FoldAssignment, loss: LossFunction
) -> tuple[FoldAssignment, dict[str, NDArray[Any]]]:
    start_time = time.perf_counter()
    fitted = learner.train(task.subset(fold.training_row_ids))
    validation = task.subset(fold.validation_row_ids, with_folds=False)
    losses = _row_losses(fitted, validation, loss)
    logger.debug("Outer fold %d trained in %.2fs", fold.fold_id, time.perf_counter() - start_time)
    return fold, losses


def cv_super_learner(
    learner: SuperLearner,
    task: Task,
    parallel: ParallelConfig | None = None,
    loss: Union[str, LossFunction, None] = None,
) -> pd.DataFrame:
    """Nested cross-validated risk of a Super Learner.

    For each outer fold of ``task`` the whole Super Learner is trained on the
    outer training rows (with inner folds regenerated from those rows) and
    evaluated on the outer validation rows.

    Args:
        learner: Super Learner to evaluate
        task: Task whose fold plan defines the outer folds
        parallel: Parallel settings for the outer folds; sequential by default
        loss: Loss; defaults to the Super Learner's loss

    Returns:
        Risk table with a row per base learner, "discrete_sl" and
        "super_learner"
    """
    if task.n_folds < 2:
        raise ConfigurationError("Nested cross-validation needs a task with at least 2 folds")
    learner.check_capabilities(task)
    resolved = get_loss(loss if loss is not None else learner.loss, task.outcome_type)
    parallel = parallel or ParallelConfig()
    folds = task.folds

    if parallel.use_parallel:
        outputs = []
        parallel_jobs = Parallel(
            n_jobs=parallel.n_jobs,
            backend=parallel.parallel_backend,
            timeout=parallel.fold_timeout_seconds,
            return_as="generator",
        )
        try:
            for output in parallel_jobs(
                delayed(_outer_fold)(learner, task, fold, resolved) for fold in folds
            ):
                outputs.append(output)
        except _TIMEOUT_ERRORS as e:
            raise TimeoutExceeded(
                learner.name,
                parallel.fold_timeout_seconds or 0.0,
                fold_id=folds[len(outputs)].fold_id,
            ) from e
    else:
        outputs = [_outer_fold(learner, task, fold, resolved) for fold in folds]

    # Learners dropped in any outer fold are not reported
    names = [
        name
        for name in outputs[0][1]
        if all(name in losses for _, losses in outputs)
    ]
    row_losses = {name: np.full(task.n_rows, np.nan) for name in names}
    validation_fold = np.full(task.n_rows, -1, dtype=np.intp)
    for fold, losses in outputs:
        validation_fold[fold.validation_row_ids] = fold.fold_id
        for name in names:
            row_losses[name][fold.validation_row_ids] = losses[name]

    weights = task.weights if task.has_weights else None
    return risk_table(row_losses, validation_fold, weights)
