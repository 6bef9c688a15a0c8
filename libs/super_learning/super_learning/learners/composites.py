"""Composite learners: Stack (parallel) and Pipeline (sequential).

A Stack trains every constituent independently on the same task and
predicts a wide matrix with one column per constituent. A Pipeline trains
stages in order, each on the task produced by the previous stage's
``chain``, and predicts with its final stage.
"""

from __future__ import annotations

import logging
import multiprocessing
import time
from dataclasses import dataclass, field
from typing import Any, Literal, Sequence, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from numpy.typing import NDArray

from ..core.base import (
    OUTCOME_TYPES,
    ConfigurationError,
    LearnerTrainingFailure,
    SuperLearningError,
    TimeoutExceeded,
    UnsupportedOutcomeType,
)
from ..core.config import ParallelConfig
from ..data.task import Task
from .base import FittedLearner, Learner, TaskLike, prediction_frame

logger = logging.getLogger(__name__)

__all__ = [
    "FittedPipeline",
    "FittedStack",
    "Pipeline",
    "Stack",
    "train_constituent",
]

FailurePolicy = Literal["raise", "drop"]

_TIMEOUT_ERRORS = (TimeoutError, multiprocessing.TimeoutError)


def train_constituent(learner: Learner, task: Task) -> FittedLearner:
    """Train one constituent, reporting any failure under its own name.

    Raises:
        LearnerTrainingFailure: Naming ``learner``, with the original
            exception (including ``UnsupportedOutcomeType``) as its cause
    """
    try:
        return learner.train(task)
    except LearnerTrainingFailure as e:
        if e.learner_name == learner.name and e.fold_id is None:
            raise
        raise LearnerTrainingFailure(learner.name, str(e)) from e
    except SuperLearningError as e:
        raise LearnerTrainingFailure(learner.name, str(e)) from e


def _train_or_capture(
    learner: Learner, task: Task
) -> Union[FittedLearner, LearnerTrainingFailure]:
    try:
        return train_constituent(learner, task)
    except LearnerTrainingFailure as e:
        return e


def _stack_predictions(predictions: Sequence[NDArray[Any]]) -> NDArray[Any]:
    """Combine per-learner predictions into ``(n, L)`` or ``(n, L, K)``."""
    return np.stack([np.asarray(p, dtype=float) for p in predictions], axis=1)


@dataclass(frozen=True)
class StackFit:
    """Fit object of a Stack."""

    fitted_learners: tuple[FittedLearner, ...]
    failed_learners: dict[str, LearnerTrainingFailure] = field(default_factory=dict)
    timings: dict[str, float] = field(default_factory=dict)


class Stack(Learner):
    """Trains a set of learners independently on the same task.

    Args:
        learners: Constituent learners; names must be unique
        parallel: Parallel execution and timeout settings
        on_failure: "raise" fails the whole stack when any constituent fails;
            "drop" excludes failing constituents and records them
        name: Identifier of the stack

    Raises:
        ConfigurationError: If the learner list is empty or names repeat
    """

    registry_name = "stack"
    supports_weights = True
    supports_offset = True

    def __init__(
        self,
        learners: Sequence[Learner],
        parallel: ParallelConfig | None = None,
        on_failure: FailurePolicy = "raise",
        name: str | None = None,
    ) -> None:
        super().__init__(name=name)
        learners = tuple(learners)
        if not learners:
            raise ConfigurationError("A Stack needs at least one learner")
        names = [learner.name for learner in learners]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate learner names in Stack: {duplicates}")
        if on_failure not in ("raise", "drop"):
            raise ConfigurationError(f"on_failure must be 'raise' or 'drop', got '{on_failure}'")

        self.learners = learners
        self.parallel = parallel or ParallelConfig()
        self.on_failure = on_failure

    @property
    def name(self) -> str:
        if self._name is not None:
            return self._name
        return "stack(" + ",".join(learner.name for learner in self.learners) + ")"

    @property
    def learner_names(self) -> list[str]:
        return [learner.name for learner in self.learners]

    @property
    def outcome_types(self) -> frozenset[str]:  # type: ignore[override]
        supported = set(OUTCOME_TYPES)
        for learner in self.learners:
            supported &= set(learner.outcome_types)
        return frozenset(supported)

    def check_capabilities(self, task: Task) -> None:
        """Fail fast, naming the constituent, before any training starts."""
        if self.on_failure == "drop":
            return
        for learner in self.learners:
            try:
                learner.check_capabilities(task)
            except UnsupportedOutcomeType as e:
                raise LearnerTrainingFailure(learner.name, str(e)) from e

    def with_learners(self, learners: Sequence[Learner]) -> Stack:
        """Copy of this stack with a different constituent list."""
        return Stack(learners, parallel=self.parallel, on_failure=self.on_failure, name=self._name)

    def _run_parallel(self, task: Task) -> list[Union[FittedLearner, LearnerTrainingFailure]]:
        config = self.parallel
        results: list[Union[FittedLearner, LearnerTrainingFailure, None]] = [None] * len(
            self.learners
        )
        pending = list(range(len(self.learners)))

        while pending:
            parallel = Parallel(
                n_jobs=config.n_jobs,
                backend=config.parallel_backend,
                timeout=config.learner_timeout_seconds,
                return_as="generator",
            )
            completed = 0
            try:
                outputs = parallel(
                    delayed(_train_or_capture)(self.learners[i], task) for i in pending
                )
                for output in outputs:
                    results[pending[completed]] = output
                    completed += 1
                pending = []
            except _TIMEOUT_ERRORS as e:
                # Results arrive in submission order, so the first unfinished
                # constituent is the one that timed out
                index = pending[completed]
                failure = TimeoutExceeded(
                    self.learners[index].name, config.learner_timeout_seconds or 0.0
                )
                failure.__cause__ = e
                results[index] = failure
                pending = pending[completed + 1 :]
                if self.on_failure == "raise":
                    raise failure from e

        return results  # type: ignore[return-value]

    def _train(self, task, weights, offsets):
        start_time = time.perf_counter()

        if self.parallel.use_parallel:
            results = self._run_parallel(task)
        else:
            if self.parallel.learner_timeout_seconds is not None:
                logger.debug(
                    "Learner timeouts are only enforced with parallel workers (n_jobs != 1)"
                )
            results = [_train_or_capture(learner, task) for learner in self.learners]

        fitted = []
        failed = {}
        for learner, result in zip(self.learners, results):
            if isinstance(result, LearnerTrainingFailure):
                if self.on_failure == "raise":
                    raise result
                failed[learner.name] = result
                logger.warning("Dropping learner '%s' from stack: %s", learner.name, result)
            else:
                fitted.append(result)

        if not fitted:
            raise LearnerTrainingFailure(
                self.name, f"every constituent failed: {sorted(failed)}"
            )

        logger.debug(
            "Trained stack of %d learners in %.2fs",
            len(fitted),
            time.perf_counter() - start_time,
        )
        return StackFit(fitted_learners=tuple(fitted), failed_learners=failed)

    def _make_fitted(self, task, fit_object):
        return FittedStack(
            learner=self,
            fit_object=fit_object,
            schema=task.schema,
            n_training_rows=task.n_rows,
        )

    def _predict(self, fitted, task):
        return _stack_predictions([fit.predict(task) for fit in fitted.fit_object.fitted_learners])

    def _chain(self, fitted, task):
        columns = fitted.predict_frame(task)
        return task.next_in_chain(covariates=list(columns.columns), new_columns=columns)


@dataclass(frozen=True, eq=False)
class FittedStack(FittedLearner):
    """Fitted Stack: one fitted learner per surviving constituent."""

    @property
    def fitted_learners(self) -> dict[str, FittedLearner]:
        return {fit.name: fit for fit in self.fit_object.fitted_learners}

    @property
    def learner_names(self) -> list[str]:
        return [fit.name for fit in self.fit_object.fitted_learners]

    @property
    def failed_learners(self) -> dict[str, LearnerTrainingFailure]:
        return dict(self.fit_object.failed_learners)

    def predict_frame(self, data: TaskLike) -> pd.DataFrame:
        """Wide prediction table: one column per learner (per level if categorical)."""
        task = self.as_task(data)
        frames = [
            prediction_frame(fit.name, fit.predict(task), task.outcome_levels)
            for fit in self.fit_object.fitted_learners
        ]
        return pd.concat(frames, axis=1)

    def subset(self, learner_names: Sequence[str]) -> FittedStack:
        """Fitted stack restricted to ``learner_names`` (in stack order)."""
        keep = set(learner_names)
        fits = tuple(fit for fit in self.fit_object.fitted_learners if fit.name in keep)
        stack: Stack = self.learner
        return FittedStack(
            learner=stack.with_learners([fit.learner for fit in fits]),
            fit_object=StackFit(fitted_learners=fits, failed_learners=self.failed_learners),
            schema=self.schema,
            n_training_rows=self.n_training_rows,
        )


class Pipeline(Learner):
    """Chains learners; each stage trains on the previous stage's output task.

    Args:
        stages: Learners in order; all but the last act as task transforms
        name: Identifier of the pipeline

    Raises:
        ConfigurationError: If no stages are given
    """

    registry_name = "pipeline"
    supports_weights = True
    supports_offset = True

    def __init__(self, *stages: Learner, name: str | None = None) -> None:
        super().__init__(name=name)
        if len(stages) == 1 and isinstance(stages[0], (list, tuple)):
            stages = tuple(stages[0])
        if not stages:
            raise ConfigurationError("A Pipeline needs at least one stage")
        self.stages: tuple[Learner, ...] = tuple(stages)

    @property
    def name(self) -> str:
        if self._name is not None:
            return self._name
        return "__".join(stage.name for stage in self.stages)

    @property
    def outcome_types(self) -> frozenset[str]:  # type: ignore[override]
        supported = set(OUTCOME_TYPES)
        for stage in self.stages:
            supported &= set(stage.outcome_types)
        return frozenset(supported)

    def check_capabilities(self, task: Task) -> None:
        """Raise the first stage's capability error, naming that stage."""
        for stage in self.stages:
            stage.check_capabilities(task)

    @staticmethod
    def _check_derived(previous: Task, derived: Task, stage: Learner) -> None:
        if derived.n_rows != previous.n_rows:
            raise ConfigurationError(
                f"Stage '{stage.name}' changed the number of rows "
                f"({previous.n_rows} -> {derived.n_rows})"
            )
        if derived.outcome != previous.outcome or (
            previous.has_outcome and not np.array_equal(derived.Y, previous.Y)
        ):
            raise ConfigurationError(f"Stage '{stage.name}' changed the outcome")

    def _train(self, task, weights, offsets):
        fits = []
        current = task
        for position, stage in enumerate(self.stages):
            fit = stage.train(current)
            fits.append(fit)
            if position < len(self.stages) - 1:
                derived = fit.chain(current)
                self._check_derived(current, derived, stage)
                current = derived
        return tuple(fits)

    def _make_fitted(self, task, fit_object):
        return FittedPipeline(
            learner=self,
            fit_object=fit_object,
            schema=task.schema,
            n_training_rows=task.n_rows,
        )

    def _predict(self, fitted, task):
        current = task
        for fit in fitted.fit_object[:-1]:
            current = fit.chain(current)
        return fitted.fit_object[-1].predict(current)

    def _chain(self, fitted, task):
        current = task
        for fit in fitted.fit_object:
            current = fit.chain(current)
        return current


@dataclass(frozen=True, eq=False)
class FittedPipeline(FittedLearner):
    """Fitted Pipeline retaining every fitted stage."""

    @property
    def fitted_stages(self) -> tuple[FittedLearner, ...]:
        return tuple(self.fit_object)

    @property
    def final_stage(self) -> FittedLearner:
        return self.fit_object[-1]
