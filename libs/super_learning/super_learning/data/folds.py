"""Cross-validation fold plans.

A fold plan is an ordered sequence of :class:`FoldAssignment` objects whose
validation sets partition the rows of a task. Fold plans are generated once
at task construction and never mutated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Sequence, Union

import numpy as np
from numpy.typing import NDArray
from sklearn.model_selection import GroupKFold, KFold, StratifiedKFold

from ..core.base import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = [
    "FoldAssignment",
    "make_folds",
    "validate_folds",
]

FoldSpec = Union[str, Callable[..., Any]]


@dataclass(frozen=True, eq=False)
class FoldAssignment:
    """Training and validation rows of a single fold.

    Row ids are positional indices into the owning task. Both arrays are
    sorted and read-only.
    """

    fold_id: int
    training_row_ids: NDArray[np.intp]
    validation_row_ids: NDArray[np.intp]

    def __post_init__(self) -> None:
        for attribute in ("training_row_ids", "validation_row_ids"):
            ids = np.sort(np.asarray(getattr(self, attribute), dtype=np.intp))
            ids.setflags(write=False)
            object.__setattr__(self, attribute, ids)

    @property
    def n_training(self) -> int:
        return len(self.training_row_ids)

    @property
    def n_validation(self) -> int:
        return len(self.validation_row_ids)


def _vfold_splits(
    n_rows: int, n_folds: int, random_state: int | None
) -> list[tuple[NDArray[Any], NDArray[Any]]]:
    splitter = KFold(n_splits=n_folds, shuffle=True, random_state=random_state)
    return list(splitter.split(np.zeros(n_rows)))


def _stratified_splits(
    n_rows: int,
    n_folds: int,
    outcome: NDArray[Any] | None,
    outcome_type: str | None,
    random_state: int | None,
) -> list[tuple[NDArray[Any], NDArray[Any]]]:
    if outcome is None or outcome_type not in ("binary", "categorical"):
        return _vfold_splits(n_rows, n_folds, random_state)

    _, counts = np.unique(outcome, return_counts=True)
    if counts.min() < n_folds:
        logger.debug(
            "Smallest outcome class has %d rows (< %d folds); using unstratified folds",
            counts.min(),
            n_folds,
        )
        return _vfold_splits(n_rows, n_folds, random_state)

    splitter = StratifiedKFold(n_splits=n_folds, shuffle=True, random_state=random_state)
    return list(splitter.split(np.zeros(n_rows), outcome))


def _grouped_splits(
    n_rows: int,
    n_folds: int,
    groups: NDArray[Any] | None,
    random_state: int | None,
) -> list[tuple[NDArray[Any], NDArray[Any]]]:
    if groups is None:
        raise ConfigurationError("Grouped folds require an id column")

    unique_groups, group_codes = np.unique(groups, return_inverse=True)
    if len(unique_groups) < n_folds:
        raise ConfigurationError(
            f"Cannot create {n_folds} grouped folds from {len(unique_groups)} ids"
        )

    # GroupKFold is deterministic, so shuffle the group labels first
    rng = np.random.default_rng(random_state)
    shuffled_codes = rng.permutation(len(unique_groups))[group_codes]
    splitter = GroupKFold(n_splits=n_folds)
    return list(splitter.split(np.zeros(n_rows), groups=shuffled_codes))


def make_folds(
    n_rows: int,
    n_folds: int = 10,
    fold_fun: FoldSpec = "stratified",
    outcome: NDArray[Any] | None = None,
    outcome_type: str | None = None,
    groups: NDArray[Any] | None = None,
    random_state: int | None = None,
) -> tuple[FoldAssignment, ...]:
    """Create a V-fold plan over ``n_rows`` rows.

    Args:
        n_rows: Number of rows in the task
        n_folds: Number of folds (V)
        fold_fun: "stratified", "vfold", "grouped" or a callable returning
            ``(training_idx, validation_idx)`` pairs
        outcome: Encoded outcome, used for stratification
        outcome_type: Outcome type of the task
        groups: Cluster ids; rows sharing an id stay in the same fold
        random_state: Seed for shuffling

    Returns:
        Tuple of fold assignments whose validation sets partition the rows

    Raises:
        ConfigurationError: If the plan cannot be built or is not a partition
    """
    if n_folds < 2:
        raise ConfigurationError(f"n_folds must be at least 2, got {n_folds}")
    if n_folds > n_rows:
        raise ConfigurationError(
            f"Cannot create {n_folds} folds from {n_rows} rows"
        )

    if callable(fold_fun):
        splits = list(
            fold_fun(
                n_rows=n_rows,
                n_folds=n_folds,
                outcome=outcome,
                groups=groups,
                random_state=random_state,
            )
        )
    elif groups is not None and fold_fun in ("stratified", "vfold", "grouped"):
        # Rows sharing an id must never straddle training and validation
        splits = _grouped_splits(n_rows, n_folds, groups, random_state)
    elif fold_fun == "stratified":
        splits = _stratified_splits(n_rows, n_folds, outcome, outcome_type, random_state)
    elif fold_fun == "vfold":
        splits = _vfold_splits(n_rows, n_folds, random_state)
    elif fold_fun == "grouped":
        splits = _grouped_splits(n_rows, n_folds, groups, random_state)
    else:
        raise ConfigurationError(f"Unknown fold function '{fold_fun}'")

    folds = tuple(
        FoldAssignment(fold_id=fold_id, training_row_ids=train_idx, validation_row_ids=val_idx)
        for fold_id, (train_idx, val_idx) in enumerate(splits)
    )
    validate_folds(folds, n_rows)
    return folds


def validate_folds(folds: Sequence[FoldAssignment], n_rows: int) -> None:
    """Check that a fold plan is a V-fold partition of ``n_rows`` rows.

    Every fold's training and validation rows must partition the row set,
    and the validation sets must be pairwise disjoint and cover every row.

    Raises:
        ConfigurationError: If any condition is violated
    """
    if len(folds) < 2:
        raise ConfigurationError(f"A fold plan needs at least 2 folds, got {len(folds)}")

    validation_counts = np.zeros(n_rows, dtype=int)
    for fold in folds:
        train_ids = fold.training_row_ids
        val_ids = fold.validation_row_ids

        if len(val_ids) == 0 or len(train_ids) == 0:
            raise ConfigurationError(f"Fold {fold.fold_id} has an empty split")
        if val_ids.min() < 0 or val_ids.max() >= n_rows:
            raise ConfigurationError(f"Fold {fold.fold_id} references unknown rows")
        if train_ids.min() < 0 or train_ids.max() >= n_rows:
            raise ConfigurationError(f"Fold {fold.fold_id} references unknown rows")

        membership = np.zeros(n_rows, dtype=int)
        np.add.at(membership, train_ids, 1)
        np.add.at(membership, val_ids, 1)
        if not np.all(membership == 1):
            raise ConfigurationError(
                f"Fold {fold.fold_id} training and validation rows do not partition the task"
            )

        np.add.at(validation_counts, val_ids, 1)

    if not np.all(validation_counts == 1):
        raise ConfigurationError(
            "Validation sets must cover every row exactly once across folds"
        )
