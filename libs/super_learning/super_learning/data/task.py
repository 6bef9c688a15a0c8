"""Task: a dataset bundled with variable roles and a cross-validation plan.

A Task is the unit every learner trains and predicts on. It owns a private
copy of its table, never mutates it, and derives new tasks (row subsets,
pipeline stages, permuted covariates) through explicit copy-with-transform
methods so fold-local and parallel training can share one parent task safely.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from functools import cached_property
from typing import Any, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from pydantic import ValidationError

from ..core.base import ConfigurationError
from ..core.config import TaskConfig
from .folds import FoldAssignment, make_folds
from .imputation import ImputationPlan, plan_imputation

logger = logging.getLogger(__name__)

__all__ = [
    "Task",
    "TaskSchema",
]


@dataclass(frozen=True)
class TaskSchema:
    """Column roles and encodings shared by a task and everything derived from it.

    The schema is what a fitted learner keeps from its training task so it
    can turn new raw rows into a prediction task with identical processing.
    """

    outcome: str
    covariates: tuple[str, ...]
    outcome_type: str
    outcome_levels: tuple[Any, ...] | None = None
    categorical_levels: dict[str, tuple[Any, ...]] = field(default_factory=dict)
    imputation: ImputationPlan | None = None
    id_column: str | None = None
    weight_column: str | None = None
    offset_column: str | None = None

    def prepare(self, frame: pd.DataFrame) -> Task:
        """Build a prediction task from new raw rows.

        The training imputation plan and categorical encodings are applied.
        The outcome column is optional; when absent the task cannot be used
        for training or risk computation.

        Raises:
            ConfigurationError: If a source covariate column is missing
        """
        source_columns = self.source_covariates
        missing = [c for c in source_columns if c not in frame.columns]
        if missing:
            raise ConfigurationError(f"New data is missing covariate columns {missing}")

        data = frame.reset_index(drop=True).copy()
        if self.imputation is not None:
            data = self.imputation.apply(data)
        data = _apply_categorical_levels(data, self.categorical_levels)

        if self.outcome in data.columns:
            data[self.outcome] = _encode_outcome(
                data[self.outcome], self.outcome_type, self.outcome_levels
            )

        return Task._from_parts(data, self, folds=(), config=TaskConfig())

    @property
    def source_covariates(self) -> tuple[str, ...]:
        """Covariates that must be present in raw data (no indicators)."""
        indicators = set()
        if self.imputation is not None:
            indicators = set(self.imputation.indicator_columns.values())
        return tuple(c for c in self.covariates if c not in indicators)


def _apply_categorical_levels(
    data: pd.DataFrame, categorical_levels: dict[str, tuple[Any, ...]]
) -> pd.DataFrame:
    for column, levels in categorical_levels.items():
        if column in data.columns:
            data[column] = pd.Categorical(data[column], categories=list(levels))
    return data


def _detect_outcome_type(values: pd.Series) -> str:
    if isinstance(values.dtype, pd.CategoricalDtype) or not (
        pd.api.types.is_numeric_dtype(values) or pd.api.types.is_bool_dtype(values)
    ):
        return "categorical"
    if values.nunique() == 2:
        return "binary"
    return "continuous"


def _outcome_levels(values: pd.Series, outcome_type: str) -> tuple[Any, ...] | None:
    if outcome_type == "continuous":
        return None
    if isinstance(values.dtype, pd.CategoricalDtype):
        levels = [level for level in values.cat.categories if level in set(values)]
    else:
        levels = sorted(values.unique().tolist())
    if outcome_type == "binary" and len(levels) > 2:
        raise ConfigurationError(
            f"Binary outcome must have at most 2 distinct values, got {len(levels)}"
        )
    return tuple(levels)


def _encode_outcome(
    values: pd.Series, outcome_type: str, levels: tuple[Any, ...] | None
) -> pd.Series:
    """Encode binary outcomes as 0/1 and categorical outcomes as level codes."""
    if outcome_type == "continuous":
        if not pd.api.types.is_numeric_dtype(values):
            raise ConfigurationError("Continuous outcome must be numeric")
        return values.astype(float)

    if levels is None:
        raise ConfigurationError(f"{outcome_type.title()} outcome needs its recorded levels")
    codes = pd.Categorical(values, categories=list(levels)).codes
    encoded = pd.Series(codes, index=values.index, dtype=float)
    # Unknown levels get code -1; keep them missing rather than mislabelled
    encoded[(codes == -1) & values.notna().to_numpy()] = np.nan
    encoded[values.isna().to_numpy()] = np.nan
    return encoded


class Task:
    """Immutable handle over a table, its variable roles and its fold plan.

    Args:
        data: Raw table; copied, never modified
        outcome: Outcome column name
        covariates: Ordered covariate column names
        id_column: Optional cluster id column; rows sharing an id stay in one fold
        weight_column: Optional non-negative observation weight column
        offset_column: Optional offset column for learners supporting offsets
        config: Task options; keyword overrides (``n_folds``, ``fold_fun``,
            ``random_state``, ``outcome_type``, ``impute_missing``) take
            precedence over it

    Raises:
        ConfigurationError: If roles, folds or options are invalid
    """

    def __init__(
        self,
        data: pd.DataFrame,
        outcome: str,
        covariates: Sequence[str],
        *,
        id_column: str | None = None,
        weight_column: str | None = None,
        offset_column: str | None = None,
        config: TaskConfig | None = None,
        **config_overrides: Any,
    ) -> None:
        try:
            if config is None:
                config = TaskConfig(**config_overrides)
            elif config_overrides:
                config = TaskConfig(**{**config.model_dump(), **config_overrides})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid task configuration: {e}") from e

        covariates = tuple(covariates)
        self._validate_roles(data, outcome, covariates, id_column, weight_column, offset_column)

        # Rows without an outcome are excluded, not imputed
        outcome_missing = data[outcome].isna().to_numpy()
        n_dropped = int(outcome_missing.sum())
        frame = data.loc[~outcome_missing].reset_index(drop=True).copy()
        if n_dropped:
            logger.info("Dropped %d rows with missing outcome '%s'", n_dropped, outcome)

        if len(frame) < 2:
            raise ConfigurationError(
                f"Task needs at least 2 rows with an observed outcome, got {len(frame)}"
            )

        self._validate_auxiliary_columns(frame, id_column, weight_column, offset_column)

        outcome_type = config.outcome_type
        if outcome_type == "auto":
            outcome_type = _detect_outcome_type(frame[outcome])
        outcome_levels = _outcome_levels(frame[outcome], outcome_type)
        frame[outcome] = _encode_outcome(frame[outcome], outcome_type, outcome_levels)

        imputation = None
        if config.impute_missing:
            imputation = plan_imputation(frame, covariates)
            if imputation.indicator_columns:
                frame = imputation.apply(frame)
                logger.info(
                    "Imputed missing values in covariates %s; added indicators %s",
                    imputation.imputed_columns,
                    list(imputation.indicator_columns.values()),
                )
                covariates = covariates + tuple(imputation.indicator_columns.values())
        elif frame[list(covariates)].isna().any().any():
            raise ConfigurationError(
                "Covariates contain missing values and impute_missing is disabled"
            )

        categorical_levels = {}
        for column in covariates:
            series = frame[column]
            if isinstance(series.dtype, pd.CategoricalDtype):
                categorical_levels[column] = tuple(series.cat.categories)
            elif not (
                pd.api.types.is_numeric_dtype(series) or pd.api.types.is_bool_dtype(series)
            ):
                categorical_levels[column] = tuple(sorted(series.astype(str).unique()))
                frame[column] = series.astype(str)
        frame = _apply_categorical_levels(frame, categorical_levels)

        schema = TaskSchema(
            outcome=outcome,
            covariates=covariates,
            outcome_type=outcome_type,
            outcome_levels=outcome_levels,
            categorical_levels=categorical_levels,
            imputation=imputation,
            id_column=id_column,
            weight_column=weight_column,
            offset_column=offset_column,
        )

        if config.n_folds > len(frame):
            raise ConfigurationError(
                f"Cannot create {config.n_folds} folds from {len(frame)} rows"
            )
        folds = make_folds(
            n_rows=len(frame),
            n_folds=config.n_folds,
            fold_fun=config.fold_fun,
            outcome=frame[outcome].to_numpy(),
            outcome_type=outcome_type,
            groups=frame[id_column].to_numpy() if id_column else None,
            random_state=config.random_state,
        )

        self._data = frame
        self._schema = schema
        self._folds = folds
        self._config = config

    @classmethod
    def _from_parts(
        cls,
        data: pd.DataFrame,
        schema: TaskSchema,
        folds: tuple[FoldAssignment, ...],
        config: TaskConfig,
    ) -> Task:
        """Assemble a task from already-processed parts without re-validation."""
        task = cls.__new__(cls)
        task._data = data
        task._schema = schema
        task._folds = folds
        task._config = config
        return task

    @staticmethod
    def _validate_roles(
        data: pd.DataFrame,
        outcome: str,
        covariates: tuple[str, ...],
        id_column: str | None,
        weight_column: str | None,
        offset_column: str | None,
    ) -> None:
        if outcome not in data.columns:
            raise ConfigurationError(f"Outcome column '{outcome}' not found in data")
        if outcome in covariates:
            raise ConfigurationError(
                f"Outcome column '{outcome}' cannot also be a covariate"
            )
        if len(set(covariates)) != len(covariates):
            raise ConfigurationError("Covariate names must be unique")

        missing = [c for c in covariates if c not in data.columns]
        if missing:
            raise ConfigurationError(f"Covariate columns {missing} not found in data")

        for role, column in (
            ("id", id_column),
            ("weight", weight_column),
            ("offset", offset_column),
        ):
            if column is None:
                continue
            if column not in data.columns:
                raise ConfigurationError(f"{role.title()} column '{column}' not found in data")
            if column == outcome or column in covariates:
                raise ConfigurationError(
                    f"{role.title()} column '{column}' cannot also be the outcome or a covariate"
                )

    @staticmethod
    def _validate_auxiliary_columns(
        frame: pd.DataFrame,
        id_column: str | None,
        weight_column: str | None,
        offset_column: str | None,
    ) -> None:
        for column in (id_column, weight_column, offset_column):
            if column is not None and frame[column].isna().any():
                raise ConfigurationError(f"Column '{column}' cannot contain missing values")

        if weight_column is not None:
            weights = frame[weight_column]
            if not pd.api.types.is_numeric_dtype(weights) or (weights < 0).any():
                raise ConfigurationError("Weights must be non-negative numbers")
            if weights.sum() <= 0:
                raise ConfigurationError("Weights must not all be zero")

        if offset_column is not None and not pd.api.types.is_numeric_dtype(frame[offset_column]):
            raise ConfigurationError("Offsets must be numeric")

    # ------------------------------------------------------------------
    # Accessors (all return copies)
    # ------------------------------------------------------------------

    @property
    def schema(self) -> TaskSchema:
        return self._schema

    @property
    def config(self) -> TaskConfig:
        return self._config

    @property
    def data(self) -> pd.DataFrame:
        """Copy of the backing table."""
        return self._data.copy()

    @property
    def outcome(self) -> str:
        return self._schema.outcome

    @property
    def covariates(self) -> tuple[str, ...]:
        return self._schema.covariates

    @property
    def outcome_type(self) -> str:
        return self._schema.outcome_type

    @property
    def outcome_levels(self) -> tuple[Any, ...] | None:
        return self._schema.outcome_levels

    @property
    def folds(self) -> tuple[FoldAssignment, ...]:
        return self._folds

    @property
    def n_folds(self) -> int:
        return len(self._folds)

    @property
    def n_rows(self) -> int:
        return len(self._data)

    def __len__(self) -> int:
        return self.n_rows

    @property
    def row_ids(self) -> NDArray[np.intp]:
        return np.arange(self.n_rows, dtype=np.intp)

    @property
    def has_outcome(self) -> bool:
        column = self._schema.outcome
        return column in self._data.columns and not self._data[column].isna().any()

    @property
    def Y(self) -> NDArray[Any]:  # noqa: N802
        """Encoded outcome: floats, 0/1 for binary, level codes for categorical."""
        if not self.has_outcome:
            raise ConfigurationError("Task has no observed outcome")
        return self._data[self._schema.outcome].to_numpy(dtype=float, copy=True)

    @property
    def weights(self) -> NDArray[Any]:
        """Observation weights; ones when the task has no weight column."""
        if self._schema.weight_column is None or self._schema.weight_column not in self._data:
            return np.ones(self.n_rows)
        return self._data[self._schema.weight_column].to_numpy(dtype=float, copy=True)

    @property
    def has_weights(self) -> bool:
        return self._schema.weight_column is not None and self._schema.weight_column in self._data

    @property
    def offsets(self) -> NDArray[Any] | None:
        column = self._schema.offset_column
        if column is None or column not in self._data:
            return None
        return self._data[column].to_numpy(dtype=float, copy=True)

    @property
    def ids(self) -> NDArray[Any]:
        """Cluster ids; row ids when the task has no id column."""
        if self._schema.id_column is None or self._schema.id_column not in self._data:
            return self.row_ids
        return self._data[self._schema.id_column].to_numpy(copy=True)

    def get_covariate_frame(self) -> pd.DataFrame:
        """Covariate columns as stored (categoricals not expanded)."""
        return self._data[list(self._schema.covariates)].copy()

    @cached_property
    def _design_matrix(self) -> pd.DataFrame:
        covariates = self._data[list(self._schema.covariates)]
        categorical = [c for c in self._schema.covariates if c in self._schema.categorical_levels]
        if categorical:
            covariates = pd.get_dummies(covariates, columns=categorical, dtype=float)
        return covariates.astype(float)

    @property
    def X(self) -> pd.DataFrame:  # noqa: N802
        """Numeric design matrix with categorical covariates one-hot encoded."""
        return self._design_matrix.copy()

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    def _regenerate_folds(self, data: pd.DataFrame) -> tuple[FoldAssignment, ...]:
        n_rows = len(data)
        id_column = self._schema.id_column
        groups = data[id_column].to_numpy() if id_column and id_column in data else None
        n_units = len(np.unique(groups)) if groups is not None else n_rows
        n_folds = min(self._config.n_folds, n_units)
        if n_folds < 2:
            return ()
        outcome = None
        if self._schema.outcome in data.columns:
            outcome = data[self._schema.outcome].to_numpy()
        return make_folds(
            n_rows=n_rows,
            n_folds=n_folds,
            fold_fun=self._config.fold_fun,
            outcome=outcome,
            outcome_type=self._schema.outcome_type,
            groups=groups,
            random_state=self._config.random_state,
        )

    def subset(
        self, row_ids: Sequence[int] | NDArray[Any], with_folds: bool = True
    ) -> Task:
        """New task over the given rows, with a fold plan regenerated for them.

        Row ids of the new task are positions ``0..len(row_ids)-1`` in the
        order given. With ``with_folds=False`` the new task has no fold plan,
        which is enough for prediction and risk computation.
        """
        row_ids = np.asarray(row_ids, dtype=np.intp)
        data = self._data.iloc[row_ids].reset_index(drop=True).copy()
        folds = self._regenerate_folds(data) if with_folds else ()
        return Task._from_parts(data, self._schema, folds, self._config)

    def next_in_chain(
        self,
        covariates: Sequence[str] | None = None,
        new_columns: pd.DataFrame | None = None,
    ) -> Task:
        """Derived task for the next pipeline stage.

        Rows, outcome, weights, ids and folds are preserved; only the covariate
        set and covariate values may change.

        Args:
            covariates: New covariate set (defaults to the current one)
            new_columns: Columns to add or replace, aligned by row position

        Raises:
            ConfigurationError: If new columns would overwrite a non-covariate
                column or a requested covariate does not exist
        """
        data = self._data.copy()
        categorical_levels = dict(self._schema.categorical_levels)

        if new_columns is not None:
            if len(new_columns) != self.n_rows:
                raise ConfigurationError(
                    f"New columns have {len(new_columns)} rows, task has {self.n_rows}"
                )
            protected = {
                self._schema.outcome,
                self._schema.id_column,
                self._schema.weight_column,
                self._schema.offset_column,
            }
            clashes = [c for c in new_columns.columns if c in protected]
            if clashes:
                raise ConfigurationError(f"Cannot overwrite role columns {clashes}")
            for column in new_columns.columns:
                data[column] = new_columns[column].to_numpy()
                categorical_levels.pop(column, None)

        covariates = tuple(covariates) if covariates is not None else self._schema.covariates
        missing = [c for c in covariates if c not in data.columns]
        if missing:
            raise ConfigurationError(f"Covariate columns {missing} not found in task")
        if self._schema.outcome in covariates:
            raise ConfigurationError("The outcome cannot become a covariate")

        categorical_levels = {c: v for c, v in categorical_levels.items() if c in covariates}
        schema = replace(
            self._schema, covariates=covariates, categorical_levels=categorical_levels
        )
        return Task._from_parts(data, schema, self._folds, self._config)

    def with_covariate_values(self, column: str, values: Any) -> Task:
        """Copy of this task with one covariate's values replaced."""
        if column not in self._schema.covariates:
            raise ConfigurationError(f"'{column}' is not a covariate of this task")
        data = self._data.copy()
        replacement = np.asarray(values)
        if len(replacement) != self.n_rows:
            raise ConfigurationError(
                f"Replacement for '{column}' has {len(replacement)} values, expected {self.n_rows}"
            )
        if column in self._schema.categorical_levels:
            data[column] = pd.Categorical(
                replacement, categories=list(self._schema.categorical_levels[column])
            )
        else:
            data[column] = replacement
        return Task._from_parts(data, self._schema, self._folds, self._config)

    def split_holdout(
        self, fraction: float = 0.2, random_state: int | None = None
    ) -> tuple[Task, Task]:
        """Split off an external holdout task disjoint from the training task.

        Rows sharing an id are kept on the same side. Each side gets its own
        regenerated fold plan.

        Returns:
            Tuple of (training_task, holdout_task)
        """
        if not 0 < fraction < 1:
            raise ConfigurationError(f"Holdout fraction must be in (0, 1), got {fraction}")

        rng = np.random.default_rng(random_state)
        units, unit_codes = np.unique(self.ids, return_inverse=True)
        n_holdout_units = max(1, math.ceil(fraction * len(units)))
        if n_holdout_units >= len(units):
            raise ConfigurationError("Holdout fraction leaves no training rows")

        holdout_units = rng.permutation(len(units))[:n_holdout_units]
        in_holdout = np.isin(unit_codes, holdout_units)
        return self.subset(np.flatnonzero(~in_holdout)), self.subset(np.flatnonzero(in_holdout))

    def __repr__(self) -> str:
        return (
            f"Task(n_rows={self.n_rows}, outcome='{self.outcome}', "
            f"outcome_type='{self.outcome_type}', covariates={list(self.covariates)}, "
            f"n_folds={self.n_folds})"
        )
