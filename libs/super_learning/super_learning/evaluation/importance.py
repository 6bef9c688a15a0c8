"""Permutation variable importance for fitted learners.

Each covariate (or group of covariates) is shuffled across rows while all
other columns stay fixed, the already-fitted model predicts again without
retraining, and the change in risk measures how much the model relies on
that covariate.
"""

from __future__ import annotations

import logging
from typing import Any, Literal, Mapping, Sequence, Union

import numpy as np
import pandas as pd

from ..core.base import ConfigurationError
from ..data.task import Task
from ..learners.base import check_is_fitted
from .losses import LossFunction, get_loss, risk

logger = logging.getLogger(__name__)

__all__ = [
    "permutation_importance",
]

IMPORTANCE_COLUMNS = ["covariate", "importance", "risk_permuted", "risk_original"]


def _resolve_groups(
    task: Task, covariate_groups: Mapping[str, Sequence[str]] | None
) -> dict[str, list[str]]:
    if covariate_groups is None:
        return {column: [column] for column in task.covariates}

    groups = {}
    for group, columns in covariate_groups.items():
        columns = [columns] if isinstance(columns, str) else list(columns)
        unknown = [c for c in columns if c not in task.covariates]
        if unknown:
            raise ConfigurationError(f"Group '{group}' names unknown covariates {unknown}")
        if not columns:
            raise ConfigurationError(f"Group '{group}' is empty")
        groups[group] = columns
    return groups


def permutation_importance(
    fitted: Any,
    task: Union[Task, pd.DataFrame],
    loss: Union[str, LossFunction, None] = None,
    n_repeats: int = 1,
    random_state: Union[int, np.random.Generator, None] = None,
    covariate_groups: Mapping[str, Sequence[str]] | None = None,
    metric: Literal["difference", "ratio"] = "difference",
) -> pd.DataFrame:
    """Permutation importance of each covariate for a fitted learner.

    Args:
        fitted: Fitted learner (typically a fitted Super Learner)
        task: Task or raw rows with an observed outcome
        loss: Loss; defaults to the fit's loss or the outcome type's default
        n_repeats: Permutations averaged per covariate
        random_state: Seed or generator for the permutations
        covariate_groups: Optional mapping of group name to covariates that
            are permuted jointly; defaults to one group per covariate
        metric: "difference" (permuted minus original risk) or "ratio"

    Returns:
        DataFrame with columns covariate, importance, risk_permuted and
        risk_original, sorted by decreasing importance. Negative and tied
        importances are kept.

    Raises:
        ConfigurationError: For an unknown metric, invalid groups, a task
            without outcome, or ``n_repeats < 1``
        NotFittedError: If ``fitted`` has not been trained
    """
    if metric not in ("difference", "ratio"):
        raise ConfigurationError(f"metric must be 'difference' or 'ratio', got '{metric}'")
    if n_repeats < 1:
        raise ConfigurationError("n_repeats must be at least 1")

    fitted = check_is_fitted(fitted)
    task = fitted.as_task(task)
    if not task.has_outcome:
        raise ConfigurationError("Variable importance needs an observed outcome")

    if loss is None and getattr(fitted, "loss", None) is not None:
        loss_function = fitted.loss
    else:
        loss_function = get_loss(loss, task.outcome_type)

    y = task.Y
    weights = task.weights if task.has_weights else None
    risk_original = risk(loss_function(fitted.predict(task), y), weights)

    rng = np.random.default_rng(random_state)
    covariates = task.get_covariate_frame()
    groups = _resolve_groups(task, covariate_groups)

    rows = []
    for group, columns in groups.items():
        permuted_risks = []
        for _ in range(n_repeats):
            order = rng.permutation(task.n_rows)
            permuted = task
            for column in columns:
                permuted = permuted.with_covariate_values(
                    column, covariates[column].to_numpy()[order]
                )
            permuted_risks.append(risk(loss_function(fitted.predict(permuted), y), weights))

        risk_permuted = float(np.mean(permuted_risks))
        if metric == "difference":
            importance = risk_permuted - risk_original
        else:
            importance = risk_permuted / risk_original if risk_original > 0 else np.inf
        rows.append(
            {
                "covariate": group,
                "importance": importance,
                "risk_permuted": risk_permuted,
                "risk_original": risk_original,
            }
        )

    logger.debug("Computed permutation importance for %d covariate groups", len(rows))
    table = pd.DataFrame(rows, columns=IMPORTANCE_COLUMNS)
    return table.sort_values("importance", ascending=False, kind="stable").reset_index(drop=True)
