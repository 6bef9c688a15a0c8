"""Plain-text rendering of risk tables, weights and fitted ensembles."""

from __future__ import annotations

from typing import TYPE_CHECKING, Mapping

import numpy as np
import pandas as pd

from ..learners.base import check_is_fitted

if TYPE_CHECKING:
    from ..ml.super_learner import FittedSuperLearner

__all__ = [
    "format_importance",
    "format_risk_table",
    "format_weights",
    "summarize_fit",
]


def _format_number(value: float, digits: int) -> str:
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return "-"
    return f"{value:.{digits}f}"


def format_risk_table(table: pd.DataFrame, digits: int = 4) -> str:
    """Render a risk table as aligned text, one learner per line.

    Args:
        table: Risk table with at least ``learner`` and ``risk`` columns
        digits: Decimal places for numeric columns

    Returns:
        Multi-line string; the discrete selector is not marked
    """
    if table.empty:
        return "(no learners)"
    formatted = table.copy()
    for column in formatted.columns:
        if pd.api.types.is_numeric_dtype(formatted[column]):
            formatted[column] = [_format_number(v, digits) for v in formatted[column]]
    return formatted.to_string(index=False)


def format_weights(weights: Mapping[str, float], digits: int = 4) -> str:
    """Render metalearner weights, largest first."""
    if not weights:
        return "(no weights)"
    width = max(len(name) for name in weights)
    ordered = sorted(weights.items(), key=lambda item: -item[1])
    return "\n".join(f"{name:<{width}}  {weight:.{digits}f}" for name, weight in ordered)


def format_importance(importance: pd.DataFrame, digits: int = 4) -> str:
    """Render a variable importance table in its given order."""
    columns = [
        c
        for c in ("covariate", "importance", "risk_permuted", "risk_original")
        if c in importance
    ]
    return format_risk_table(importance[columns], digits=digits)


def summarize_fit(fitted: FittedSuperLearner) -> str:
    """Text summary of a fitted Super Learner.

    Raises:
        NotFittedError: If ``fitted`` has not been trained
    """
    fitted = check_is_fitted(fitted)
    if not hasattr(fitted, "summary"):
        raise TypeError(f"{type(fitted).__name__} has no summary; expected a fitted Super Learner")
    return fitted.summary()
