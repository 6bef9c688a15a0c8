"""Missing covariate handling for task construction.

Continuous covariates are imputed with the column median and categorical or
binary covariates with the column mode. Each covariate that had missing
values gains an indicator covariate ``delta_<column>`` recording which rows
were imputed, so learners can still use the missingness pattern.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np
import pandas as pd
from sklearn.impute import SimpleImputer

__all__ = [
    "ImputationPlan",
    "indicator_name",
    "is_categorical_column",
    "plan_imputation",
]


def indicator_name(column: str) -> str:
    """Name of the missingness indicator for ``column``."""
    return f"delta_{column}"


def is_categorical_column(values: pd.Series) -> bool:
    """Whether a column is imputed with its mode rather than its median.

    Non-numeric, boolean and binary (at most two observed values) columns
    count as categorical.
    """
    if isinstance(values.dtype, pd.CategoricalDtype):
        return True
    if pd.api.types.is_bool_dtype(values) or not pd.api.types.is_numeric_dtype(values):
        return True
    return values.dropna().nunique() <= 2


@dataclass(frozen=True)
class ImputationPlan:
    """Fill values learned from the training table.

    Attributes:
        fill_values: Fill value for every covariate
        indicator_columns: Covariates that gained a missingness indicator,
            mapped to the indicator column name
    """

    fill_values: dict[str, Any] = field(default_factory=dict)
    indicator_columns: dict[str, str] = field(default_factory=dict)

    @property
    def imputed_columns(self) -> list[str]:
        return list(self.indicator_columns)

    def apply(self, frame: pd.DataFrame) -> pd.DataFrame:
        """Return a copy of ``frame`` with missing covariates filled.

        Indicator columns are appended for every covariate that had missing
        values when the plan was built, whether or not ``frame`` has any.
        """
        result = frame.copy()

        for column, indicator in self.indicator_columns.items():
            result[indicator] = result[column].isna().astype(int)

        for column, fill_value in self.fill_values.items():
            if column not in result.columns or not result[column].isna().any():
                continue
            series = result[column]
            if isinstance(series.dtype, pd.CategoricalDtype) and (
                fill_value not in series.cat.categories
            ):
                series = series.cat.add_categories([fill_value])
            result[column] = series.fillna(fill_value)

        return result


def _fill_value(values: pd.Series) -> Any:
    observed = values.dropna()
    if observed.empty:
        return 0.0

    if is_categorical_column(values):
        imputer = SimpleImputer(strategy="most_frequent", missing_values=np.nan)
        column = values.astype(object).where(values.notna(), np.nan)
        imputer.fit(column.to_frame())
    else:
        imputer = SimpleImputer(strategy="median")
        imputer.fit(values.astype(float).to_frame())

    fill_value = imputer.statistics_[0]
    if isinstance(fill_value, np.generic):
        fill_value = fill_value.item()
    return fill_value


def plan_imputation(frame: pd.DataFrame, covariates: Sequence[str]) -> ImputationPlan:
    """Learn fill values for ``covariates`` of ``frame``.

    Args:
        frame: Training table
        covariates: Covariate columns to impute

    Returns:
        ImputationPlan with a fill value for every covariate and an indicator
        for every covariate with at least one missing value
    """
    fill_values = {}
    indicator_columns = {}

    for column in covariates:
        values = frame[column]
        fill_values[column] = _fill_value(values)
        if values.isna().any():
            indicator_columns[column] = indicator_name(column)

    return ImputationPlan(fill_values=fill_values, indicator_columns=indicator_columns)
