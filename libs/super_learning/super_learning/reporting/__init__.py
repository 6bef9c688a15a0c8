"""Tabular and graphical reports of ensemble fits."""

from .plots import plot_cv_risk, plot_importance
from .summary import format_importance, format_risk_table, format_weights, summarize_fit

__all__ = [
    "format_importance",
    "format_risk_table",
    "format_weights",
    "plot_cv_risk",
    "plot_importance",
    "summarize_fit",
]
