"""Matplotlib plots of cross-validated risk and variable importance.

``matplotlib.pyplot`` is imported when a plot is requested so that the rest
of the library does not select a backend on import.
"""

from __future__ import annotations

from typing import Any

import numpy as np
import pandas as pd

__all__ = [
    "plot_cv_risk",
    "plot_importance",
]

Z_95 = 1.96


def _axes(ax: Any, n_rows: int) -> tuple[Any, Any]:
    import matplotlib.pyplot as plt

    if ax is not None:
        return ax.figure, ax
    fig, ax = plt.subplots(figsize=(8, max(3.0, 0.4 * n_rows + 1.5)))
    return fig, ax


def plot_cv_risk(table: pd.DataFrame, ax: Any = None, title: str | None = None) -> Any:
    """Horizontal error-bar plot of risk +/- 1.96 SE per learner.

    Args:
        table: Risk table with ``learner``, ``risk`` and ``se`` columns
        ax: Axes to draw on; a new figure is created when None
        title: Plot title

    Returns:
        The matplotlib Figure
    """
    fig, ax = _axes(ax, len(table))
    positions = np.arange(len(table))
    errors = Z_95 * np.nan_to_num(table["se"].to_numpy(dtype=float), nan=0.0)

    ax.errorbar(
        table["risk"].to_numpy(dtype=float),
        positions,
        xerr=errors,
        fmt="o",
        color="black",
        ecolor="gray",
        capsize=3,
    )
    ax.set_yticks(positions)
    ax.set_yticklabels(table["learner"].tolist())
    ax.invert_yaxis()
    ax.set_xlabel("Cross-validated risk")
    ax.grid(True, axis="x", alpha=0.3)
    ax.set_title(title or "Cross-validated risk (95% CI)")
    fig.tight_layout()
    return fig


def plot_importance(
    importance: pd.DataFrame, ax: Any = None, title: str | None = None
) -> Any:
    """Horizontal bar plot of permutation importance, most important on top."""
    fig, ax = _axes(ax, len(importance))
    ordered = importance.sort_values("importance", ascending=False, kind="stable")
    positions = np.arange(len(ordered))
    values = ordered["importance"].to_numpy(dtype=float)
    colors = ["steelblue" if v >= 0 else "indianred" for v in values]

    ax.barh(positions, values, color=colors, edgecolor="black", alpha=0.8)
    ax.axvline(0.0, color="black", linewidth=0.8)
    ax.set_yticks(positions)
    ax.set_yticklabels(ordered["covariate"].tolist())
    ax.invert_yaxis()
    ax.set_xlabel("Risk increase under permutation")
    ax.grid(True, axis="x", alpha=0.3)
    ax.set_title(title or "Permutation variable importance")
    fig.tight_layout()
    return fig
