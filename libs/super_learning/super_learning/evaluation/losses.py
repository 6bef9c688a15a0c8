"""Loss functions and risk summaries.

A loss function maps ``(predictions, observed)`` to one loss value per row.
Risks are (weighted) means of those values. Binary predictions are
probabilities of the second outcome level; categorical predictions are
``(n, K)`` probability matrices and observed values are level codes.
"""

from __future__ import annotations

from typing import Any, Callable, Union

import numpy as np
from numpy.typing import NDArray

from ..core.base import ConfigurationError

__all__ = [
    "LossFunction",
    "default_loss",
    "get_loss",
    "loss_absolute_error",
    "loss_loglik_binomial",
    "loss_loglik_multinomial",
    "loss_squared_error",
    "risk",
    "risk_standard_error",
]

LossFunction = Callable[[NDArray[Any], NDArray[Any]], NDArray[Any]]

PROBABILITY_EPS = 1e-15


def loss_squared_error(predictions: NDArray[Any], observed: NDArray[Any]) -> NDArray[Any]:
    """Squared error ``(pred - y)^2``."""
    return (np.asarray(predictions, dtype=float) - np.asarray(observed, dtype=float)) ** 2


def loss_absolute_error(predictions: NDArray[Any], observed: NDArray[Any]) -> NDArray[Any]:
    """Absolute error ``|pred - y|``."""
    return np.abs(np.asarray(predictions, dtype=float) - np.asarray(observed, dtype=float))


def loss_loglik_binomial(predictions: NDArray[Any], observed: NDArray[Any]) -> NDArray[Any]:
    """Negative Bernoulli log-likelihood of probabilities ``predictions``."""
    p = np.clip(np.asarray(predictions, dtype=float), PROBABILITY_EPS, 1 - PROBABILITY_EPS)
    y = np.asarray(observed, dtype=float)
    return -(y * np.log(p) + (1 - y) * np.log(1 - p))


def loss_loglik_multinomial(
    predictions: NDArray[Any], observed: NDArray[Any]
) -> NDArray[Any]:
    """Negative multinomial log-likelihood of an ``(n, K)`` probability matrix."""
    probs = np.asarray(predictions, dtype=float)
    if probs.ndim != 2:
        raise ValueError("Multinomial loss requires an (n, K) probability matrix")
    codes = np.asarray(observed).astype(int)
    chosen = probs[np.arange(len(codes)), codes]
    return -np.log(np.clip(chosen, PROBABILITY_EPS, 1.0))


_LOSSES: dict[str, LossFunction] = {
    "squared_error": loss_squared_error,
    "absolute_error": loss_absolute_error,
    "loglik_binomial": loss_loglik_binomial,
    "loglik_multinomial": loss_loglik_multinomial,
}


def default_loss(outcome_type: str) -> LossFunction:
    """Default loss for an outcome type."""
    if outcome_type == "continuous":
        return loss_squared_error
    if outcome_type == "binary":
        return loss_loglik_binomial
    if outcome_type == "categorical":
        return loss_loglik_multinomial
    raise ConfigurationError(f"Unknown outcome type '{outcome_type}'")


def get_loss(loss: Union[str, LossFunction, None], outcome_type: str) -> LossFunction:
    """Resolve a loss given by name, callable or ``None`` (default for outcome type)."""
    if loss is None:
        return default_loss(outcome_type)
    if callable(loss):
        return loss
    if loss not in _LOSSES:
        raise ConfigurationError(
            f"Unknown loss '{loss}'. Available losses: {sorted(_LOSSES)}"
        )
    return _LOSSES[loss]


def risk(loss_values: NDArray[Any], weights: NDArray[Any] | None = None) -> float:
    """(Weighted) mean loss; NaN when the weights sum to zero."""
    loss_values = np.asarray(loss_values, dtype=float)
    if weights is None:
        return float(np.mean(loss_values))
    if np.sum(weights) <= 0:
        return float("nan")
    return float(np.average(loss_values, weights=weights))


def risk_standard_error(
    loss_values: NDArray[Any], weights: NDArray[Any] | None = None
) -> float:
    """Standard error of the (weighted) mean loss."""
    loss_values = np.asarray(loss_values, dtype=float)
    n = len(loss_values)
    if n < 2:
        return float("nan")
    if weights is None:
        return float(np.std(loss_values, ddof=1) / np.sqrt(n))

    weights = np.asarray(weights, dtype=float)
    if weights.sum() <= 0:
        return float("nan")
    normalized = weights / weights.sum()
    mean = np.sum(normalized * loss_values)
    # Linearization variance of a ratio estimator
    influence = n * normalized * (loss_values - mean)
    return float(np.std(influence, ddof=1) / np.sqrt(n))
