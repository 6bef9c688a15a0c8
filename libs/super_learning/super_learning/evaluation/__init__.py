"""Loss functions, risk summaries and variable importance."""

from .importance import permutation_importance
from .losses import (
    LossFunction,
    default_loss,
    get_loss,
    loss_absolute_error,
    loss_loglik_binomial,
    loss_loglik_multinomial,
    loss_squared_error,
    risk,
    risk_standard_error,
)

__all__ = [
    "LossFunction",
    "default_loss",
    "get_loss",
    "loss_absolute_error",
    "loss_loglik_binomial",
    "loss_loglik_multinomial",
    "loss_squared_error",
    "permutation_importance",
    "risk",
    "risk_standard_error",
]
