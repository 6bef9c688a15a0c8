"""Ensemble learning: cross-validated risk and the Super Learner.

This module provides the cross-validation machinery that produces
out-of-fold predictions and risk tables, and the Super Learner ensemble
built on top of it, including holdout and nested cross-validated risk.
"""

from .cross_validation import (
    CrossValidationSelector,
    CVResult,
    cross_validate_stack,
    risk_table,
    select_discrete,
)
from .super_learner import (
    FittedSuperLearner,
    SuperLearner,
    cv_super_learner,
    evaluate,
    holdout_risk,
)

__all__ = [
    "CVResult",
    "CrossValidationSelector",
    "FittedSuperLearner",
    "SuperLearner",
    "cross_validate_stack",
    "cv_super_learner",
    "evaluate",
    "holdout_risk",
    "risk_table",
    "select_discrete",
]
