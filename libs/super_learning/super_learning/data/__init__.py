"""Task construction, fold plans, imputation and synthetic data."""

from .folds import FoldAssignment, make_folds, validate_folds
from .imputation import ImputationPlan, indicator_name, plan_imputation
from .synthetic import SyntheticDataGenerator, make_ensemble_data
from .task import Task, TaskSchema

__all__ = [
    "FoldAssignment",
    "ImputationPlan",
    "SyntheticDataGenerator",
    "Task",
    "TaskSchema",
    "indicator_name",
    "make_ensemble_data",
    "make_folds",
    "plan_imputation",
    "validate_folds",
]
