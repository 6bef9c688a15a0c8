"""Super Learner library for cross-validated ensemble learning.

Build a Task from a table, assemble a library of learners, and let the
Super Learner weight them by cross-validated performance.
"""

__version__ = "0.1.0"

from .core import *
from .data import *
from .evaluation import permutation_importance
from .learners import (
    ConvexLossMetalearner,
    CorrelationScreener,
    DiscreteSelectorMetalearner,
    FittedLearner,
    FittedPipeline,
    FittedStack,
    GLMLearner,
    GLMNetLearner,
    GradientBoostingLearner,
    LassoScreener,
    Learner,
    MeanLearner,
    NNLSMetalearner,
    Pipeline,
    RandomForestLearner,
    SklearnLearner,
    Stack,
    make_learner,
    register_learner,
)
from .ml import (
    CrossValidationSelector,
    CVResult,
    FittedSuperLearner,
    SuperLearner,
    cross_validate_stack,
    cv_super_learner,
    evaluate,
    holdout_risk,
    select_discrete,
)
from .reporting import format_risk_table, plot_cv_risk, plot_importance, summarize_fit

__all__ = [
    "__version__",
    "CVResult",
    "ConvexLossMetalearner",
    "CorrelationScreener",
    "CrossValidationSelector",
    "DiscreteSelectorMetalearner",
    "FittedLearner",
    "FittedPipeline",
    "FittedStack",
    "FittedSuperLearner",
    "GLMLearner",
    "GLMNetLearner",
    "GradientBoostingLearner",
    "LassoScreener",
    "Learner",
    "MeanLearner",
    "NNLSMetalearner",
    "Pipeline",
    "RandomForestLearner",
    "SklearnLearner",
    "Stack",
    "SuperLearner",
    "cross_validate_stack",
    "cv_super_learner",
    "evaluate",
    "format_risk_table",
    "holdout_risk",
    "make_learner",
    "permutation_importance",
    "plot_cv_risk",
    "plot_importance",
    "register_learner",
    "select_discrete",
    "summarize_fit",
]
