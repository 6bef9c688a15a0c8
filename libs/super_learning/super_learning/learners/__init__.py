"""Learners, composites, metalearners and the learner registry.

Learners can be created by name through :func:`make_learner`; the registry
maps names to factories and can be extended with :func:`register_learner`.
"""

from __future__ import annotations

from functools import partial
from typing import Any, Callable

from sklearn.base import BaseEstimator as SklearnBaseEstimator

from ..core.base import ConfigurationError
from .base import FittedLearner, Learner, prediction_frame
from .composites import FittedPipeline, FittedStack, Pipeline, Stack
from .metalearners import (
    ConvexLossMetalearner,
    DiscreteSelectorMetalearner,
    FittedMetalearner,
    Metalearner,
    NNLSMetalearner,
    default_metalearner,
)
from .screeners import CorrelationScreener, LassoScreener, Screener
from .sklearn_learners import (
    GLMLearner,
    GLMNetLearner,
    GradientBoostingLearner,
    MeanLearner,
    RandomForestLearner,
    SklearnLearner,
)

LearnerFactory = Callable[..., Learner]

LEARNER_REGISTRY: dict[str, LearnerFactory] = {
    "mean": MeanLearner,
    "glm": GLMLearner,
    "linear_regression": partial(GLMLearner, name="linear_regression"),
    "logistic_regression": partial(GLMLearner, name="logistic_regression"),
    "glmnet": GLMNetLearner,
    "lasso": partial(GLMNetLearner, alpha=1.0, name="lasso"),
    "ridge": partial(GLMNetLearner, alpha=0.0, name="ridge"),
    "elastic_net": partial(GLMNetLearner, alpha=0.5, name="elastic_net"),
    "lasso_logistic": partial(GLMNetLearner, alpha=1.0, name="lasso_logistic"),
    "random_forest": RandomForestLearner,
    "gradient_boosting": GradientBoostingLearner,
    "screener_correlation": CorrelationScreener,
    "screener_lasso": LassoScreener,
    "nnls": NNLSMetalearner,
    "solnp": ConvexLossMetalearner,
    "cv_selector": DiscreteSelectorMetalearner,
}


def register_learner(
    name: str, factory: LearnerFactory | None = None, overwrite: bool = False
) -> Any:
    """Register a learner factory under ``name``.

    Can be used directly or as a class decorator::

        @register_learner("my_learner")
        class MyLearner(Learner): ...

    Raises:
        ConfigurationError: If ``name`` is taken and ``overwrite`` is False
    """

    def decorator(target: LearnerFactory) -> LearnerFactory:
        if name in LEARNER_REGISTRY and not overwrite:
            raise ConfigurationError(f"Learner '{name}' is already registered")
        LEARNER_REGISTRY[name] = target
        return target

    if factory is None:
        return decorator
    return decorator(factory)


def make_learner(name: str, **params: Any) -> Learner:
    """Create a registered learner by name.

    Args:
        name: Registry name, e.g. "glm", "lasso" or "random_forest"
        **params: Hyperparameters passed to the learner

    Raises:
        ConfigurationError: If the name is not registered
    """
    if name not in LEARNER_REGISTRY:
        raise ConfigurationError(
            f"Unknown learner '{name}'. Available learners: {sorted(LEARNER_REGISTRY)}"
        )
    factory = LEARNER_REGISTRY[name]
    if params and isinstance(factory, partial) and "name" in factory.keywords:
        # Hyperparameters make the preset's fixed name ambiguous
        params.setdefault("name", None)
    return factory(**params)


def as_learner(
    candidate: Learner | str | SklearnBaseEstimator, name: str | None = None
) -> Learner:
    """Coerce a learner, registry name or scikit-learn estimator into a Learner."""
    if isinstance(candidate, Learner):
        return candidate
    if isinstance(candidate, str):
        return make_learner(candidate) if name is None else make_learner(candidate, name=name)
    if isinstance(candidate, SklearnBaseEstimator):
        return SklearnLearner(candidate, name=name)
    raise ConfigurationError(
        f"Cannot build a learner from {type(candidate).__name__}; "
        "expected a Learner, a registered name or a scikit-learn estimator"
    )


__all__ = [
    "LEARNER_REGISTRY",
    "ConvexLossMetalearner",
    "CorrelationScreener",
    "DiscreteSelectorMetalearner",
    "FittedLearner",
    "FittedMetalearner",
    "FittedPipeline",
    "FittedStack",
    "GLMLearner",
    "GLMNetLearner",
    "GradientBoostingLearner",
    "LassoScreener",
    "Learner",
    "MeanLearner",
    "Metalearner",
    "NNLSMetalearner",
    "Pipeline",
    "RandomForestLearner",
    "Screener",
    "SklearnLearner",
    "Stack",
    "as_learner",
    "default_metalearner",
    "make_learner",
    "prediction_frame",
    "register_learner",
]
