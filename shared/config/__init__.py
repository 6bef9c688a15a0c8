"""Configuration management shared across the ensemble learning libraries."""

from .base import BaseConfiguration, Environment
from .ensemble_config import SuperLearningSettings

__all__ = [
    "BaseConfiguration",
    "Environment",
    "SuperLearningSettings",
]
