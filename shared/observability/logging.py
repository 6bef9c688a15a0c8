"""Logging setup shared across the ensemble learning libraries."""

import logging
import sys

from shared.config import Environment, SuperLearningSettings


def setup_logging(settings: SuperLearningSettings | None = None) -> None:
    """Set up logging configuration."""
    if settings is None:
        settings = SuperLearningSettings()

    # Configure log level based on environment
    if settings.log_level is not None:
        log_level = getattr(logging, settings.log_level)
    elif settings.environment == Environment.DEVELOPMENT:
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO

    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level, format=log_format, handlers=[logging.StreamHandler(sys.stdout)]
    )

    # joblib worker chatter is only useful while debugging
    logging.getLogger("joblib").setLevel(
        logging.INFO
        if settings.environment == Environment.DEVELOPMENT
        else logging.WARNING
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
