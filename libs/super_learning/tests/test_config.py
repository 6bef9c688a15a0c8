"""Tests for configuration models, environment settings and logging setup."""

import logging

import pytest
from pydantic import ValidationError

from shared.config import Environment, SuperLearningSettings
from shared.observability import get_logger, setup_logging
from super_learning.core.config import ParallelConfig, SuperLearnerConfig, TaskConfig


class TestConfigModels:
    """Test validation of the configuration models."""

    def test_task_config_defaults(self):
        config = TaskConfig()
        assert config.n_folds == 10
        assert config.fold_fun == "stratified"
        assert config.outcome_type == "auto"
        assert config.impute_missing

    def test_task_config_rejects_single_fold(self):
        with pytest.raises(ValidationError, match="at least 2"):
            TaskConfig(n_folds=1)

    def test_task_config_accepts_callable_fold_function(self):
        def contiguous(n_rows, n_folds, **kwargs):
            return []

        assert TaskConfig(fold_fun=contiguous).fold_fun is contiguous

    def test_task_config_is_frozen(self):
        config = TaskConfig()
        with pytest.raises(ValidationError):
            config.n_folds = 3

    def test_parallel_config(self):
        assert not ParallelConfig().use_parallel
        assert ParallelConfig(n_jobs=-1).use_parallel
        assert not ParallelConfig(n_jobs=4, parallel_backend="sequential").use_parallel

    @pytest.mark.parametrize(
        "kwargs",
        [{"n_jobs": 0}, {"learner_timeout_seconds": 0.0}, {"parallel_backend": "dask"}],
    )
    def test_parallel_config_rejects(self, kwargs):
        with pytest.raises(ValidationError):
            ParallelConfig(**kwargs)

    def test_failure_policy(self):
        assert SuperLearnerConfig().on_learner_failure == "raise"
        with pytest.raises(ValidationError):
            SuperLearnerConfig(on_learner_failure="ignore")


class TestSettings:
    """Test environment-driven settings."""

    def test_defaults(self):
        settings = SuperLearningSettings()
        assert settings.default_n_folds == 10
        assert settings.n_jobs == 1
        assert settings.environment == Environment.DEVELOPMENT

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("SUPER_LEARNING_N_JOBS", "4")
        monkeypatch.setenv("SUPER_LEARNING_DEFAULT_N_FOLDS", "5")
        monkeypatch.setenv("SUPER_LEARNING_LEARNER_TIMEOUT_SECONDS", "30")
        settings = SuperLearningSettings()
        assert settings.n_jobs == 4
        assert settings.default_n_folds == 5
        assert settings.learner_timeout_seconds == 30.0

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError, match="log_level"):
            SuperLearningSettings(log_level="chatty")

    def test_log_level_is_normalized(self):
        assert SuperLearningSettings(log_level="warning").log_level == "WARNING"

    def test_production_recommendations(self):
        settings = SuperLearningSettings(environment=Environment.PRODUCTION)
        issues = settings.validate_configuration()
        assert any("timeout" in issue for issue in issues)
        assert any("random_state" in issue for issue in issues)

        tuned = SuperLearningSettings(
            environment=Environment.PRODUCTION, learner_timeout_seconds=60, random_state=1
        )
        assert tuned.validate_configuration() == []

    def test_inconsistent_parallel_settings(self):
        settings = SuperLearningSettings(n_jobs=4, parallel_backend="sequential")
        assert any("sequential" in issue for issue in settings.validate_configuration())

    def test_to_dict(self):
        data = SuperLearningSettings(n_jobs=2).to_dict()
        assert data["n_jobs"] == 2
        assert "environment" in data

    def test_configs_from_settings(self):
        settings = SuperLearningSettings(
            default_n_folds=5, default_fold_fun="vfold", random_state=3, n_jobs=2
        )
        task_config = TaskConfig.from_settings(settings)
        assert (task_config.n_folds, task_config.fold_fun, task_config.random_state) == (
            5,
            "vfold",
            3,
        )

        config = SuperLearnerConfig.from_settings(settings, on_learner_failure="drop")
        assert config.parallel.n_jobs == 2
        assert config.random_state == 3
        assert config.on_learner_failure == "drop"


class TestLogging:
    """Test logging setup."""

    def test_setup_logging_quiets_joblib_outside_development(self):
        setup_logging(SuperLearningSettings(environment=Environment.PRODUCTION))
        assert logging.getLogger("joblib").level == logging.WARNING

    def test_setup_logging_in_development(self):
        setup_logging(SuperLearningSettings(environment=Environment.DEVELOPMENT))
        assert logging.getLogger("joblib").level == logging.INFO

    def test_get_logger(self):
        assert get_logger("super_learning.ml").name == "super_learning.ml"
