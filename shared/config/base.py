"""Base configuration management shared by the ensemble learning libraries."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""

    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class BaseConfiguration(BaseSettings):
    """Base configuration class read from the environment and ``.env`` files."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core metadata
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Current deployment environment",
    )
    version: str = Field(default="1.0.0", description="Configuration version")
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Last configuration update timestamp",
    )

    def to_dict(self, exclude_sensitive: bool = True) -> dict[str, Any]:
        """Convert configuration to dictionary, optionally excluding sensitive data."""
        data = self.model_dump()

        if exclude_sensitive:
            sensitive_patterns = ["password", "token", "key", "secret"]
            filtered_data = {}
            for k, v in data.items():
                if not any(pattern in k.lower() for pattern in sensitive_patterns):
                    filtered_data[k] = v
                else:
                    filtered_data[k] = "***REDACTED***"
            return filtered_data

        return data

    def validate_configuration(self) -> list[str]:
        """Validate the current configuration and return any issues."""
        return []
