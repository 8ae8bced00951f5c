"""Configuration Management for Stackforge

This module provides centralized configuration for the convergence engine:
scheduling limits, retry policy, state location, logging and the platform
connection. Platform settings use Pydantic settings and are immutable; the
operational sections are validated dataclasses.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlatformSettings(BaseSettings):
    """Immutable connection settings for the target platform."""

    aws_region: str = Field(default="us-east-1", description="Default AWS region")
    aws_profile: Optional[str] = Field(default=None, description="Named AWS profile")
    simulate_file: Optional[str] = Field(
        default=None, description="Use the in-memory simulator persisted to this file"
    )

    @field_validator("aws_region")
    @classmethod
    def validate_region(cls, v):
        if not v or not v.strip():
            raise ValueError("aws_region cannot be empty")
        return v.strip()

    model_config = SettingsConfigDict(env_prefix="STACKFORGE_", frozen=True)


@dataclass
class ExecutionConfig:
    """Configuration for the apply walk."""

    max_parallelism: int = 4
    action_timeout_seconds: float = 300.0
    ready_timeout_seconds: float = 900.0
    overwrite_drift: bool = False

    def __post_init__(self):
        """Validate execution configuration."""
        if self.max_parallelism < 1:
            raise ValueError("max_parallelism must be at least 1")

        if self.action_timeout_seconds <= 0:
            raise ValueError("action_timeout_seconds must be positive")

        if self.ready_timeout_seconds <= 0:
            raise ValueError("ready_timeout_seconds must be positive")


@dataclass
class RetryConfig:
    """Bounded exponential backoff for transient platform errors."""

    max_attempts: int = 5
    backoff_multiplier: float = 1.0
    backoff_min: float = 1.0
    backoff_max: float = 30.0

    def __post_init__(self):
        """Validate retry configuration."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        if self.backoff_min < 0 or self.backoff_max < 0 or self.backoff_multiplier < 0:
            raise ValueError("backoff settings must be non-negative")

        if self.backoff_min > self.backoff_max:
            raise ValueError("backoff_min cannot be larger than backoff_max")


@dataclass
class StateConfig:
    """Where the last-known state lives."""

    state_file: str = ".stackforge/state.json"
    backup: bool = True

    def __post_init__(self):
        """Validate state configuration."""
        if not self.state_file:
            raise ValueError("state_file cannot be empty")

        if Path(self.state_file).suffix != ".json":
            raise ValueError("state_file must be a .json file")


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    log_level: str = "INFO"
    log_format: str = "console"
    log_file: Optional[str] = None

    def __post_init__(self):
        """Validate logging configuration."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level not in valid_levels:
            raise ValueError(f"Invalid log level: {self.log_level}")

        valid_formats = ["console", "json"]
        if self.log_format not in valid_formats:
            raise ValueError(f"Invalid log format: {self.log_format}")


@dataclass
class StackforgeConfig:
    """Main configuration class for stackforge."""

    platform: PlatformSettings = field(default_factory=PlatformSettings)

    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    debug: bool = False

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "StackforgeConfig":
        """Load configuration from environment variables."""

        if env_file:
            cls._load_env_file(env_file)

        platform = PlatformSettings()

        execution = ExecutionConfig(
            max_parallelism=cls._get_int_env("MAX_PARALLELISM", 4),
            action_timeout_seconds=cls._get_float_env("ACTION_TIMEOUT_SECONDS", 300.0),
            ready_timeout_seconds=cls._get_float_env("READY_TIMEOUT_SECONDS", 900.0),
            overwrite_drift=cls._get_bool_env("OVERWRITE_DRIFT", False),
        )

        retry = RetryConfig(
            max_attempts=cls._get_int_env("RETRY_MAX_ATTEMPTS", 5),
            backoff_multiplier=cls._get_float_env("RETRY_BACKOFF_MULTIPLIER", 1.0),
            backoff_min=cls._get_float_env("RETRY_BACKOFF_MIN", 1.0),
            backoff_max=cls._get_float_env("RETRY_BACKOFF_MAX", 30.0),
        )

        state = StateConfig(
            state_file=os.getenv("STATE_FILE", ".stackforge/state.json"),
            backup=cls._get_bool_env("STATE_BACKUP", True),
        )

        logging = LoggingConfig(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "console"),
            log_file=os.getenv("LOG_FILE") or None,
        )

        debug = cls._get_bool_env("DEBUG", False)

        return cls(
            platform=platform,
            execution=execution,
            retry=retry,
            state=state,
            logging=logging,
            debug=debug,
        )

    @staticmethod
    def _load_env_file(env_file: str):
        """Load environment variables from file."""
        env_path = Path(env_file)
        if not env_path.exists():
            return

        with open(env_path, "r") as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, value = line.split("=", 1)
                    os.environ[key.strip()] = value.strip()

    @staticmethod
    def _get_bool_env(key: str, default: bool) -> bool:
        """Get boolean environment variable."""
        value = os.getenv(key, str(default)).lower()
        return value in ("true", "1", "yes", "on")

    @staticmethod
    def _get_int_env(key: str, default: int) -> int:
        """Get integer environment variable."""
        try:
            return int(os.getenv(key, str(default)))
        except ValueError:
            return default

    @staticmethod
    def _get_float_env(key: str, default: float) -> float:
        """Get float environment variable."""
        try:
            return float(os.getenv(key, str(default)))
        except ValueError:
            return default

    def validate(self) -> List[str]:
        """Validate the entire configuration and return any errors."""
        errors = []

        if self.execution.max_parallelism > 64:
            errors.append("max_parallelism > 64 will trip platform rate limits")

        worst_case_retry = self.retry.max_attempts * self.execution.action_timeout_seconds
        if worst_case_retry > 6 * 3600:
            errors.append("retry budget per resource exceeds six hours")

        if self.retry.backoff_max > self.execution.action_timeout_seconds:
            errors.append("backoff_max should not exceed action_timeout_seconds")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "platform": {
                "aws_region": self.platform.aws_region,
                "aws_profile": self.platform.aws_profile,
                "simulate_file": self.platform.simulate_file,
            },
            "execution": {
                "max_parallelism": self.execution.max_parallelism,
                "action_timeout_seconds": self.execution.action_timeout_seconds,
                "ready_timeout_seconds": self.execution.ready_timeout_seconds,
                "overwrite_drift": self.execution.overwrite_drift,
            },
            "retry": {
                "max_attempts": self.retry.max_attempts,
                "backoff_multiplier": self.retry.backoff_multiplier,
                "backoff_min": self.retry.backoff_min,
                "backoff_max": self.retry.backoff_max,
            },
            "state": {
                "state_file": self.state.state_file,
                "backup": self.state.backup,
            },
            "logging": {
                "log_level": self.logging.log_level,
                "log_format": self.logging.log_format,
                "log_file": self.logging.log_file,
            },
            "debug": self.debug,
        }

    def __str__(self) -> str:
        return (
            f"StackforgeConfig(region={self.platform.aws_region}, "
            f"parallelism={self.execution.max_parallelism})"
        )


# Global configuration instance
_global_config: Optional[StackforgeConfig] = None


def get_config() -> StackforgeConfig:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = StackforgeConfig.from_env()
    return _global_config


def set_config(config: StackforgeConfig):
    """Set the global configuration instance."""
    global _global_config

    errors = config.validate()
    if errors:
        raise ValueError(f"Configuration validation failed: {errors}")

    _global_config = config


def reset_config():
    """Reset the global configuration to default."""
    global _global_config
    _global_config = None
