"""Configuration management with validation.

Runtime tuning (concurrency, retries, timeouts, logging) is loaded from the
environment and validated at construction time so the provisioner fails fast
before any remote call is issued. The deployment itself (what to provision)
lives in a YAML file, see models.py and spec_loader.py.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ConfigError(Exception):
    """Raised when configuration or a resource descriptor fails validation."""

    pass


class LogFormat(str, Enum):
    """Supported log output formats."""

    JSON = "json"
    TEXT = "text"


# Configuration constants with documented bounds
DEFAULT_MAX_WORKERS = 4
MAX_WORKERS_LIMIT = 8  # Google APIs rate-limit aggressively

DEFAULT_RETRY_MAX_ATTEMPTS = 5
MAX_RETRY_ATTEMPTS_LIMIT = 10
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 2.0
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 60.0

DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800  # Cloud SQL instance creation is slow
MAX_OPERATION_TIMEOUT_SECONDS = 7200
DEFAULT_OPERATION_POLL_SECONDS = 5.0

# Security constraints
MAX_DEPLOYMENT_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max deployment file

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Provisioner runtime configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigError immediately rather than failing mid-apply.
    """

    deployment_file: Path = field(default_factory=lambda: Path("deployment.yaml"))

    # Concurrency
    max_workers: int = DEFAULT_MAX_WORKERS

    # Retry policy for transient provider errors
    retry_max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS

    # Timing
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS
    operation_poll_seconds: float = DEFAULT_OPERATION_POLL_SECONDS
    apply_timeout_seconds: int = 0  # 0 = unbounded

    # Logging
    log_format: LogFormat = LogFormat.JSON
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not 1 <= self.max_workers <= MAX_WORKERS_LIMIT:
            errors.append(f"MAX_WORKERS must be between 1 and {MAX_WORKERS_LIMIT}")

        if not 1 <= self.retry_max_attempts <= MAX_RETRY_ATTEMPTS_LIMIT:
            errors.append(
                f"RETRY_MAX_ATTEMPTS must be between 1 and {MAX_RETRY_ATTEMPTS_LIMIT}"
            )

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE_SECONDS cannot be negative")

        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX_SECONDS must be >= RETRY_BACKOFF_BASE_SECONDS")

        if not 1 <= self.operation_timeout_seconds <= MAX_OPERATION_TIMEOUT_SECONDS:
            errors.append(
                f"OPERATION_TIMEOUT_SECONDS must be between 1 and {MAX_OPERATION_TIMEOUT_SECONDS}"
            )

        if self.operation_poll_seconds < 0:
            errors.append("OPERATION_POLL_SECONDS cannot be negative")

        if self.apply_timeout_seconds < 0:
            errors.append("APPLY_TIMEOUT_SECONDS cannot be negative")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {VALID_LOG_LEVELS}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            DEPLOYMENT_FILE: Path to the deployment YAML (default: deployment.yaml)
            MAX_WORKERS: Concurrent provider calls (default: 4)
            RETRY_MAX_ATTEMPTS: Attempts for transient errors (default: 5)
            RETRY_BACKOFF_BASE_SECONDS: First backoff delay (default: 2)
            RETRY_BACKOFF_MAX_SECONDS: Backoff ceiling (default: 60)
            OPERATION_TIMEOUT_SECONDS: Long-running operation timeout (default: 1800)
            OPERATION_POLL_SECONDS: Long-running operation poll interval (default: 5)
            APPLY_TIMEOUT_SECONDS: Global apply deadline, 0 disables (default: 0)
            LOG_FORMAT: json or text (default: json)
            LOG_LEVEL: Python log level name (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigError(f"{key} must be a number: {value}") from e

        def get_log_format(value: str | None) -> LogFormat:
            if not value:
                return LogFormat.JSON
            try:
                return LogFormat(value.lower())
            except ValueError as e:
                valid = [f.value for f in LogFormat]
                raise ConfigError(f"LOG_FORMAT must be one of {valid}: {value}") from e

        return cls(
            deployment_file=Path(os.environ.get("DEPLOYMENT_FILE", "deployment.yaml")),
            max_workers=get_int("MAX_WORKERS", DEFAULT_MAX_WORKERS),
            retry_max_attempts=get_int("RETRY_MAX_ATTEMPTS", DEFAULT_RETRY_MAX_ATTEMPTS),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE_SECONDS", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "RETRY_BACKOFF_MAX_SECONDS", DEFAULT_RETRY_BACKOFF_MAX_SECONDS
            ),
            operation_timeout_seconds=get_int(
                "OPERATION_TIMEOUT_SECONDS", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            operation_poll_seconds=get_float(
                "OPERATION_POLL_SECONDS", DEFAULT_OPERATION_POLL_SECONDS
            ),
            apply_timeout_seconds=get_int("APPLY_TIMEOUT_SECONDS", 0),
            log_format=get_log_format(os.environ.get("LOG_FORMAT")),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
