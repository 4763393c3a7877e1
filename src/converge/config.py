"""Configuration management with validation.

All limits are enforced at configuration load time so a bad value fails the
run before any declaration is read or any provider call is made.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_WORKERS = 4
MIN_MAX_WORKERS = 1
MAX_MAX_WORKERS = 64

DEFAULT_CREATE_TIMEOUT_SECONDS = 1800
DEFAULT_UPDATE_TIMEOUT_SECONDS = 1800
DEFAULT_DELETE_TIMEOUT_SECONDS = 1800
MAX_PHASE_TIMEOUT_SECONDS = 6 * 3600

DEFAULT_PROVIDER_MAX_RETRIES = 3
RETRY_BACKOFF_BASE_SECONDS = 5.0

DEFAULT_FETCH_MAX_ATTEMPTS = 4
DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0
DEFAULT_FETCH_BACKOFF_INITIAL_SECONDS = 1.0
DEFAULT_FETCH_BACKOFF_MAX_SECONDS = 30.0

# Input size limits
MAX_DECLARATION_FILE_SIZE_BYTES = 1024 * 1024  # 1MB per declaration file
MAX_STATE_FILE_SIZE_BYTES = 64 * 1024 * 1024  # 64MB state document
MAX_EXTERNAL_RESPONSE_BYTES = 4096  # External lookups return a single value

DEFAULT_DECLARATIONS_PATH = "declarations"
DEFAULT_STATE_PATH = "converge.state.json"
DEFAULT_PROVIDER = "null"


@dataclass(frozen=True)
class RetryConfig:
    """Backoff settings shared by provider calls and external lookups."""

    provider_max_retries: int = DEFAULT_PROVIDER_MAX_RETRIES
    provider_backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    fetch_max_attempts: int = DEFAULT_FETCH_MAX_ATTEMPTS
    fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    fetch_backoff_initial_seconds: float = DEFAULT_FETCH_BACKOFF_INITIAL_SECONDS
    fetch_backoff_max_seconds: float = DEFAULT_FETCH_BACKOFF_MAX_SECONDS


@dataclass(frozen=True)
class Config:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    # Paths
    declarations_path: Path = field(default_factory=lambda: Path(DEFAULT_DECLARATIONS_PATH))
    state_path: Path = field(default_factory=lambda: Path(DEFAULT_STATE_PATH))

    # Provider import path ("module:attribute") or a built-in name
    provider: str = DEFAULT_PROVIDER

    # Scheduling
    max_workers: int = DEFAULT_MAX_WORKERS

    # Default phase timeouts, used when a resource declares none
    create_timeout_seconds: float = DEFAULT_CREATE_TIMEOUT_SECONDS
    update_timeout_seconds: float = DEFAULT_UPDATE_TIMEOUT_SECONDS
    delete_timeout_seconds: float = DEFAULT_DELETE_TIMEOUT_SECONDS

    # Resource types that default to prevent_destroy when a declaration is silent
    protected_resource_types: frozenset[str] = field(default_factory=frozenset)

    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (MIN_MAX_WORKERS <= self.max_workers <= MAX_MAX_WORKERS):
            errors.append(
                f"MAX_WORKERS must be between {MIN_MAX_WORKERS} and {MAX_MAX_WORKERS}: "
                f"{self.max_workers}"
            )

        for name, value in (
            ("CREATE_TIMEOUT", self.create_timeout_seconds),
            ("UPDATE_TIMEOUT", self.update_timeout_seconds),
            ("DELETE_TIMEOUT", self.delete_timeout_seconds),
        ):
            if not (0 < value <= MAX_PHASE_TIMEOUT_SECONDS):
                errors.append(
                    f"{name} must be between 0 and {MAX_PHASE_TIMEOUT_SECONDS} seconds: {value}"
                )

        if self.retry.provider_max_retries < 1:
            errors.append("PROVIDER_MAX_RETRIES must be at least 1")
        if self.retry.provider_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE_SECONDS cannot be negative")
        if self.retry.fetch_max_attempts < 1:
            errors.append("FETCH_MAX_ATTEMPTS must be at least 1")
        if self.retry.fetch_timeout_seconds <= 0:
            errors.append("FETCH_TIMEOUT must be positive")
        if self.retry.fetch_backoff_initial_seconds < 0:
            errors.append("FETCH_BACKOFF_INITIAL cannot be negative")
        if self.retry.fetch_backoff_max_seconds < self.retry.fetch_backoff_initial_seconds:
            errors.append("FETCH_BACKOFF_MAX must not be lower than FETCH_BACKOFF_INITIAL")

        if not self.provider:
            errors.append("CONVERGE_PROVIDER cannot be empty")

        if self.state_path.exists() and self.state_path.is_dir():
            errors.append(f"STATE_PATH points to a directory: {self.state_path}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def default_timeout(self, phase: str) -> float:
        """Return the configured default timeout for a provider phase."""
        match phase:
            case "create":
                return self.create_timeout_seconds
            case "update":
                return self.update_timeout_seconds
            case "delete":
                return self.delete_timeout_seconds
            case _:
                raise ValueError(f"Unknown phase: {phase}")

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            DECLARATIONS_PATH: Declaration file or directory (default: declarations)
            STATE_PATH: JSON state file (default: converge.state.json)
            CONVERGE_PROVIDER: Provider "module:attribute" or "null" (default: null)
            MAX_WORKERS: Concurrent provider calls (default: 4)
            CREATE_TIMEOUT / UPDATE_TIMEOUT / DELETE_TIMEOUT: Default phase
                timeouts in seconds (default: 1800)
            PROTECTED_RESOURCE_TYPES: Comma-separated resource types that
                default to prevent_destroy
            PROVIDER_MAX_RETRIES: Attempts for retryable provider errors (default: 3)
            RETRY_BACKOFF_BASE_SECONDS: Provider backoff base (default: 5)
            FETCH_MAX_ATTEMPTS: Attempts for external lookups (default: 4)
            FETCH_TIMEOUT: Per-request timeout for external lookups (default: 10)
            FETCH_BACKOFF_INITIAL / FETCH_BACKOFF_MAX: Lookup backoff bounds
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_list(key: str) -> frozenset[str]:
            value = os.environ.get(key, "")
            return frozenset(item.strip() for item in value.split(",") if item.strip())

        return cls(
            declarations_path=Path(
                os.environ.get("DECLARATIONS_PATH", DEFAULT_DECLARATIONS_PATH)
            ),
            state_path=Path(os.environ.get("STATE_PATH", DEFAULT_STATE_PATH)),
            provider=os.environ.get("CONVERGE_PROVIDER", DEFAULT_PROVIDER),
            max_workers=get_int("MAX_WORKERS", DEFAULT_MAX_WORKERS),
            create_timeout_seconds=get_float("CREATE_TIMEOUT", DEFAULT_CREATE_TIMEOUT_SECONDS),
            update_timeout_seconds=get_float("UPDATE_TIMEOUT", DEFAULT_UPDATE_TIMEOUT_SECONDS),
            delete_timeout_seconds=get_float("DELETE_TIMEOUT", DEFAULT_DELETE_TIMEOUT_SECONDS),
            protected_resource_types=get_list("PROTECTED_RESOURCE_TYPES"),
            retry=RetryConfig(
                provider_max_retries=get_int(
                    "PROVIDER_MAX_RETRIES", DEFAULT_PROVIDER_MAX_RETRIES
                ),
                provider_backoff_base_seconds=get_float(
                    "RETRY_BACKOFF_BASE_SECONDS", RETRY_BACKOFF_BASE_SECONDS
                ),
                fetch_max_attempts=get_int("FETCH_MAX_ATTEMPTS", DEFAULT_FETCH_MAX_ATTEMPTS),
                fetch_timeout_seconds=get_float("FETCH_TIMEOUT", DEFAULT_FETCH_TIMEOUT_SECONDS),
                fetch_backoff_initial_seconds=get_float(
                    "FETCH_BACKOFF_INITIAL", DEFAULT_FETCH_BACKOFF_INITIAL_SECONDS
                ),
                fetch_backoff_max_seconds=get_float(
                    "FETCH_BACKOFF_MAX", DEFAULT_FETCH_BACKOFF_MAX_SECONDS
                ),
            ),
        )
