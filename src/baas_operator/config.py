"""Configuration management with validation.

Configuration is an explicit value handed to the gateway and the engine.
Nothing in the reconciliation core reads the process environment; only
``Config.from_env()`` does, at process start.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from urllib.parse import urlparse


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Convergence wait bounds (seconds)
DEFAULT_CREATE_TIMEOUT_SECONDS = 600
DEFAULT_UPDATE_TIMEOUT_SECONDS = 600
DEFAULT_DELETE_TIMEOUT_SECONDS = 600
MIN_OPERATION_TIMEOUT_SECONDS = 1
MAX_OPERATION_TIMEOUT_SECONDS = 24 * 3600

# Single HTTP request bound (seconds)
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60

# Backoff poller defaults
DEFAULT_RETRY_INITIAL_DELAY_SECONDS = 0.5
DEFAULT_RETRY_MAX_DELAY_SECONDS = 5.0
DEFAULT_RETRY_FACTOR = 2.0

# Manifest and state files
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest
MAX_STATE_FILE_SIZE_BYTES = 10 * 1024 * 1024
DEFAULT_STATE_FILE = "baas-state.yaml"


@dataclass(frozen=True)
class RetryConfig:
    """Backoff poller tuning.

    The delay before attempt k+1 is ``min(max_delay, initial_delay * factor**(k-1))``.
    """

    initial_delay_seconds: float = DEFAULT_RETRY_INITIAL_DELAY_SECONDS
    max_delay_seconds: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
    factor: float = DEFAULT_RETRY_FACTOR

    def __post_init__(self) -> None:
        errors: list[str] = []

        if self.initial_delay_seconds <= 0:
            errors.append("BAAS_RETRY_INITIAL_DELAY must be greater than 0")
        if self.max_delay_seconds < self.initial_delay_seconds:
            errors.append("BAAS_RETRY_MAX_DELAY must not be less than BAAS_RETRY_INITIAL_DELAY")
        if self.factor < 1.0:
            errors.append("BAAS_RETRY_FACTOR must be at least 1.0")

        if errors:
            error_msg = "Retry configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)


@dataclass(frozen=True)
class Config:
    """Operator configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing on the first
    API call.
    """

    # Required fields
    api_url: str
    api_key: str = field(repr=False)

    # Timing
    create_timeout_seconds: int = DEFAULT_CREATE_TIMEOUT_SECONDS
    update_timeout_seconds: int = DEFAULT_UPDATE_TIMEOUT_SECONDS
    delete_timeout_seconds: int = DEFAULT_DELETE_TIMEOUT_SECONDS
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS

    # Behavior
    allow_insecure: bool = False

    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.api_url:
            errors.append("BAAS_API_URL is required")
        else:
            parsed = urlparse(self.api_url)
            if parsed.scheme not in ("https", "http") or not parsed.netloc:
                errors.append(f"BAAS_API_URL must be an absolute URL: {self.api_url}")
            elif parsed.scheme == "http" and not self.allow_insecure:
                errors.append("BAAS_API_URL must use https (set BAAS_ALLOW_INSECURE to override)")

        if not self.api_key:
            errors.append("BAAS_API_KEY is required")

        for name, value in (
            ("BAAS_CREATE_TIMEOUT", self.create_timeout_seconds),
            ("BAAS_UPDATE_TIMEOUT", self.update_timeout_seconds),
            ("BAAS_DELETE_TIMEOUT", self.delete_timeout_seconds),
        ):
            if not (MIN_OPERATION_TIMEOUT_SECONDS <= value <= MAX_OPERATION_TIMEOUT_SECONDS):
                errors.append(
                    f"{name} must be between {MIN_OPERATION_TIMEOUT_SECONDS} "
                    f"and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
                )

        if self.request_timeout_seconds < 1:
            errors.append("BAAS_REQUEST_TIMEOUT must be at least 1 second")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            BAAS_API_URL: Base URL of the control plane API (required)
            BAAS_API_KEY: API key sent as a bearer token (required)
            BAAS_CREATE_TIMEOUT: Convergence deadline for creates in seconds (default: 600)
            BAAS_UPDATE_TIMEOUT: Convergence deadline for updates in seconds (default: 600)
            BAAS_DELETE_TIMEOUT: Deadline for deletes in seconds (default: 600)
            BAAS_REQUEST_TIMEOUT: Per-request HTTP read timeout in seconds (default: 60)
            BAAS_RETRY_INITIAL_DELAY: First poll delay in seconds (default: 0.5)
            BAAS_RETRY_MAX_DELAY: Poll delay cap in seconds (default: 5)
            BAAS_RETRY_FACTOR: Poll delay multiplier (default: 2.0)
            BAAS_ALLOW_INSECURE: If "true", allow a plain http API URL (default: false)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            api_url=os.environ.get("BAAS_API_URL", ""),
            api_key=os.environ.get("BAAS_API_KEY", ""),
            create_timeout_seconds=get_int("BAAS_CREATE_TIMEOUT", DEFAULT_CREATE_TIMEOUT_SECONDS),
            update_timeout_seconds=get_int("BAAS_UPDATE_TIMEOUT", DEFAULT_UPDATE_TIMEOUT_SECONDS),
            delete_timeout_seconds=get_int("BAAS_DELETE_TIMEOUT", DEFAULT_DELETE_TIMEOUT_SECONDS),
            request_timeout_seconds=get_int(
                "BAAS_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
            allow_insecure=get_bool("BAAS_ALLOW_INSECURE", False),
            retry=RetryConfig(
                initial_delay_seconds=get_float(
                    "BAAS_RETRY_INITIAL_DELAY", DEFAULT_RETRY_INITIAL_DELAY_SECONDS
                ),
                max_delay_seconds=get_float(
                    "BAAS_RETRY_MAX_DELAY", DEFAULT_RETRY_MAX_DELAY_SECONDS
                ),
                factor=get_float("BAAS_RETRY_FACTOR", DEFAULT_RETRY_FACTOR),
            ),
        )
