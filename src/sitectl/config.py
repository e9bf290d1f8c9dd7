"""Configuration management with validation.

Every tunable of the ARM and Kudu-lite clients lives here. Values are
validated at construction time so a bad environment fails before the first
HTTP call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import Enum


class LogFormat(str, Enum):
    """Supported log output formats."""

    TEXT = "text"
    JSON = "json"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


DEFAULT_MANAGEMENT_URL = "https://management.azure.com"

# API versions of the ARM resource providers we talk to
ARM_API_VERSION = "2014-04-01"
WEBSITES_API_VERSION = "2018-11-01"
STORAGE_API_VERSION = "2018-02-01"

# Retry policy for transient HTTP failures
DEFAULT_RETRY_COUNT = 3
MIN_RETRY_COUNT = 1
MAX_RETRY_COUNT = 10
DEFAULT_RETRY_BACKOFF_SECONDS = 1.0

DEFAULT_HTTP_TIMEOUT_SECONDS = 100
MAX_HTTP_TIMEOUT_SECONDS = 600

# Kudu-lite polling
DEFAULT_STATUS_REFRESH_SECONDS = 3
DEFAULT_TOKEN_EXPIRY_MINUTES = 4
DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS = 1800

MAX_SETTINGS_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max settings file

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
LOCAL_URL_PATTERN = r"^http://(localhost|127\.0\.0\.1)(:\d+)?$"


@dataclass(frozen=True)
class Config:
    """Client configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-request.
    """

    management_url: str = DEFAULT_MANAGEMENT_URL
    default_subscription_id: str | None = None

    # HTTP behavior
    retry_count: int = DEFAULT_RETRY_COUNT
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS
    http_timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS

    # Kudu-lite polling
    status_refresh_seconds: float = DEFAULT_STATUS_REFRESH_SECONDS
    token_expiry_minutes: int = DEFAULT_TOKEN_EXPIRY_MINUTES
    deployment_timeout_seconds: int = DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS

    log_format: LogFormat = LogFormat.TEXT

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        url = self.management_url.rstrip("/")
        if not url:
            errors.append("AZURE_MANAGEMENT_URL is required")
        elif not (url.startswith("https://") or re.match(LOCAL_URL_PATTERN, url)):
            errors.append(f"AZURE_MANAGEMENT_URL must use https: {self.management_url}")
        # Strip trailing slash so resource ids can be appended directly
        object.__setattr__(self, "management_url", url)

        if self.default_subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.default_subscription_id.lower()
        ):
            errors.append(
                f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.default_subscription_id}"
            )

        if not (MIN_RETRY_COUNT <= self.retry_count <= MAX_RETRY_COUNT):
            errors.append(
                f"ARM_RETRY_COUNT must be between {MIN_RETRY_COUNT} and {MAX_RETRY_COUNT}"
            )

        if self.retry_backoff_base_seconds < 0:
            errors.append("ARM_RETRY_BACKOFF_SECONDS cannot be negative")

        if not (1 <= self.http_timeout_seconds <= MAX_HTTP_TIMEOUT_SECONDS):
            errors.append(f"HTTP_TIMEOUT must be between 1 and {MAX_HTTP_TIMEOUT_SECONDS} seconds")

        if self.status_refresh_seconds < 0:
            errors.append("KUDU_STATUS_REFRESH_SECONDS cannot be negative")

        if self.token_expiry_minutes < 1:
            errors.append("KUDU_TOKEN_EXPIRY_MINUTES must be at least 1")

        if self.deployment_timeout_seconds < 1:
            errors.append("DEPLOYMENT_TIMEOUT must be at least 1 second")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_MANAGEMENT_URL: ARM endpoint (default: https://management.azure.com)
            AZURE_SUBSCRIPTION_ID: Subscription searched first when locating apps
            ARM_RETRY_COUNT: Attempts per ARM/Kudu request (default: 3)
            ARM_RETRY_BACKOFF_SECONDS: Base of the exponential backoff (default: 1)
            HTTP_TIMEOUT: Per-request timeout in seconds (default: 100)
            KUDU_STATUS_REFRESH_SECONDS: Delay between deployment polls (default: 3)
            KUDU_TOKEN_EXPIRY_MINUTES: Lifetime of the cached restricted token (default: 4)
            DEPLOYMENT_TIMEOUT: Give up waiting for a build after this many seconds
            LOG_FORMAT: "text" or "json" (default: text)
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

        def get_log_format(value: str | None) -> LogFormat:
            if not value:
                return LogFormat.TEXT
            try:
                return LogFormat(value.lower())
            except ValueError as e:
                valid = [f.value for f in LogFormat]
                raise ConfigurationError(f"LOG_FORMAT must be one of {valid}: {value}") from e

        return cls(
            management_url=os.environ.get("AZURE_MANAGEMENT_URL", DEFAULT_MANAGEMENT_URL),
            default_subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            retry_count=get_int("ARM_RETRY_COUNT", DEFAULT_RETRY_COUNT),
            retry_backoff_base_seconds=get_float(
                "ARM_RETRY_BACKOFF_SECONDS", DEFAULT_RETRY_BACKOFF_SECONDS
            ),
            http_timeout_seconds=get_int("HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT_SECONDS),
            status_refresh_seconds=get_float(
                "KUDU_STATUS_REFRESH_SECONDS", DEFAULT_STATUS_REFRESH_SECONDS
            ),
            token_expiry_minutes=get_int("KUDU_TOKEN_EXPIRY_MINUTES", DEFAULT_TOKEN_EXPIRY_MINUTES),
            deployment_timeout_seconds=get_int(
                "DEPLOYMENT_TIMEOUT", DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS
            ),
            log_format=get_log_format(os.environ.get("LOG_FORMAT")),
        )
