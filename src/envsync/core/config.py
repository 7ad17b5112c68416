"""Configuration management for envsync.

This module provides centralized configuration using Pydantic Settings.
All configuration is loaded from environment variables with the ENVSYNC_
prefix. Nested settings use double underscore as delimiter
(e.g., ENVSYNC_API__BASE_URL).

Workspace identifiers (organization, project, app) are not settings: they
live in the `.hx` workspace file and are loaded by envsync.core.workspace.

Example:
    export ENVSYNC_API__BASE_URL=https://api.example.com
    export ENVSYNC_API__API_KEY=...
    export ENVSYNC_SYNC__LOCAL_SECRET=true
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Annotated, Any, Self

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

# Name of the user-level and workspace config file
CONFIG_FILE_NAME = ".hx"
# Name of the project key file
KEY_FILE_NAME = ".hxkey"


class ApiSettings(BaseSettings):
    """Remote API connection settings.

    The env store and the key service share credentials but may live
    behind different base URLs.
    """

    model_config = SettingsConfigDict(
        env_prefix="ENVSYNC_API__",
        extra="ignore",
    )

    base_url: str = Field(
        default="https://api.hyphen.ai",
        description="Base URL of the environment store API",
    )
    key_service_url: str | None = Field(
        default=None,
        description="Base URL of the key service (defaults to <base_url>/api/vinz)",
    )
    api_key: SecretStr | None = Field(
        default=None,
        description="API key sent as x-api-key",
    )
    access_token: SecretStr | None = Field(
        default=None,
        description="Bearer token, used when no API key is configured",
    )
    timeout: Annotated[float, Field(gt=0, le=300)] = Field(
        default=30.0,
        description="Deadline in seconds for every remote call",
    )

    @field_validator("base_url", "key_service_url")
    @classmethod
    def strip_trailing_slash(cls, v: str | None) -> str | None:
        """Normalise URLs so paths can be joined with a leading slash."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            msg = f"URL must start with http:// or https://, got: {v}"
            raise ValueError(msg)
        return v.rstrip("/")

    @property
    def resolved_key_service_url(self) -> str:
        """Key service base URL, derived from base_url when unset."""
        return self.key_service_url or f"{self.base_url}/api/vinz"


class SyncSettings(BaseSettings):
    """Synchroniser behaviour settings."""

    model_config = SettingsConfigDict(
        env_prefix="ENVSYNC_SYNC__",
        extra="ignore",
    )

    local_secret: bool = Field(
        default=False,
        description="Store freshly minted project keys in .hxkey instead of the key service",
    )
    lock_timeout: Annotated[float, Field(gt=0, le=60)] = Field(
        default=2.0,
        description="Seconds to wait for the local cache lock",
    )
    retry_attempts: Annotated[int, Field(ge=1, le=10)] = Field(
        default=3,
        description="Attempts for idempotent remote reads",
    )
    retry_base_delay: Annotated[float, Field(ge=0, le=30)] = Field(
        default=0.5,
        description="Initial backoff in seconds, doubled on each retry",
    )
    retry_max_delay: Annotated[float, Field(ge=0, le=120)] = Field(
        default=4.0,
        description="Upper bound for a single backoff in seconds",
    )
    page_size: Annotated[int, Field(ge=1, le=500)] = Field(
        default=100,
        description="Page size used when listing environments and payloads",
    )


class EnvsyncSettings(BaseSettings):
    """Main envsync configuration container.

    Example environment variables:
        ENVSYNC_LOG_LEVEL=DEBUG
        ENVSYNC_HOME_DIR=/tmp/envsync-home
        ENVSYNC_API__TIMEOUT=10
        ENVSYNC_SYNC__LOCK_TIMEOUT=5
    """

    model_config = SettingsConfigDict(
        env_prefix="ENVSYNC_",
        env_nested_delimiter="__",
        extra="ignore",
        validate_default=True,
    )

    home_dir: Path = Field(
        default_factory=Path.home,
        description="Directory holding the user-level .hx and .hxkey files",
    )
    log_level: str = Field(
        default="WARNING",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    debug: bool = Field(
        default=False,
        description="Show tracebacks for surfaced errors",
    )

    api: ApiSettings = Field(default_factory=ApiSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure the log level is one logging understands."""
        level = v.upper()
        if level not in LOG_LEVELS:
            msg = f"Log level must be one of: {', '.join(sorted(LOG_LEVELS))}"
            raise ValueError(msg)
        return level

    @model_validator(mode="after")
    def validate_retry_bounds(self) -> Self:
        """Keep the backoff cap at or above the initial delay."""
        if self.sync.retry_max_delay < self.sync.retry_base_delay:
            msg = (
                "retry_max_delay must be >= retry_base_delay "
                f"(got {self.sync.retry_max_delay} < {self.sync.retry_base_delay})"
            )
            raise ValueError(msg)
        return self

    @property
    def user_config_path(self) -> Path:
        """User-level config file holding the local cache."""
        return self.home_dir / CONFIG_FILE_NAME

    @property
    def user_key_path(self) -> Path:
        """User-level fallback key file."""
        return self.home_dir / KEY_FILE_NAME

    def get_snapshot(self) -> dict[str, Any]:
        """Non-sensitive view of the active configuration, for debug logging."""
        return {
            "home_dir": str(self.home_dir),
            "log_level": self.log_level,
            "api": {
                "base_url": self.api.base_url,
                "key_service_url": self.api.resolved_key_service_url,
                "timeout": self.api.timeout,
                "authenticated": bool(self.api.api_key or self.api.access_token),
            },
            "sync": self.sync.model_dump(),
        }

    def get_snapshot_hash(self) -> str:
        """SHA-256 of the snapshot; handy to compare configurations in bug reports."""
        snapshot_json = json.dumps(self.get_snapshot(), sort_keys=True)
        return hashlib.sha256(snapshot_json.encode()).hexdigest()


class ConfigValidationError(Exception):
    """Raised when configuration or workspace identifiers are unusable."""

    def __init__(self, message: str, field: str | None = None) -> None:
        self.message = message
        self.field = field
        super().__init__(message)
