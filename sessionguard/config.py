from __future__ import annotations

import os
from datetime import timedelta
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)


class StorageBackend(str, Enum):
    """Durable storage implementations for the token blob and event trail."""

    FILE = "file"
    MEMORY = "memory"


# Endpoints that carry their own credentials and must never be intercepted
DEFAULT_EXCLUDED_ENDPOINTS = (
    "/api/v1/auth/login",
    "/api/v1/auth/register",
    "/api/v1/auth/refresh",
    "/auth/login",
    "/auth/register",
    "/auth/refresh",
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and credential core."""

    # Identity issuer
    api_base_url: str = env_field("http://localhost:8000", "API_BASE_URL")
    login_path: str = env_field("/api/v1/auth/login", "AUTH_LOGIN_PATH")
    refresh_path: str = env_field("/api/v1/auth/refresh", "AUTH_REFRESH_PATH")
    mfa_verify_path: str = env_field("/api/v1/auth/mfa/verify", "AUTH_MFA_VERIFY_PATH")
    excluded_endpoints: list[str] = env_field(
        list(DEFAULT_EXCLUDED_ENDPOINTS),
        "EXCLUDED_ENDPOINTS",
        description="Comma-separated path fragments that bypass token interception",
    )
    request_timeout_seconds: float = env_field(30.0, "REQUEST_TIMEOUT_SECONDS")
    refresh_network_retries: int = env_field(
        1,
        "REFRESH_NETWORK_RETRIES",
        description="Extra refresh attempts after a transient network failure (0 or 1)",
    )
    refresh_retry_delay_seconds: float = env_field(0.5, "REFRESH_RETRY_DELAY_SECONDS")
    request_max_retries: int = env_field(
        3,
        "REQUEST_MAX_RETRIES",
        description="Outer retries of a request after a transient network failure",
    )
    request_retry_delay_seconds: float = env_field(1.0, "REQUEST_RETRY_DELAY_SECONDS")

    # Durable storage
    storage_backend: StorageBackend = env_field(StorageBackend.FILE, "STORAGE_BACKEND")
    state_dir: str = env_field("~/.sessionguard", "SESSIONGUARD_STATE_DIR")
    device_secret: str | None = env_field(
        None,
        "DEVICE_SECRET",
        description="Explicit device-bound secret; a random one is persisted when unset",
    )

    # Key derivation (Argon2id)
    kdf_time_cost: int = env_field(2, "KDF_TIME_COST")
    kdf_memory_cost: int = env_field(19456, "KDF_MEMORY_COST", description="KiB")
    kdf_parallelism: int = env_field(1, "KDF_PARALLELISM")

    # Token lifecycle
    token_refresh_window_seconds: int = env_field(
        300,
        "TOKEN_REFRESH_WINDOW_SECONDS",
        description="Start a proactive refresh when the access token expires within this window",
    )
    refresh_token_max_age_hours: int = env_field(24, "REFRESH_TOKEN_MAX_AGE_HOURS")

    # Session lifecycle
    default_max_inactivity_seconds: int = env_field(30 * 60, "SESSION_MAX_INACTIVITY_SECONDS")
    session_expiring_soon_seconds: int = env_field(5 * 60, "SESSION_EXPIRING_SOON_SECONDS")
    validation_interval_seconds: float = env_field(5 * 60, "SESSION_VALIDATION_INTERVAL_SECONDS")
    countdown_interval_seconds: float = env_field(30, "SESSION_COUNTDOWN_INTERVAL_SECONDS")
    high_risk_window_hours: int = env_field(24, "HIGH_RISK_WINDOW_HOURS")
    max_concurrent_sessions: int = env_field(
        3,
        "MAX_CONCURRENT_SESSIONS",
        description="Live sessions per user sharing this state directory; the oldest is evicted",
    )

    # Device fingerprinting
    fingerprint_validation_enabled: bool = env_field(True, "FINGERPRINT_VALIDATION_ENABLED")
    fingerprint_partial_match_threshold: float = env_field(
        0.5, "FINGERPRINT_PARTIAL_MATCH_THRESHOLD"
    )
    known_device_max_age_days: int = env_field(30, "KNOWN_DEVICE_MAX_AGE_DAYS")

    # Security event log
    max_security_events: int = env_field(100, "MAX_SECURITY_EVENTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("excluded_endpoints", mode="before")
    @classmethod
    def _split_endpoints(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("storage_backend")
    @classmethod
    def _validate_backend(cls, value: StorageBackend) -> StorageBackend:
        return StorageBackend(value)

    @field_validator("refresh_network_retries")
    @classmethod
    def _cap_refresh_retries(cls, value: int) -> int:
        # A refresh is never retried more than once per failure
        return max(0, min(int(value), 1))

    @field_validator("fingerprint_partial_match_threshold")
    @classmethod
    def _validate_threshold(cls, value: float) -> float:
        if not 0.0 < value <= 1.0:
            raise ValueError("fingerprint_partial_match_threshold must be in (0, 1]")
        return value

    @model_validator(mode="after")
    def _check_session_windows(self) -> "Settings":
        if self.default_max_inactivity_seconds <= 0:
            raise ValueError("default_max_inactivity_seconds must be positive")
        if self.max_security_events <= 0:
            raise ValueError("max_security_events must be positive")
        if self.validation_interval_seconds <= 0 or self.countdown_interval_seconds <= 0:
            raise ValueError("timer intervals must be positive")
        if self.max_concurrent_sessions <= 0:
            raise ValueError("max_concurrent_sessions must be positive")
        if self.request_max_retries < 0:
            raise ValueError("request_max_retries must not be negative")
        if self.refresh_retry_delay_seconds < 0 or self.request_retry_delay_seconds < 0:
            raise ValueError("retry delays must not be negative")
        return self

    @property
    def state_path(self) -> str:
        return os.path.expanduser(self.state_dir)

    @property
    def token_refresh_window(self) -> timedelta:
        return timedelta(seconds=self.token_refresh_window_seconds)

    @property
    def refresh_token_max_age(self) -> timedelta:
        return timedelta(hours=self.refresh_token_max_age_hours)

    @property
    def default_max_inactivity(self) -> timedelta:
        return timedelta(seconds=self.default_max_inactivity_seconds)

    @property
    def session_expiring_soon(self) -> timedelta:
        return timedelta(seconds=self.session_expiring_soon_seconds)

    @property
    def high_risk_window(self) -> timedelta:
        return timedelta(hours=self.high_risk_window_hours)

    @property
    def known_device_max_age(self) -> timedelta:
        return timedelta(days=self.known_device_max_age_days)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            storage_backend=_settings_cache.storage_backend.value,
            api_base_url=_settings_cache.api_base_url,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
