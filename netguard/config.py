from __future__ import annotations

"""Configuration model for the monitoring engine and its service host."""

from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import is_valid_url


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables and `.env`."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    STATE_DIR: str = "data/state"
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"

    CHECK_INTERVAL_MINUTES: int = Field(default=60)
    REQUEST_TIMEOUT_SEC: float = Field(default=15.0)
    CHECK_MAX_RETRIES: int = Field(default=2)
    RETRY_BACKOFF_SEC: float = Field(default=1.0)
    BATCH_DELAY_MIN_SEC: float = Field(default=0.0)
    BATCH_DELAY_MAX_SEC: float = Field(default=30.0)
    MAX_CHECK_HISTORY: int = Field(default=20)
    MAX_SUMMARY_HISTORY: int = Field(default=10)

    RECEIVER_NAME: str = ""
    RECEIVER_URL: str = ""
    DISPATCH_TIMEOUT_SEC: float = Field(default=10.0)

    HEALTH_CHECK_INTERVAL_SEC: float = Field(default=300.0)
    MAX_CONSECUTIVE_FAILURES: int = Field(default=3)
    RESTART_DELAY_SEC: float = Field(default=5.0)

    SOURCE_ENDPOINT: str = ""
    SOURCE_CALLBACK_NAME: str = ""
    SOURCE_SYNC_INTERVAL_MINUTES: int = Field(default=30)
    SOURCE_TIMEOUT_SEC: float = Field(default=15.0)
    SOURCE_RETRY_ATTEMPTS: int = Field(default=3)

    MAX_NOTIFICATIONS: int = Field(default=20)
    NOTIFY_URL: str = ""

    STATE_FLUSH_DELAY_SEC: float = Field(default=0.5)
    RUN_CONTEXT: str = "auto"
    DEVICE_ID: str | None = None
    HEARTBEAT_INTERVAL_SEC: float = Field(default=5.0)
    RESUME_GAP_SEC: float = Field(default=60.0)

    @field_validator("CHECK_INTERVAL_MINUTES", "SOURCE_SYNC_INTERVAL_MINUTES")
    @classmethod
    def validate_interval_minutes(cls, value: int) -> int:
        """Intervals run from one minute up to one day."""
        if value <= 0 or value > 1440:
            raise ValueError("interval minutes must be in [1, 1440]")
        return value

    @field_validator("CHECK_MAX_RETRIES")
    @classmethod
    def validate_max_retries(cls, value: int) -> int:
        """Retries are bounded so one dead target cannot stall a run."""
        if value < 0 or value > 10:
            raise ValueError("CHECK_MAX_RETRIES must be in [0, 10]")
        return value

    @field_validator("MAX_CHECK_HISTORY")
    @classmethod
    def validate_history_cap(cls, value: int) -> int:
        """Per-target history stays a short ring buffer."""
        if value < 10 or value > 20:
            raise ValueError("MAX_CHECK_HISTORY must be in [10, 20]")
        return value

    @field_validator("MAX_SUMMARY_HISTORY", "MAX_NOTIFICATIONS", "MAX_CONSECUTIVE_FAILURES", "SOURCE_RETRY_ATTEMPTS")
    @classmethod
    def validate_positive_count(cls, value: int) -> int:
        """Caps and thresholds must be positive."""
        if value <= 0:
            raise ValueError("value must be a positive integer")
        return value

    @field_validator(
        "REQUEST_TIMEOUT_SEC",
        "DISPATCH_TIMEOUT_SEC",
        "SOURCE_TIMEOUT_SEC",
        "HEALTH_CHECK_INTERVAL_SEC",
        "HEARTBEAT_INTERVAL_SEC",
    )
    @classmethod
    def validate_positive_seconds(cls, value: float) -> float:
        """Timeouts and cadences cannot be zero or negative."""
        if value <= 0:
            raise ValueError("seconds value must be > 0")
        return value

    @field_validator(
        "RETRY_BACKOFF_SEC",
        "BATCH_DELAY_MIN_SEC",
        "BATCH_DELAY_MAX_SEC",
        "RESTART_DELAY_SEC",
        "STATE_FLUSH_DELAY_SEC",
        "RESUME_GAP_SEC",
    )
    @classmethod
    def validate_non_negative_seconds(cls, value: float) -> float:
        """Delays may be zero but never negative."""
        if value < 0:
            raise ValueError("delay seconds must be >= 0")
        return value

    @field_validator("RECEIVER_URL", "SOURCE_ENDPOINT")
    @classmethod
    def validate_optional_url(cls, value: str) -> str:
        """Optional URLs are either empty or absolute http/https."""
        normalized = value.strip()
        if normalized and not is_valid_url(normalized):
            raise ValueError(f"invalid url: {value!r}")
        return normalized

    @field_validator("RUN_CONTEXT")
    @classmethod
    def validate_run_context(cls, value: str) -> str:
        """Run context decides whether runs count as background runs."""
        normalized = value.strip().lower()
        if normalized not in {"auto", "foreground", "background"}:
            raise ValueError("RUN_CONTEXT must be 'auto', 'foreground' or 'background'")
        return normalized

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown LOG_LEVEL: {value!r}")
        return normalized

    @model_validator(mode="after")
    def validate_delay_window(self) -> Settings:
        """Inter-target delay window must be ordered."""
        if self.BATCH_DELAY_MIN_SEC > self.BATCH_DELAY_MAX_SEC:
            raise ValueError("BATCH_DELAY_MIN_SEC must be <= BATCH_DELAY_MAX_SEC")
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings to avoid repeated environment parsing."""
    return Settings()
