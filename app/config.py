"""Application configuration management."""

import re
from dataclasses import asdict, dataclass, field
from functools import lru_cache
from typing import Any, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_path: str = "/data/calendar-aggregator.db"

    # Server
    log_level: str = "info"
    api_token: Optional[str] = None

    # Google Calendar credentials
    google_credentials_file: str = "/secrets/google-credentials.json"
    google_credentials_type: str = "authorized_user"  # or "service_account"

    # Calendars (comma, semicolon or newline separated)
    source_calendar_ids: str = ""
    target_calendar_id: str = ""

    # Sync window
    days_back: int = 14
    days_forward: int = 90

    # Loop detection
    loop_detection_window_ms: int = 300_000
    min_update_interval_ms: int = 60_000
    operation_history_size: int = 1000

    # Orchestrator retries
    max_sync_attempts: int = 3

    # Calendar API request gate
    min_request_interval_ms: int = 100
    max_requests_per_window: int = 100
    quota_window_ms: int = 60_000
    api_max_retries: int = 3
    api_base_delay_ms: int = 1000
    api_backoff_multiplier: float = 2.0
    api_max_delay_ms: int = 30_000

    # Run lock
    lock_wait_seconds: int = 30
    lock_stale_minutes: int = 15

    # Scheduling and retention
    sync_interval_minutes: int = 15
    run_history_size: int = 50
    run_history_retention_days: int = 30

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def parse_calendar_ids(raw: Optional[str]) -> list[str]:
    """Parse comma/newline/semicolon separated calendar ids, keeping order."""
    if not raw:
        return []

    calendar_ids: list[str] = []
    for token in re.split(r"[,\n;]+", raw):
        calendar_id = token.strip()
        if calendar_id and calendar_id not in calendar_ids:
            calendar_ids.append(calendar_id)
    return calendar_ids


@dataclass
class SyncConfig:
    """Configuration for one sync run."""

    source_calendar_ids: list[str] = field(default_factory=list)
    target_calendar_id: str = ""
    days_back: int = 14
    days_forward: int = 90
    loop_detection_window_ms: int = 300_000
    max_sync_attempts: int = 3
    min_update_interval_ms: int = 60_000

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SyncConfig":
        """Build the run configuration from environment settings."""
        settings = settings or get_settings()
        return cls(
            source_calendar_ids=parse_calendar_ids(settings.source_calendar_ids),
            target_calendar_id=settings.target_calendar_id.strip(),
            days_back=settings.days_back,
            days_forward=settings.days_forward,
            loop_detection_window_ms=settings.loop_detection_window_ms,
            max_sync_attempts=settings.max_sync_attempts,
            min_update_interval_ms=settings.min_update_interval_ms,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any], defaults: Optional["SyncConfig"] = None) -> "SyncConfig":
        """Create configuration from a stored dictionary, filling gaps from defaults."""
        base = defaults or cls()
        source_ids = data.get("source_calendar_ids", base.source_calendar_ids)
        if isinstance(source_ids, str):
            source_ids = parse_calendar_ids(source_ids)

        return cls(
            source_calendar_ids=[str(s).strip() for s in source_ids if str(s).strip()],
            target_calendar_id=str(data.get("target_calendar_id", base.target_calendar_id) or "").strip(),
            days_back=int(data.get("days_back", base.days_back)),
            days_forward=int(data.get("days_forward", base.days_forward)),
            loop_detection_window_ms=int(
                data.get("loop_detection_window_ms", base.loop_detection_window_ms)
            ),
            max_sync_attempts=int(data.get("max_sync_attempts", base.max_sync_attempts)),
            min_update_interval_ms=int(
                data.get("min_update_interval_ms", base.min_update_interval_ms)
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if not self.target_calendar_id:
            errors.append("Target calendar ID is required")

        if not self.source_calendar_ids:
            errors.append("At least one source calendar ID is required")

        if len(set(self.source_calendar_ids)) != len(self.source_calendar_ids):
            errors.append("Source calendar IDs must be unique")

        if self.target_calendar_id and self.target_calendar_id in self.source_calendar_ids:
            errors.append(
                f"Target calendar cannot also be a source: {self.target_calendar_id}"
            )

        if self.days_back < 0 or self.days_forward < 0:
            errors.append("Sync window days must not be negative")

        if self.loop_detection_window_ms <= 0:
            errors.append("Loop detection window must be positive")

        if self.max_sync_attempts < 1:
            errors.append("Max sync attempts must be at least 1")

        if self.min_update_interval_ms < 0:
            errors.append("Minimum update interval must not be negative")

        return errors
