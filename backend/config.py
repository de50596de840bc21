"""
Configuration management for VentBox matching backend.
Loads environment variables and provides typed configuration access.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BeforeValidator
from typing import Optional, List, Annotated
from enum import Enum


def parse_comma_separated(v):
    """Parse comma-separated string into list."""
    if isinstance(v, str):
        return [item.strip() for item in v.split(',') if item.strip()]
    return v


class Environment(str, Enum):
    """Deployment environment types."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Environment
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False
    log_level: str = "INFO"
    log_file: str = "logs/ventbox-matching.log"

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000
    allowed_origins: Annotated[List[str], BeforeValidator(parse_comma_separated)] = [
        "http://localhost:3000",
        "http://localhost:8081"
    ]

    # Matching Configuration
    match_timeout_seconds: float = 240.0  # 4 minutes without a match
    max_claim_retries: int = 3
    claim_retry_delay_seconds: float = 0.0
    connectivity_timeout_seconds: float = 5.0

    # Queue Configuration
    stale_entry_max_age_ms: int = 10 * 60 * 1000
    stale_cleanup_interval_seconds: float = 60.0
    vent_text_min_length: int = 10
    vent_text_max_length: int = 500
    preview_length: int = 100
    max_listeners: int = 1
    open_rooms_limit: int = 20
    waiting_list_limit: int = 10

    # Store Configuration
    transaction_max_attempts: int = 5

    # RTC Configuration
    rtc_app_id: Optional[str] = None
    rtc_join_timeout_seconds: float = 25.0
    rtc_leave_timeout_seconds: float = 25.0
    rtc_engine_create_timeout_seconds: float = 15.0
    rtc_max_reconnect_attempts: int = 3
    rtc_reconnect_backoff_seconds: float = 2.0
    rtc_engine_release_grace_seconds: float = 5.0

    # Token Service Configuration
    token_service_url: Optional[str] = None
    token_request_timeout_seconds: float = 10.0
    token_expire_seconds: int = 3600

    # Session Timer Configuration
    timer_tick_seconds: float = 1.0
    timer_drift_threshold_seconds: float = 2.0
    timer_near_end_seconds: int = 60

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# Global settings instance
settings = Settings()


def get_rtc_config() -> dict:
    """Get the RTC client configuration exposed to callers."""
    return {
        "appId": settings.rtc_app_id,
        "joinTimeoutSeconds": settings.rtc_join_timeout_seconds,
        "maxReconnectAttempts": settings.rtc_max_reconnect_attempts,
        "tokenServiceConfigured": bool(settings.token_service_url),
    }
