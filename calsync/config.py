"""
Configuration management for calsync.

Uses Pydantic Settings for type-safe environment variable loading.
Configured via .env file in project root.
"""

import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be configured via .env file or environment variables.
    """

    # Python & Application
    python_env: Literal["development", "production"] = Field(
        default="development",
        description="Application environment"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level"
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./data/calsync.db",
        description="Database connection URL for the local event store"
    )

    # Sync window
    sync_past_days: int = Field(
        default=30,
        ge=0,
        description="Days before now included in full listings"
    )
    sync_future_days: int = Field(
        default=90,
        ge=1,
        description="Days after now included in full listings"
    )

    # Sync execution
    sync_concurrency: int = Field(
        default=4,
        ge=1,
        description="Maximum number of calendars synced concurrently"
    )
    provider_call_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Seconds before a single provider call is cancelled"
    )
    background_sync_interval: float = Field(
        default=30.0,
        gt=0,
        description="Seconds between background sync passes"
    )

    # Google OAuth Configuration (token refresh only)
    google_oauth_client_id: str = Field(
        default="",
        description="Google OAuth 2.0 client ID"
    )
    google_oauth_client_secret: str = Field(
        default="",
        description="Google OAuth 2.0 client secret"
    )
    google_token_uri: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="OAuth token endpoint used for refresh"
    )

    # CalDAV
    caldav_user_agent: str = Field(
        default="calsync/0.1",
        description="User-Agent header sent to CalDAV servers"
    )

    # Contacts
    contacts_file: Optional[str] = Field(
        default=None,
        description="Optional JSON file mapping email addresses to display names"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.python_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.python_env == "production"

    @property
    def uses_google_oauth(self) -> bool:
        """Check if Google OAuth is configured."""
        return bool(self.google_oauth_client_id and self.google_oauth_client_secret)

    def sync_window(self, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
        """
        Get the time range used for full listings.

        Args:
            now: Reference time (defaults to current UTC time)

        Returns:
            (time_min, time_max) as timezone-aware datetimes
        """
        now = now or datetime.now(timezone.utc)
        return (
            now - timedelta(days=self.sync_past_days),
            now + timedelta(days=self.sync_future_days),
        )

    def validate_google_oauth_config(self) -> None:
        """
        Validate settings needed to refresh Google access tokens.

        Raises:
            ValueError: If required settings are missing
        """
        errors = []
        if not self.google_oauth_client_id:
            errors.append("GOOGLE_OAUTH_CLIENT_ID is not configured.")
        if not self.google_oauth_client_secret:
            errors.append("GOOGLE_OAUTH_CLIENT_SECRET is not configured.")

        if errors:
            raise ValueError("Google OAuth configuration errors:\n- " + "\n- ".join(errors))


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    This function is cached to ensure we only load settings once.

    Returns:
        Settings instance loaded from environment

    Example:
        >>> from calsync.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.database_url)
    """
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Apply the configured log level to the calsync logger hierarchy."""
    settings = settings or get_settings()
    logging.getLogger("calsync").setLevel(settings.log_level)
