"""
Application settings configuration for the reminder engine.

Centralized settings loaded from environment variables.
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class AppSettings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment Variables:
        VAPID_PUBLIC_KEY: Web Push VAPID public key (Base64url, 65-byte uncompressed point)
        VAPID_PRIVATE_KEY: Web Push VAPID private key (Base64url, 32-byte raw scalar)
        VAPID_SUBJECT: VAPID subject identifier (mailto: or https: URL)
        VAPID_EXPIRATION_HOURS: Lifetime of signed VAPID assertions (default: 12, max: 24)
        PUSH_TTL_SECONDS: TTL header sent with every push (default: 86400)
        PUSH_URGENCY: Urgency header sent with every push (default: "high")
        PUSH_TIMEOUT_SECONDS: HTTP timeout for push endpoints (default: 10)
        PUSH_MAX_WORKERS: Parallel deliveries per run (default: 8)
        GOOGLE_CALENDAR_API_KEY: API key for the calendar event source
        GOOGLE_CALENDAR_ID: Calendar identifier for the calendar event source
        LOOKAHEAD_HOURS: Calendar look-ahead window per run (default: 3)
        DEFAULT_LEAD_TIME_MINUTES: Lead time for new subscriptions (default: 15)
        CLAIM_TIMEOUT_SECONDS: Age after which a claim is considered abandoned (default: 300)
        LEDGER_RETENTION_HOURS: Age after which ledger rows are purged (default: 24)
        DISPLAY_TIMEZONE: IANA timezone used when rendering times (default: America/Sao_Paulo)
        CLIENT_REMINDERS_ENABLED: Whether scheduled client reminders are created (default: True)
        CLIENT_REMINDER_HOURS: Hours before an appointment a client reminder fires (default: 10)
        CLIENT_REMINDER_TEMPLATE: Message template for client reminders
    """

    # VAPID settings for Web Push notifications
    vapid_public_key: str = Field(
        default="",
        validation_alias="VAPID_PUBLIC_KEY",
        description="Base64url-encoded VAPID public key for Web Push subscriptions"
    )

    vapid_private_key: str = Field(
        default="",
        validation_alias="VAPID_PRIVATE_KEY",
        description="Base64url-encoded VAPID private key for signing push messages"
    )

    vapid_subject: str = Field(
        default="",
        validation_alias="VAPID_SUBJECT",
        description="VAPID subject (mailto: or https: URL identifying the push sender)"
    )

    vapid_expiration_hours: int = Field(
        default=12,
        validation_alias="VAPID_EXPIRATION_HOURS",
        ge=1,
        le=24,
    )

    # Push delivery
    push_ttl_seconds: int = Field(
        default=86400,
        validation_alias="PUSH_TTL_SECONDS",
        ge=0,
    )

    push_urgency: str = Field(
        default="high",
        validation_alias="PUSH_URGENCY",
        description="Urgency hint: very-low, low, normal or high"
    )

    push_timeout_seconds: float = Field(
        default=10.0,
        validation_alias="PUSH_TIMEOUT_SECONDS",
        gt=0,
    )

    push_max_workers: int = Field(
        default=8,
        validation_alias="PUSH_MAX_WORKERS",
        ge=1,
        le=64,
    )

    # Calendar event source
    google_calendar_api_key: str = Field(
        default="",
        validation_alias="GOOGLE_CALENDAR_API_KEY",
    )

    google_calendar_id: str = Field(
        default="",
        validation_alias="GOOGLE_CALENDAR_ID",
    )

    lookahead_hours: int = Field(
        default=3,
        validation_alias="LOOKAHEAD_HOURS",
        ge=1,
        le=48,
    )

    # Reminder scheduling
    default_lead_time_minutes: int = Field(
        default=15,
        validation_alias="DEFAULT_LEAD_TIME_MINUTES",
        ge=1,
        le=1440,
    )

    claim_timeout_seconds: int = Field(
        default=300,
        validation_alias="CLAIM_TIMEOUT_SECONDS",
        ge=30,
        description="Claims older than this are treated as abandoned by a crashed run"
    )

    ledger_retention_hours: int = Field(
        default=24,
        validation_alias="LEDGER_RETENTION_HOURS",
        ge=1,
    )

    display_timezone: str = Field(
        default="America/Sao_Paulo",
        validation_alias="DISPLAY_TIMEZONE",
    )

    client_reminders_enabled: bool = Field(
        default=True,
        validation_alias="CLIENT_REMINDERS_ENABLED",
    )

    client_reminder_hours: int = Field(
        default=10,
        validation_alias="CLIENT_REMINDER_HOURS",
        ge=1,
        le=168,
    )

    client_reminder_template: str = Field(
        default=(
            "Hi {name}! Reminder: you have an appointment today at {time}.\n\n"
            "Service: {service}\n\nSee you soon!"
        ),
        validation_alias="CLIENT_REMINDER_TEMPLATE",
    )

    class Config:
        env_file = ".env"
        extra = "ignore"

    @field_validator("vapid_subject")
    @classmethod
    def validate_vapid_subject(cls, v: str) -> str:
        """VAPID subject must be a mailto: or https: URI."""
        if v and not (v.startswith("mailto:") or v.startswith("https://")):
            raise ValueError("VAPID_SUBJECT must start with 'mailto:' or 'https://'")
        return v

    @field_validator("push_urgency")
    @classmethod
    def validate_push_urgency(cls, v: str) -> str:
        """Restrict urgency to the values defined by RFC 8030."""
        v = v.strip().lower()
        if v not in {"very-low", "low", "normal", "high"}:
            raise ValueError("PUSH_URGENCY must be one of: very-low, low, normal, high")
        return v

    @property
    def vapid_configured(self) -> bool:
        """Check if VAPID keys are properly configured for Web Push."""
        return bool(self.vapid_public_key and self.vapid_private_key and self.vapid_subject)

    @property
    def calendar_configured(self) -> bool:
        """Check if the Google Calendar event source is configured."""
        return bool(self.google_calendar_api_key and self.google_calendar_id)

    def missing_vapid_settings(self) -> List[str]:
        """
        List the VAPID environment variables that are not set.

        Returns:
            Names of missing variables (empty when fully configured)
        """
        missing = []
        if not self.vapid_public_key:
            missing.append("VAPID_PUBLIC_KEY")
        if not self.vapid_private_key:
            missing.append("VAPID_PRIVATE_KEY")
        if not self.vapid_subject:
            missing.append("VAPID_SUBJECT")
        return missing


@lru_cache()
def get_settings() -> AppSettings:
    """
    Get cached application settings instance.

    Returns:
        AppSettings: Configured application settings from environment
    """
    return AppSettings()


def reset_settings_cache() -> None:
    """Clear the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()
