"""
Configuration module for the reminder engine.

Provides centralized configuration for:
- VAPID identity and push delivery tuning
- Calendar event source credentials
- Reminder scheduling windows and claim timeouts
"""

from reminder_engine.config.settings import AppSettings, get_settings, reset_settings_cache

__all__ = [
    "AppSettings",
    "get_settings",
    "reset_settings_cache",
]
