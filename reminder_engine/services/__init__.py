"""
Service layer for business logic.

Service classes live in their own modules; this package exports the
exception types shared by the API and the CLI.
"""

from reminder_engine.services.exceptions import (
    CalendarSourceError,
    ConfigurationError,
    KeyImportError,
    NotFoundError,
    PayloadTooLargeError,
    ServiceError,
    ValidationError,
)

__all__ = [
    "ServiceError",
    "NotFoundError",
    "ValidationError",
    "ConfigurationError",
    "KeyImportError",
    "PayloadTooLargeError",
    "CalendarSourceError",
]
