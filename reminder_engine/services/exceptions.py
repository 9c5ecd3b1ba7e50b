"""
Custom exceptions for service layer.

Provides specific exception types for business logic errors
that can be translated to appropriate HTTP responses or to the
top-level failure of a dispatch run.
"""

from typing import Any, Optional


class ServiceError(Exception):
    """Base exception for service layer errors."""
    pass


class NotFoundError(ServiceError):
    """Raised when a requested resource is not found."""

    def __init__(self, resource: str, identifier: Any):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} not found")


class ValidationError(ServiceError):
    """Raised when input validation fails."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)


class ConfigurationError(ServiceError):
    """
    Raised when required keys or credentials are missing or invalid.

    Fatal for a dispatch run: raised before any network or database I/O.
    """

    def __init__(self, message: str, missing: Optional[list] = None):
        self.message = message
        self.missing = missing or []
        super().__init__(message)


class KeyImportError(ServiceError):
    """Raised when VAPID or subscriber key material cannot be decoded or imported."""

    def __init__(self, message: str, key_name: Optional[str] = None):
        self.message = message
        self.key_name = key_name
        super().__init__(f"{key_name}: {message}" if key_name else message)


class PayloadTooLargeError(ServiceError):
    """Raised when a push payload does not fit in a single encrypted record."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Push payload is {size} bytes; the limit is {limit} bytes")


class CalendarSourceError(ServiceError):
    """Raised when the calendar event source cannot be queried."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)
