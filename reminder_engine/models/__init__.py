"""
SQLAlchemy models for the reminder engine.

This module provides the declarative base class and imports all models
to ensure they are registered with SQLAlchemy's metadata.
"""

from sqlalchemy.orm import declarative_base

# All models inherit from this Base class
Base = declarative_base()


# Import all models here so they are registered with Base.metadata
# (required for Alembic autogenerate and for create_all in tests)
from reminder_engine.models.push_subscription import PushSubscription  # noqa: E402
from reminder_engine.models.scheduled_reminder import ScheduledReminder, SkipReason  # noqa: E402
from reminder_engine.models.notified_reminder import NotifiedReminder  # noqa: E402

__all__ = [
    "Base",
    "PushSubscription",
    "ScheduledReminder",
    "SkipReason",
    "NotifiedReminder",
]
