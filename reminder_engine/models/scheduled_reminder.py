"""
ScheduledReminder model for the appointment reminder backlog.

Each row is one reminder for one calendar event. Rows become due at
``reminder_time`` and are claimed by exactly one dispatch run before
delivery.

Claim and diagnostics are kept in separate columns:
- claimed_by / claimed_at: the run currently holding the row (the lock)
- last_error: the reason the most recent delivery attempt failed

A claim carries its own timestamp so that rows held by a crashed run
become claimable again after the configured claim timeout.
"""

import enum

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text

from reminder_engine.models import Base
from reminder_engine.utils.time_utils import utcnow


class SkipReason(str, enum.Enum):
    """Why a row was closed (sent=True) without a delivery."""

    DUPLICATE = "duplicate_skipped"
    CONTACT_ONLY_DISABLED = "contact_only:reminders_disabled"
    CONTACT_ONLY_PASSED = "contact_only:reminder_time_passed"
    MALFORMED = "malformed"


class ScheduledReminder(Base):
    """
    Reminder backlog row.

    Attributes:
        event_id: Calendar event the reminder belongs to (not unique; a
                  rescheduled or re-synced appointment can leave several rows)
        client_phone: Contact of the client the appointment is for
        client_name: Display name of the client
        service_name: Booked service
        appointment_time: Event start (naive UTC)
        reminder_time: When the reminder becomes due (naive UTC)
        sent: True once delivered or closed without delivery
        sent_at: When the row was closed
        claimed_by: Run identifier currently processing the row
        claimed_at: When the claim was taken
        last_error: Failure message of the most recent attempt
        skip_reason: Set when the row was closed without delivery
        attempts: Number of failed delivery attempts

    States:
        unsent:  sent=False, claimed_by=None
        claimed: sent=False, claimed_by=<run id>
        sent:    sent=True
    """

    __tablename__ = "scheduled_reminders"

    id = Column(Integer, primary_key=True, autoincrement=True)

    event_id = Column(String(255), nullable=False, index=True)

    # Contact
    client_phone = Column(String(50), nullable=False)
    client_name = Column(String(200), nullable=False)
    service_name = Column(String(200), nullable=False, default="")

    # Timing
    appointment_time = Column(DateTime, nullable=False)
    reminder_time = Column(DateTime, nullable=False)

    # Outcome
    sent = Column(Boolean, nullable=False, default=False)
    sent_at = Column(DateTime, nullable=True)

    # Claim marker
    claimed_by = Column(String(64), nullable=True)
    claimed_at = Column(DateTime, nullable=True)

    # Diagnostics
    last_error = Column(Text, nullable=True)
    skip_reason = Column(String(100), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (
        # Covers the claim predicate (sent, claimed_by, reminder_time)
        Index(
            "ix_scheduled_reminders_pending",
            "sent",
            "claimed_by",
            "reminder_time",
        ),
    )

    @property
    def is_claimed(self) -> bool:
        return self.claimed_by is not None

    def __repr__(self) -> str:
        return (
            f"<ScheduledReminder(id={self.id}, event_id='{self.event_id}', "
            f"sent={self.sent}, claimed_by={self.claimed_by})>"
        )
