"""
NotifiedReminder model: idempotency ledger for calendar-driven reminders.

One row per (event_id, lead_time_minutes). The unique key is what makes
the ledger safe under concurrent runs: a run must insert (claim) the row
before delivering, and only the run whose insert succeeded may deliver.

Row states:
- claimed:  notified_at IS NULL, claimed_by/claimed_at set
- notified: notified_at set (the reminder went out at this lead time)

Notified rows are garbage-collected after the retention window (24h).
"""

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from reminder_engine.models import Base
from reminder_engine.utils.time_utils import utcnow


class NotifiedReminder(Base):
    """
    Ledger entry for an (event, lead time) pair.

    Attributes:
        event_id: Calendar event identifier
        lead_time_minutes: Lead time the reminder was sent for
        claimed_by: Run that reserved the pair
        claimed_at: When the pair was reserved
        notified_at: When delivery succeeded (None while only claimed)
    """

    __tablename__ = "notified_reminders"

    id = Column(Integer, primary_key=True, autoincrement=True)

    event_id = Column(String(255), nullable=False)
    lead_time_minutes = Column(Integer, nullable=False)

    claimed_by = Column(String(64), nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    notified_at = Column(DateTime, nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "event_id",
            "lead_time_minutes",
            name="uq_notified_reminders_event_lead",
        ),
    )

    @property
    def is_notified(self) -> bool:
        return self.notified_at is not None

    def __repr__(self) -> str:
        return (
            f"<NotifiedReminder(event_id='{self.event_id}', "
            f"lead_time_minutes={self.lead_time_minutes}, notified_at={self.notified_at})>"
        )
