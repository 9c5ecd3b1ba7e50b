"""
Idempotency ledger for calendar-driven reminders.

Guarantees at most one successful delivery per (event_id, lead_time_minutes)
pair across overlapping runs. A run reserves the pair by inserting the
ledger row before it delivers; the unique constraint makes the insert the
arbitration point. Reservations left behind by a crashed run can be taken
over once they are older than the claim timeout.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reminder_engine.models import NotifiedReminder
from reminder_engine.utils.logging_config import get_logger
from reminder_engine.utils.time_utils import utcnow


logger = get_logger("services")


class NotifiedReminderService:
    """
    Ledger operations for (event, lead time) pairs.

    Usage:
        >>> ledger = NotifiedReminderService(db)
        >>> if ledger.try_claim(event.id, 15, run_id):
        ...     ...deliver...
        ...     ledger.mark_notified(event.id, 15, run_id)
    """

    def __init__(
        self,
        db: Session,
        claim_timeout_seconds: int = 300,
        retention_hours: int = 24,
    ):
        self.db = db
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self.retention = timedelta(hours=retention_hours)

    def _pair(self, event_id: str, lead_time_minutes: int):
        return and_(
            NotifiedReminder.event_id == event_id,
            NotifiedReminder.lead_time_minutes == lead_time_minutes,
        )

    def get(self, event_id: str, lead_time_minutes: int) -> Optional[NotifiedReminder]:
        return self.db.scalars(
            select(NotifiedReminder).where(self._pair(event_id, lead_time_minutes))
        ).first()

    def is_notified(self, event_id: str, lead_time_minutes: int) -> bool:
        """True if a reminder already went out for this pair."""
        entry = self.get(event_id, lead_time_minutes)
        return entry is not None and entry.notified_at is not None

    def try_claim(
        self,
        event_id: str,
        lead_time_minutes: int,
        run_id: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Reserve the pair for ``run_id``.

        Returns:
            True if this run may deliver; False if the pair is already
            notified or reserved by another live run
        """
        now = now or utcnow()
        entry = NotifiedReminder(
            event_id=event_id,
            lead_time_minutes=lead_time_minutes,
            claimed_by=run_id,
            claimed_at=now,
            created_at=now,
        )
        self.db.add(entry)
        try:
            self.db.commit()
            return True
        except IntegrityError:
            self.db.rollback()

        # Row exists: take it over only if it is an abandoned reservation
        result = self.db.execute(
            update(NotifiedReminder)
            .where(
                self._pair(event_id, lead_time_minutes),
                NotifiedReminder.notified_at.is_(None),
                or_(
                    NotifiedReminder.claimed_at.is_(None),
                    NotifiedReminder.claimed_at < now - self.claim_timeout,
                ),
            )
            .values(claimed_by=run_id, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        if result.rowcount == 1:
            logger.warning(
                "Took over abandoned reminder reservation",
                extra={"event_id": event_id, "lead_time_minutes": lead_time_minutes, "run_id": run_id},
            )
            return True
        return False

    def renew(
        self,
        event_id: str,
        lead_time_minutes: int,
        run_id: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Refresh a reservation held by ``run_id`` right before delivery.

        Returns:
            False if another run took the reservation over
        """
        now = now or utcnow()
        result = self.db.execute(
            update(NotifiedReminder)
            .where(
                self._pair(event_id, lead_time_minutes),
                NotifiedReminder.claimed_by == run_id,
                NotifiedReminder.notified_at.is_(None),
            )
            .values(claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            logger.warning(
                "Reminder reservation lost before delivery",
                extra={"event_id": event_id, "lead_time_minutes": lead_time_minutes, "run_id": run_id},
            )
            return False
        return True

    def mark_notified(
        self,
        event_id: str,
        lead_time_minutes: int,
        run_id: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """Record a successful delivery for a pair reserved by ``run_id``."""
        now = now or utcnow()
        result = self.db.execute(
            update(NotifiedReminder)
            .where(
                self._pair(event_id, lead_time_minutes),
                NotifiedReminder.claimed_by == run_id,
            )
            .values(notified_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def release(self, event_id: str, lead_time_minutes: int, run_id: str) -> bool:
        """Drop an unfinished reservation so the next run can retry the pair."""
        result = self.db.execute(
            delete(NotifiedReminder)
            .where(
                self._pair(event_id, lead_time_minutes),
                NotifiedReminder.claimed_by == run_id,
                NotifiedReminder.notified_at.is_(None),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """
        Delete notified rows past the retention window and abandoned reservations.

        Returns:
            Number of rows deleted
        """
        now = now or utcnow()
        result = self.db.execute(
            delete(NotifiedReminder)
            .where(
                or_(
                    NotifiedReminder.notified_at < now - self.retention,
                    and_(
                        NotifiedReminder.notified_at.is_(None),
                        NotifiedReminder.claimed_at < now - self.retention,
                    ),
                )
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        if result.rowcount:
            logger.info("Purged reminder ledger", extra={"deleted": result.rowcount})
        return result.rowcount
