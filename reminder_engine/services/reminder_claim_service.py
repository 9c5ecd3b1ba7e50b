"""
Reminder claim and deduplication service.

Coordinates overlapping dispatch runs over the scheduled reminder backlog.
The only coordination point is a single conditional UPDATE: a row is
claimed by whichever run's UPDATE matches it first, and every later UPDATE
no longer matches (its claimed_by is set and the claim is fresh). This
holds on PostgreSQL (row locks + predicate re-check under READ COMMITTED)
and on SQLite (database-level write lock).

Row lifecycle:
    unsent --claim_due--> claimed --mark_sent--> sent
                             |----mark_failed--> unsent (last_error, attempts+1)
                             |----deduplicate--> sent (skip_reason=duplicate_skipped)
                             `----mark_malformed-> sent (skip_reason=malformed:<why>)

Claims older than the claim timeout are treated as abandoned by a crashed
run and may be taken over. A run renews each claim right before delivering
the row, so a slow run keeps the rows it is still working through.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from reminder_engine.models import ScheduledReminder, SkipReason
from reminder_engine.utils.logging_config import get_logger
from reminder_engine.utils.time_utils import utcnow


logger = get_logger("services")

MAX_ERROR_LENGTH = 2000
MAX_SKIP_REASON_LENGTH = 100


class ReminderClaimService:
    """
    Claims due reminders for one run and records their outcome.

    Usage:
        >>> service = ReminderClaimService(db, claim_timeout_seconds=300)
        >>> rows = service.claim_due(run_id)
        >>> kept, duplicates = service.deduplicate(run_id, rows)
    """

    def __init__(self, db: Session, claim_timeout_seconds: int = 300):
        """
        Initialize the claim service.

        Args:
            db: SQLAlchemy database session
            claim_timeout_seconds: Age after which a claim counts as abandoned
        """
        self.db = db
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)

    # =========================================================================
    # Claiming
    # =========================================================================

    def claim_due(self, run_id: str, now: Optional[datetime] = None) -> List[ScheduledReminder]:
        """
        Atomically claim every due, unsent reminder for ``run_id``.

        A row is claimable when it is unsent, not skipped, due
        (reminder_time <= now) and either unclaimed or claimed longer ago
        than the claim timeout.

        Args:
            run_id: Identifier of the claiming run
            now: Current time (naive UTC)

        Returns:
            Rows now held by ``run_id``. Rows claimed by other runs are not
            returned.
        """
        now = now or utcnow()
        stale_before = now - self.claim_timeout

        stmt = (
            update(ScheduledReminder)
            .where(
                ScheduledReminder.sent.is_(False),
                ScheduledReminder.skip_reason.is_(None),
                ScheduledReminder.reminder_time <= now,
                or_(
                    ScheduledReminder.claimed_by.is_(None),
                    ScheduledReminder.claimed_at.is_(None),
                    ScheduledReminder.claimed_at < stale_before,
                ),
            )
            .values(claimed_by=run_id, claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()

        rows = list(
            self.db.scalars(
                select(ScheduledReminder)
                .where(
                    ScheduledReminder.claimed_by == run_id,
                    ScheduledReminder.sent.is_(False),
                )
                .order_by(ScheduledReminder.reminder_time, ScheduledReminder.id)
            )
        )

        logger.info(
            "Claimed due reminders",
            extra={"run_id": run_id, "claimed": result.rowcount, "held": len(rows)},
        )
        return rows

    def renew_claim(self, row: ScheduledReminder, run_id: str, now: Optional[datetime] = None) -> bool:
        """
        Refresh the claim on ``row`` before delivering it.

        The new claimed_at comes from the wall clock, not from the run's
        reference time.

        Returns:
            False if the claim was taken over; the row must not be delivered
        """
        now = now or utcnow()
        result = self.db.execute(
            update(ScheduledReminder)
            .where(
                ScheduledReminder.id == row.id,
                ScheduledReminder.claimed_by == run_id,
                ScheduledReminder.sent.is_(False),
            )
            .values(claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            logger.warning(
                "Reminder claim lost before delivery",
                extra={"run_id": run_id, "reminder_id": row.id, "event_id": row.event_id},
            )
            return False
        return True

    def release_stale_claims(self, now: Optional[datetime] = None) -> int:
        """
        Clear claims older than the claim timeout.

        Returns:
            Number of rows released
        """
        now = now or utcnow()
        stale_before = now - self.claim_timeout

        result = self.db.execute(
            update(ScheduledReminder)
            .where(
                ScheduledReminder.sent.is_(False),
                ScheduledReminder.claimed_by.is_not(None),
                ScheduledReminder.claimed_at < stale_before,
            )
            .values(claimed_by=None, claimed_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        if result.rowcount:
            logger.warning(
                "Released stale reminder claims",
                extra={"released": result.rowcount},
            )
        return result.rowcount

    # =========================================================================
    # Deduplication
    # =========================================================================

    def deduplicate(
        self,
        run_id: str,
        rows: Sequence[ScheduledReminder],
        now: Optional[datetime] = None,
    ) -> Tuple[List[ScheduledReminder], List[ScheduledReminder]]:
        """
        Keep only the most recently created reminder per event.

        A claimed row is a duplicate when any other row for the same event
        was created after it (ties broken by the higher id), whether or not
        that row is part of this batch. Duplicates are closed without
        delivery.

        Returns:
            (rows to deliver, rows closed as duplicates)
        """
        if not rows:
            return [], []

        now = now or utcnow()
        event_ids = {row.event_id for row in rows}

        latest: Dict[str, Tuple[datetime, int]] = {}
        for event_id, created_at, row_id in self.db.execute(
            select(
                ScheduledReminder.event_id,
                ScheduledReminder.created_at,
                ScheduledReminder.id,
            ).where(ScheduledReminder.event_id.in_(event_ids))
        ):
            key = (created_at, row_id)
            if event_id not in latest or key > latest[event_id]:
                latest[event_id] = key

        kept: List[ScheduledReminder] = []
        duplicates: List[ScheduledReminder] = []
        for row in rows:
            if (row.created_at, row.id) == latest.get(row.event_id):
                kept.append(row)
            else:
                duplicates.append(row)

        if duplicates:
            self.db.execute(
                update(ScheduledReminder)
                .where(
                    ScheduledReminder.id.in_([row.id for row in duplicates]),
                    ScheduledReminder.claimed_by == run_id,
                )
                .values(
                    sent=True,
                    sent_at=now,
                    skip_reason=SkipReason.DUPLICATE.value,
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            logger.info(
                "Skipped duplicate reminders",
                extra={
                    "run_id": run_id,
                    "duplicates": len(duplicates),
                    "event_ids": sorted({row.event_id for row in duplicates}),
                },
            )

        return kept, duplicates

    # =========================================================================
    # Outcomes
    # =========================================================================

    def _close_claimed(self, row: ScheduledReminder, run_id: str, **values) -> bool:
        result = self.db.execute(
            update(ScheduledReminder)
            .where(
                ScheduledReminder.id == row.id,
                ScheduledReminder.claimed_by == run_id,
                ScheduledReminder.sent.is_(False),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            logger.warning(
                "Reminder claim no longer held by this run",
                extra={"run_id": run_id, "reminder_id": row.id, "event_id": row.event_id},
            )
            return False
        return True

    def mark_sent(self, row: ScheduledReminder, run_id: str, now: Optional[datetime] = None) -> bool:
        """
        Close a delivered reminder.

        Returns:
            False if the claim had been taken over by another run
        """
        now = now or utcnow()
        return self._close_claimed(
            row,
            run_id,
            sent=True,
            sent_at=now,
            claimed_by=None,
            claimed_at=None,
            last_error=None,
            updated_at=now,
        )

    def mark_failed(
        self,
        row: ScheduledReminder,
        run_id: str,
        error: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Release the claim after a failed delivery so the next run retries.

        The error is kept in last_error and the attempt counter is bumped.
        """
        now = now or utcnow()
        return self._close_claimed(
            row,
            run_id,
            claimed_by=None,
            claimed_at=None,
            last_error=error[:MAX_ERROR_LENGTH],
            attempts=ScheduledReminder.attempts + 1,
            updated_at=now,
        )

    def mark_malformed(
        self,
        row: ScheduledReminder,
        run_id: str,
        why: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """Close a row that can never be delivered."""
        now = now or utcnow()
        logger.warning(
            f"Skipping malformed reminder: {why}",
            extra={"run_id": run_id, "reminder_id": row.id, "event_id": row.event_id},
        )
        return self._close_claimed(
            row,
            run_id,
            sent=True,
            sent_at=now,
            claimed_by=None,
            claimed_at=None,
            skip_reason=f"{SkipReason.MALFORMED.value}:{why}"[:MAX_SKIP_REASON_LENGTH],
            updated_at=now,
        )

    @staticmethod
    def malformed_reason(row: ScheduledReminder) -> Optional[str]:
        """Why a claimed row cannot be rendered, or None if it is usable."""
        if not (row.client_name or "").strip():
            return "missing client_name"
        if not (row.client_phone or "").strip():
            return "missing client_phone"
        if row.appointment_time is None:
            return "missing appointment_time"
        return None
