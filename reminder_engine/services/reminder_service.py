"""
Client reminder scheduling.

Creates or updates the backlog row that the dispatch run later delivers
for an appointment. Rescheduled appointments (a new calendar event created
in place of an old one) carry the old event id, and the pending reminder
is migrated to the new event instead of being duplicated.

When reminders are disabled, or the reminder time has already passed, a
contact-only row is stored instead: it is closed (sent=True) so it is
never delivered, but it keeps the event -> client mapping.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from reminder_engine.config.settings import AppSettings
from reminder_engine.models import ScheduledReminder, SkipReason
from reminder_engine.services.event_matcher import NOTIFICATION_ICON, format_local_time
from reminder_engine.services.exceptions import ValidationError
from reminder_engine.utils.logging_config import get_logger
from reminder_engine.utils.time_utils import to_naive_utc, utcnow


logger = get_logger("services")


@dataclass
class ScheduleResult:
    """
    Outcome of a schedule request.

    Attributes:
        scheduled: True if a deliverable reminder exists for the event
        action: created, updated, migrated or contact_only
        reminder_id: Affected backlog row
        reminder_time: When the reminder becomes due (None for contact-only rows)
        skip_reason: Why the row is contact-only
        migrated_from: Previous event id the row was moved from
    """

    scheduled: bool
    action: str
    reminder_id: int
    reminder_time: Optional[datetime] = None
    skip_reason: Optional[str] = None
    migrated_from: Optional[str] = None


class ReminderService:
    """
    Schedules client reminders into the backlog.

    Usage:
        >>> service = ReminderService(db, get_settings())
        >>> result = service.schedule_reminder("evt1", "+5511999990000", "Ana", "Cut", start)
    """

    def __init__(self, db: Session, settings: AppSettings):
        self.db = db
        self.enabled = settings.client_reminders_enabled
        self.reminder_offset = timedelta(hours=settings.client_reminder_hours)

    def _latest_for_event(
        self,
        event_id: str,
        unsent_only: bool = False,
        undelivered_only: bool = False,
    ) -> Optional[ScheduledReminder]:
        query = self.db.query(ScheduledReminder).filter(ScheduledReminder.event_id == event_id)
        if unsent_only:
            query = query.filter(
                ScheduledReminder.sent.is_(False),
                ScheduledReminder.skip_reason.is_(None),
            )
        elif undelivered_only:
            # Delivered rows are sent without a skip reason
            query = query.filter(
                or_(
                    ScheduledReminder.sent.is_(False),
                    ScheduledReminder.skip_reason.is_not(None),
                )
            )
        return query.order_by(
            ScheduledReminder.created_at.desc(),
            ScheduledReminder.id.desc(),
        ).first()

    def schedule_reminder(
        self,
        event_id: str,
        client_phone: str,
        client_name: str,
        service_name: str,
        appointment_time: datetime,
        previous_event_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ScheduleResult:
        """
        Schedule (or reschedule) the reminder for an appointment.

        Args:
            event_id: Calendar event of the appointment
            client_phone: Client contact
            client_name: Client display name
            service_name: Booked service
            appointment_time: Appointment start
            previous_event_id: Event id the appointment had before a reschedule
            now: Current time (naive UTC)

        Returns:
            ScheduleResult

        Raises:
            ValidationError: If a required field is empty
        """
        for field, value in (
            ("event_id", event_id),
            ("client_phone", client_phone),
            ("client_name", client_name),
            ("service_name", service_name),
        ):
            if not (value or "").strip():
                raise ValidationError(f"{field} is required", field=field)
        if appointment_time is None:
            raise ValidationError("appointment_time is required", field="appointment_time")

        now = now or utcnow()
        appointment_time = to_naive_utc(appointment_time)
        reminder_time = appointment_time - self.reminder_offset
        migrating = bool(previous_event_id) and previous_event_id != event_id

        contact = dict(
            client_phone=client_phone.strip(),
            client_name=client_name.strip(),
            service_name=service_name.strip(),
            appointment_time=appointment_time,
        )

        if not self.enabled:
            return self._store_contact_only(
                event_id, contact, SkipReason.CONTACT_ONLY_DISABLED,
                previous_event_id if migrating else None, now,
            )
        if reminder_time <= now:
            return self._store_contact_only(
                event_id, contact, SkipReason.CONTACT_ONLY_PASSED,
                previous_event_id if migrating else None, now,
            )

        if migrating:
            previous = self._latest_for_event(previous_event_id, unsent_only=True)
            if previous:
                previous.event_id = event_id
                self._apply(previous, contact, reminder_time)
                self.db.commit()
                logger.info(
                    "Migrated reminder to rescheduled event",
                    extra={"reminder_id": previous.id, "event_id": event_id, "previous_event_id": previous_event_id},
                )
                return ScheduleResult(
                    scheduled=True,
                    action="migrated",
                    reminder_id=previous.id,
                    reminder_time=reminder_time,
                    migrated_from=previous_event_id,
                )

        existing = self._latest_for_event(event_id, unsent_only=True)
        if existing:
            self._apply(existing, contact, reminder_time)
            self.db.commit()
            logger.info(
                "Updated scheduled reminder",
                extra={"reminder_id": existing.id, "event_id": event_id},
            )
            return ScheduleResult(
                scheduled=True,
                action="updated",
                reminder_id=existing.id,
                reminder_time=reminder_time,
            )

        reminder = ScheduledReminder(event_id=event_id, reminder_time=reminder_time, **contact)
        self.db.add(reminder)
        self.db.commit()
        self.db.refresh(reminder)
        logger.info(
            "Scheduled reminder",
            extra={"reminder_id": reminder.id, "event_id": event_id, "reminder_time": reminder_time.isoformat()},
        )
        return ScheduleResult(
            scheduled=True,
            action="created",
            reminder_id=reminder.id,
            reminder_time=reminder_time,
        )

    @staticmethod
    def _apply(row: ScheduledReminder, contact: dict, reminder_time: datetime) -> None:
        for key, value in contact.items():
            setattr(row, key, value)
        row.reminder_time = reminder_time
        row.last_error = None

    def _store_contact_only(
        self,
        event_id: str,
        contact: dict,
        reason: SkipReason,
        previous_event_id: Optional[str],
        now: datetime,
    ) -> ScheduleResult:
        """
        Keep the event -> client mapping without scheduling a delivery.

        Reuses the latest undelivered row of the previous event, then of
        this event, before inserting a new one. Delivered rows are never
        rewritten.
        """
        row = None
        migrated_from = None
        if previous_event_id:
            row = self._latest_for_event(previous_event_id, undelivered_only=True)
            if row:
                migrated_from = previous_event_id
        if row is None:
            row = self._latest_for_event(event_id, undelivered_only=True)

        if row is None:
            row = ScheduledReminder(event_id=event_id, reminder_time=contact["appointment_time"], **contact)
            self.db.add(row)

        row.event_id = event_id
        for key, value in contact.items():
            setattr(row, key, value)
        row.reminder_time = contact["appointment_time"]
        row.sent = True
        row.sent_at = now
        row.claimed_by = None
        row.claimed_at = None
        row.skip_reason = reason.value
        self.db.commit()
        self.db.refresh(row)

        logger.info(
            "Stored contact-only reminder",
            extra={"reminder_id": row.id, "event_id": event_id, "reason": reason.value},
        )
        return ScheduleResult(
            scheduled=False,
            action="contact_only",
            reminder_id=row.id,
            skip_reason=reason.value,
            migrated_from=migrated_from,
        )


# ============================================================================
# Message rendering
# ============================================================================

# Each value fills both the English and the Portuguese placeholder
_PLACEHOLDERS = (
    ("name", "nome"),
    ("time", "hora"),
    ("service", "servico"),
)


def render_client_message(
    template: str,
    client_name: str,
    appointment_time: datetime,
    service_name: str,
    display_timezone: str = "UTC",
) -> str:
    """
    Fill a client reminder template.

    Placeholders are replaced literally, so templates may contain other
    braces without escaping.
    """
    values = {
        "name": client_name,
        "time": format_local_time(appointment_time, display_timezone),
        "service": service_name,
    }
    message = template
    for key, alias in _PLACEHOLDERS:
        message = message.replace("{" + key + "}", values[key]).replace("{" + alias + "}", values[key])
    return message


def build_client_reminder_payload(
    reminder: ScheduledReminder,
    template: str,
    display_timezone: str = "UTC",
) -> Dict[str, Any]:
    """Push payload for a backlog reminder."""
    return {
        "title": f"Client reminder: {reminder.client_name}",
        "body": render_client_message(
            template,
            reminder.client_name,
            reminder.appointment_time,
            reminder.service_name or "",
            display_timezone,
        ),
        "icon": NOTIFICATION_ICON,
        "badge": NOTIFICATION_ICON,
        "tag": f"client-reminder-{reminder.event_id}",
        "data": {
            "eventId": reminder.event_id,
            "reminderId": reminder.id,
            "clientPhone": reminder.client_phone,
        },
    }
