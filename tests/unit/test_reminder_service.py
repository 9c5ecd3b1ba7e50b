"""
Unit tests for client reminder scheduling and rendering.
"""

from datetime import datetime, timedelta, timezone

import pytest

from reminder_engine.models import ScheduledReminder
from reminder_engine.services.exceptions import ValidationError
from reminder_engine.services.reminder_service import (
    ReminderService,
    build_client_reminder_payload,
    render_client_message,
)


NOW = datetime(2026, 3, 2, 12, 0, 0)
APPOINTMENT = NOW + timedelta(days=1)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def reminder_service(test_db_session, settings_factory):
    """ReminderService firing 10 hours before appointments."""
    return ReminderService(test_db_session, settings_factory(CLIENT_REMINDER_HOURS=10))


def _schedule(service, event_id="evt-1", previous_event_id=None, appointment_time=APPOINTMENT, **overrides):
    values = dict(
        event_id=event_id,
        client_phone="+5511999990000",
        client_name="Ana Souza",
        service_name="Haircut",
        appointment_time=appointment_time,
        previous_event_id=previous_event_id,
        now=NOW,
    )
    values.update(overrides)
    return service.schedule_reminder(**values)


def _rows(session, event_id=None):
    session.expire_all()
    query = session.query(ScheduledReminder)
    if event_id is not None:
        query = query.filter(ScheduledReminder.event_id == event_id)
    return query.order_by(ScheduledReminder.id).all()


# ============================================================================
# Test: schedule_reminder
# ============================================================================


class TestScheduleReminder:
    """Tests for ReminderService.schedule_reminder."""

    def test_creates_reminder(self, reminder_service, test_db_session):
        """Should create a row due reminder-hours before the appointment."""
        result = _schedule(reminder_service)

        assert result.scheduled is True
        assert result.action == "created"
        assert result.reminder_time == APPOINTMENT - timedelta(hours=10)

        row = _rows(test_db_session)[0]
        assert row.id == result.reminder_id
        assert row.sent is False
        assert row.reminder_time == APPOINTMENT - timedelta(hours=10)

    def test_updates_pending_reminder(self, reminder_service, test_db_session):
        """Should move the pending row instead of creating another."""
        created = _schedule(reminder_service)
        moved = _schedule(reminder_service, appointment_time=APPOINTMENT + timedelta(hours=2), client_name="Ana S.")

        assert moved.action == "updated"
        assert moved.reminder_id == created.reminder_id
        rows = _rows(test_db_session)
        assert len(rows) == 1
        assert rows[0].client_name == "Ana S."
        assert rows[0].reminder_time == APPOINTMENT - timedelta(hours=8)

    def test_sent_reminder_gets_new_row(self, reminder_service, test_db_session):
        """Should not reopen a reminder that was already delivered."""
        first = _schedule(reminder_service)
        row = test_db_session.get(ScheduledReminder, first.reminder_id)
        row.sent = True
        test_db_session.commit()

        second = _schedule(reminder_service)

        assert second.action == "created"
        assert second.reminder_id != first.reminder_id

    def test_migrates_from_previous_event(self, reminder_service, test_db_session):
        """Should move the pending reminder of a rescheduled event to the new event."""
        original = _schedule(reminder_service, event_id="old-evt")

        result = _schedule(
            reminder_service,
            event_id="new-evt",
            previous_event_id="old-evt",
            appointment_time=APPOINTMENT + timedelta(days=1),
        )

        assert result.action == "migrated"
        assert result.migrated_from == "old-evt"
        assert result.reminder_id == original.reminder_id
        assert _rows(test_db_session, "old-evt") == []
        assert len(_rows(test_db_session, "new-evt")) == 1

    def test_migration_without_pending_row_creates(self, reminder_service):
        result = _schedule(reminder_service, event_id="new-evt", previous_event_id="unknown")
        assert result.action == "created"

    def test_disabled_stores_contact_only(self, test_db_session, settings_factory):
        """Should keep the contact but never deliver when reminders are disabled."""
        service = ReminderService(test_db_session, settings_factory(CLIENT_REMINDERS_ENABLED="false"))

        result = _schedule(service)

        assert result.scheduled is False
        assert result.action == "contact_only"
        assert result.skip_reason == "contact_only:reminders_disabled"
        row = _rows(test_db_session)[0]
        assert row.sent is True
        assert row.client_phone == "+5511999990000"
        assert row.reminder_time == APPOINTMENT

    def test_passed_reminder_time_stores_contact_only(self, reminder_service, test_db_session):
        """Should not schedule a reminder whose time has already passed."""
        result = _schedule(reminder_service, appointment_time=NOW + timedelta(hours=3))

        assert result.scheduled is False
        assert result.skip_reason == "contact_only:reminder_time_passed"
        assert _rows(test_db_session)[0].sent is True

    def test_contact_only_reuses_pending_row(self, reminder_service, test_db_session):
        """Should close the pending reminder when the appointment moves too close."""
        created = _schedule(reminder_service)

        result = _schedule(reminder_service, appointment_time=NOW + timedelta(hours=2))

        assert result.reminder_id == created.reminder_id
        rows = _rows(test_db_session)
        assert len(rows) == 1
        assert rows[0].sent is True

    def test_contact_only_migrates_previous_event(self, reminder_service, test_db_session):
        original = _schedule(reminder_service, event_id="old-evt")

        result = _schedule(
            reminder_service,
            event_id="new-evt",
            previous_event_id="old-evt",
            appointment_time=NOW + timedelta(hours=1),
        )

        assert result.migrated_from == "old-evt"
        assert result.reminder_id == original.reminder_id
        assert _rows(test_db_session, "old-evt") == []

    def test_contact_only_keeps_delivered_row(self, reminder_service, test_db_session):
        """Should not rewrite a reminder that was actually delivered."""
        delivered_at = NOW - timedelta(hours=1)
        first = _schedule(reminder_service)
        row = test_db_session.get(ScheduledReminder, first.reminder_id)
        row.sent = True
        row.sent_at = delivered_at
        test_db_session.commit()

        result = _schedule(reminder_service, appointment_time=NOW + timedelta(hours=2))

        assert result.action == "contact_only"
        assert result.reminder_id != first.reminder_id
        rows = _rows(test_db_session)
        assert len(rows) == 2
        assert rows[0].sent_at == delivered_at
        assert rows[0].skip_reason is None

    def test_contact_only_reuses_contact_only_row(self, reminder_service, test_db_session):
        first = _schedule(reminder_service, appointment_time=NOW + timedelta(hours=2))
        second = _schedule(reminder_service, appointment_time=NOW + timedelta(hours=3))

        assert second.reminder_id == first.reminder_id
        assert len(_rows(test_db_session)) == 1

    def test_aware_appointment_time(self, reminder_service):
        """Should normalize aware appointment times to naive UTC."""
        aware = APPOINTMENT.replace(tzinfo=timezone.utc).astimezone(timezone(timedelta(hours=-3)))

        result = _schedule(reminder_service, appointment_time=aware)

        assert result.reminder_time == APPOINTMENT - timedelta(hours=10)

    @pytest.mark.parametrize("field", ["event_id", "client_phone", "client_name", "service_name"])
    def test_requires_fields(self, reminder_service, field):
        """Should reject empty required fields."""
        with pytest.raises(ValidationError) as exc_info:
            _schedule(reminder_service, **{field: "  "})
        assert exc_info.value.field == field


# ============================================================================
# Test: rendering
# ============================================================================


class TestRenderClientMessage:
    """Tests for render_client_message and the client payload."""

    def test_english_placeholders(self):
        message = render_client_message(
            "Hi {name}, see you at {time} for {service}.",
            "Ana", datetime(2026, 3, 3, 12, 0), "Haircut", "UTC",
        )
        assert message == "Hi Ana, see you at 12:00 for Haircut."

    def test_portuguese_placeholders(self):
        """Should fill the alternate placeholder names too."""
        message = render_client_message(
            "Oi {nome}! Horario: {hora}. Servico: {servico}",
            "Ana", datetime(2026, 3, 3, 12, 0), "Corte", "America/Sao_Paulo",
        )
        assert message == "Oi Ana! Horario: 09:00. Servico: Corte"

    def test_other_braces_untouched(self):
        """Should leave unknown placeholders and stray braces alone."""
        message = render_client_message("{greeting} {name} {", "Ana", datetime(2026, 3, 3, 12, 0), "", "UTC")
        assert message == "{greeting} Ana {"

    def test_client_payload(self, create_reminder):
        reminder = create_reminder(event_id="evt-9", appointment_time=datetime(2026, 3, 3, 12, 0))

        payload = build_client_reminder_payload(reminder, "Hi {name} at {time}", "UTC")

        assert payload["title"] == "Client reminder: Ana Souza"
        assert payload["body"] == "Hi Ana Souza at 12:00"
        assert payload["tag"] == "client-reminder-evt-9"
        assert payload["data"] == {
            "eventId": "evt-9",
            "reminderId": reminder.id,
            "clientPhone": "+5511999990000",
        }
