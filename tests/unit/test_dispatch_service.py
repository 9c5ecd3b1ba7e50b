"""
Unit tests for DispatchService.

Each test drives whole dispatch runs against an in-memory database, a
static calendar and a fake push service, and checks what the push service
received and what the database recorded.
"""

import json
import logging
from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from reminder_engine.models import NotifiedReminder, PushSubscription, ScheduledReminder
from reminder_engine.services.calendar_service import CalendarEvent, StaticEventSource
from reminder_engine.services.dispatch_service import DispatchService, DispatchSummary
from reminder_engine.services.exceptions import (
    CalendarSourceError,
    ConfigurationError,
    KeyImportError,
    ValidationError,
)
from reminder_engine.utils.crypto import b64url_decode, b64url_encode
from reminder_engine.utils.logging_config import get_logger
from reminder_engine.utils.webpush_encryption import decrypt_aesgcm


NOW = datetime(2026, 3, 2, 12, 0, 0)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def make_dispatcher(test_db_session, test_settings, fake_push):
    """Factory for dispatchers sharing the fake push service."""
    def _make(events=(), settings=None, event_source=None):
        return DispatchService(
            test_db_session,
            settings=settings or test_settings,
            event_source=event_source or StaticEventSource(events),
            http_client=fake_push.client,
        )
    return _make


def _event(event_id="evt-1", minutes_ahead=10, title="Haircut - Ana Souza"):
    start = NOW + timedelta(minutes=minutes_ahead)
    return CalendarEvent(id=event_id, title=title, start=start, end=start + timedelta(hours=1))


def _decrypt_request(request, keys):
    params = {}
    for header in ("Encryption", "Crypto-Key"):
        params.update(part.split("=", 1) for part in request.headers[header].split(";"))
    plaintext = decrypt_aesgcm(
        request.content,
        b64url_decode(params["salt"]),
        b64url_decode(params["dh"]),
        keys.private_key,
        keys.auth_secret,
    )
    return json.loads(plaintext)


# ============================================================================
# Test: configuration
# ============================================================================


class TestConfiguration:
    """A broken push configuration must stop the run before any I/O."""

    def test_missing_vapid_settings(self, test_db_session, settings_factory, fake_push,
                                    create_subscription, create_reminder):
        """Should raise ConfigurationError naming the missing settings."""
        create_subscription()
        reminder = create_reminder()
        source = Mock(spec=StaticEventSource)
        dispatcher = DispatchService(
            test_db_session,
            settings=settings_factory(VAPID_PRIVATE_KEY="", VAPID_SUBJECT=""),
            event_source=source,
            http_client=fake_push.client,
        )

        with pytest.raises(ConfigurationError) as exc_info:
            dispatcher.run(now=NOW)

        assert exc_info.value.missing == ["VAPID_PRIVATE_KEY", "VAPID_SUBJECT"]
        assert fake_push.requests == []
        source.fetch_events.assert_not_called()
        test_db_session.expire_all()
        assert test_db_session.get(ScheduledReminder, reminder.id).claimed_by is None

    def test_unknown_display_timezone(self, test_db_session, settings_factory, fake_push,
                                      create_subscription, create_reminder):
        """Should reject an unknown timezone before reserving or claiming anything."""
        create_subscription()
        reminder = create_reminder()
        dispatcher = DispatchService(
            test_db_session,
            settings=settings_factory(DISPLAY_TIMEZONE="Mars/Olympus_Mons"),
            event_source=StaticEventSource([_event()]),
            http_client=fake_push.client,
        )

        with pytest.raises(ConfigurationError) as exc_info:
            dispatcher.run(now=NOW)

        assert exc_info.value.missing == ["DISPLAY_TIMEZONE"]
        assert fake_push.requests == []
        assert test_db_session.query(NotifiedReminder).count() == 0
        test_db_session.expire_all()
        assert test_db_session.get(ScheduledReminder, reminder.id).claimed_by is None

    def test_malformed_private_key(self, test_db_session, settings_factory, fake_push, create_subscription):
        """Should raise KeyImportError for a key of the wrong size."""
        create_subscription()
        dispatcher = DispatchService(
            test_db_session,
            settings=settings_factory(VAPID_PRIVATE_KEY=b64url_encode(b"\x01" * 31)),
            event_source=StaticEventSource([_event()]),
            http_client=fake_push.client,
        )

        with pytest.raises(KeyImportError):
            dispatcher.run(now=NOW)
        assert fake_push.requests == []


# ============================================================================
# Test: calendar reminders
# ============================================================================


class TestCalendarReminders:
    """Tests for the calendar path."""

    def test_delivers_due_event(self, make_dispatcher, create_subscription, subscriber_keys, fake_push):
        """Should push a reminder the subscriber can decrypt."""
        sub = create_subscription(keys=subscriber_keys)

        summary = make_dispatcher([_event()]).run(now=NOW)

        assert summary.sent == 1
        assert summary.failed == 0
        payload = _decrypt_request(fake_push.requests_to(sub.endpoint)[0], subscriber_keys)
        assert payload["title"] == "Appointment in 10 min"
        assert payload["tag"] == "reminder-evt-1"
        assert payload["body"].startswith("Ana Souza\nHaircut")

    def test_repeated_runs_deliver_once(self, make_dispatcher, create_subscription, fake_push, test_db_session):
        """Should deliver each (event, lead time) pair once across runs."""
        create_subscription()
        events = [_event(minutes_ahead=10)]

        summaries = [
            make_dispatcher(events).run(now=NOW + timedelta(minutes=i))
            for i in range(5)
        ]

        assert [s.sent for s in summaries] == [1, 0, 0, 0, 0]
        assert [s.already_notified for s in summaries] == [0, 1, 1, 1, 1]
        assert len(fake_push.requests) == 1
        assert test_db_session.query(NotifiedReminder).count() == 1

    def test_event_outside_window_is_not_sent(self, make_dispatcher, create_subscription, fake_push):
        create_subscription(lead_time_minutes=15)

        summary = make_dispatcher([_event(minutes_ahead=20)]).run(now=NOW)

        assert summary.sent == 0
        assert fake_push.requests == []

    def test_lead_time_groups(self, make_dispatcher, create_subscription, fake_push):
        """Should notify each lead-time group within its own window."""
        quarter = create_subscription(lead_time_minutes=15)
        hour = create_subscription(lead_time_minutes=60)

        summary = make_dispatcher([_event("soon", 10), _event("later", 45)]).run(now=NOW)

        assert summary.sent == 3
        assert len(fake_push.requests_to(quarter.endpoint)) == 1
        assert len(fake_push.requests_to(hour.endpoint)) == 2

    def test_expired_endpoint_is_pruned(self, make_dispatcher, create_subscription, fake_push, test_db_session):
        """Should remove 410 endpoints and still count the reminder as sent."""
        gone = create_subscription()
        alive = create_subscription()
        fake_push.set_status(gone.endpoint, 410)

        summary = make_dispatcher([_event()]).run(now=NOW)

        assert summary.sent == 1
        assert summary.subscriptions_removed == 1
        endpoints = [s.endpoint for s in test_db_session.query(PushSubscription).all()]
        assert endpoints == [alive.endpoint]

    def test_failed_delivery_is_retried(self, make_dispatcher, create_subscription, fake_push, test_db_session):
        """Should release the ledger reservation when nothing was accepted."""
        sub = create_subscription()
        fake_push.set_status(sub.endpoint, 500, 201)
        events = [_event()]

        first = make_dispatcher(events).run(now=NOW)

        assert first.sent == 0
        assert first.failed == 1
        assert any("HTTP 500" in error for error in first.errors)
        assert test_db_session.query(NotifiedReminder).count() == 0

        second = make_dispatcher(events).run(now=NOW + timedelta(minutes=1))

        assert second.sent == 1
        assert len(fake_push.requests) == 2

    def test_only_expired_endpoints(self, make_dispatcher, create_subscription, fake_push):
        """Should count a reminder no endpoint accepted as failed."""
        sub = create_subscription()
        fake_push.set_status(sub.endpoint, 404)

        summary = make_dispatcher([_event()]).run(now=NOW)

        assert summary.failed == 1
        assert summary.subscriptions_removed == 1

    def test_calendar_error_does_not_stop_backlog(self, make_dispatcher, create_subscription, create_reminder):
        """Should report a calendar failure and still deliver backlog reminders."""
        create_subscription()
        create_reminder()
        source = Mock(spec=StaticEventSource)
        source.fetch_events.side_effect = CalendarSourceError("Calendar API error 500", status_code=500)

        summary = make_dispatcher(event_source=source).run(now=NOW)

        assert summary.sent == 1
        assert summary.errors == ["calendar: Calendar API error 500"]

    def test_no_subscriptions_skips_calendar(self, make_dispatcher):
        source = Mock(spec=StaticEventSource)

        summary = make_dispatcher(event_source=source).run(now=NOW)

        assert summary.sent == 0
        source.fetch_events.assert_not_called()

    def test_lookahead_covers_longest_lead_time(self, make_dispatcher, create_subscription, settings_factory):
        """Should widen the fetch window to the longest lead time."""
        create_subscription(lead_time_minutes=300)
        source = Mock(spec=StaticEventSource)
        source.fetch_events.return_value = []

        make_dispatcher(event_source=source, settings=settings_factory(LOOKAHEAD_HOURS=3)).run(now=NOW)

        source.fetch_events.assert_called_once_with(NOW, NOW + timedelta(minutes=300))


# ============================================================================
# Test: backlog reminders
# ============================================================================


class TestBacklogReminders:
    """Tests for the scheduled reminder backlog path."""

    def test_delivers_due_reminder(self, make_dispatcher, create_subscription, create_reminder,
                                   subscriber_keys, fake_push, test_db_session):
        """Should deliver a due reminder and close its row."""
        sub = create_subscription(keys=subscriber_keys)
        reminder = create_reminder(event_id="evt-7")

        summary = make_dispatcher().run(now=NOW)

        assert summary.sent == 1
        payload = _decrypt_request(fake_push.requests_to(sub.endpoint)[0], subscriber_keys)
        assert payload["title"] == "Client reminder: Ana Souza"
        assert payload["data"]["reminderId"] == reminder.id
        test_db_session.expire_all()
        stored = test_db_session.get(ScheduledReminder, reminder.id)
        assert stored.sent is True
        assert stored.claimed_by is None

    def test_sent_reminder_not_repeated(self, make_dispatcher, create_subscription, create_reminder, fake_push):
        create_subscription()
        create_reminder()

        first = make_dispatcher().run(now=NOW)
        second = make_dispatcher().run(now=NOW + timedelta(minutes=1))

        assert (first.sent, second.sent) == (1, 0)
        assert len(fake_push.requests) == 1

    def test_duplicates_skipped(self, make_dispatcher, create_subscription, create_reminder,
                                fake_push, test_db_session):
        """Should deliver only the newest row of an event."""
        create_subscription()
        older = create_reminder(event_id="evt", created_at=NOW - timedelta(hours=2))
        newer = create_reminder(event_id="evt", created_at=NOW - timedelta(hours=1))

        summary = make_dispatcher().run(now=NOW)

        assert summary.sent == 1
        assert summary.duplicates_skipped == 1
        assert len(fake_push.requests) == 1
        test_db_session.expire_all()
        assert test_db_session.get(ScheduledReminder, older.id).skip_reason == "duplicate_skipped"
        assert test_db_session.get(ScheduledReminder, newer.id).skip_reason is None

    def test_failure_is_retried(self, make_dispatcher, create_subscription, create_reminder,
                                fake_push, test_db_session):
        """Should keep a failed reminder for the next run."""
        sub = create_subscription()
        reminder = create_reminder()
        fake_push.set_status(sub.endpoint, 503, 201)

        first = make_dispatcher().run(now=NOW)

        assert first.failed == 1
        test_db_session.expire_all()
        stored = test_db_session.get(ScheduledReminder, reminder.id)
        assert stored.sent is False
        assert stored.attempts == 1
        assert "HTTP 503" in stored.last_error

        second = make_dispatcher().run(now=NOW + timedelta(minutes=1))

        assert second.sent == 1

    def test_no_subscriptions(self, make_dispatcher, create_reminder, test_db_session):
        """Should fail the reminder and keep it pending when nobody is subscribed."""
        reminder = create_reminder()

        summary = make_dispatcher().run(now=NOW)

        assert summary.failed == 1
        test_db_session.expire_all()
        stored = test_db_session.get(ScheduledReminder, reminder.id)
        assert stored.sent is False
        assert stored.last_error == "No push subscriptions"

    def test_malformed_row_closed(self, make_dispatcher, create_subscription, create_reminder,
                                  fake_push, test_db_session):
        create_subscription()
        reminder = create_reminder(client_phone=" ")

        summary = make_dispatcher().run(now=NOW)

        assert summary.sent == 0
        assert fake_push.requests == []
        assert any("malformed" in error for error in summary.errors)
        test_db_session.expire_all()
        assert test_db_session.get(ScheduledReminder, reminder.id).skip_reason == "malformed:missing client_phone"


# ============================================================================
# Test: ad-hoc notifications
# ============================================================================


class TestSendNotification:
    """Tests for DispatchService.send_notification."""

    def test_broadcasts_to_every_subscription(self, make_dispatcher, create_subscription, subscriber_keys,
                                              fake_push, test_db_session):
        """Should deliver the title, body and data to each subscription."""
        sub = create_subscription(keys=subscriber_keys, lead_time_minutes=15)
        create_subscription(lead_time_minutes=60)

        summary = make_dispatcher().send_notification(
            "Studio closed", "See you Thursday", {"url": "/agenda"}, now=NOW,
        )

        assert (summary.sent, summary.failed) == (2, 0)
        payload = _decrypt_request(fake_push.requests_to(sub.endpoint)[0], subscriber_keys)
        assert payload["title"] == "Studio closed"
        assert payload["body"] == "See you Thursday"
        assert payload["data"] == {"url": "/agenda"}
        assert test_db_session.query(NotifiedReminder).count() == 0

    def test_expired_endpoints_counted_and_removed(self, make_dispatcher, create_subscription, fake_push,
                                                   test_db_session):
        """Should count 404/410 endpoints as failed and prune them."""
        create_subscription()
        not_found = create_subscription().endpoint
        gone = create_subscription().endpoint
        fake_push.set_status(not_found, 404)
        fake_push.set_status(gone, 410)

        summary = make_dispatcher().send_notification("Hi", "There", now=NOW)

        assert (summary.sent, summary.failed, summary.subscriptions_removed) == (1, 2, 2)
        assert summary.errors == []
        assert test_db_session.query(PushSubscription).count() == 1

    def test_failed_endpoint_is_kept(self, make_dispatcher, create_subscription, fake_push, test_db_session):
        endpoint = create_subscription().endpoint
        fake_push.set_status(endpoint, 503)

        summary = make_dispatcher().send_notification("Hi", "There", now=NOW)

        assert (summary.sent, summary.failed, summary.subscriptions_removed) == (0, 1, 0)
        assert "HTTP 503" in summary.errors[0]
        assert test_db_session.query(PushSubscription).count() == 1

    def test_leaves_backlog_alone(self, make_dispatcher, create_subscription, create_reminder, fake_push,
                                  test_db_session):
        create_subscription()
        reminder = create_reminder()

        make_dispatcher().send_notification("Hi", "There", now=NOW)

        assert len(fake_push.requests) == 1
        test_db_session.expire_all()
        assert test_db_session.get(ScheduledReminder, reminder.id).sent is False

    @pytest.mark.parametrize("title,body,field", [
        ("", "There", "title"),
        ("Hi", "   ", "body"),
        (None, "There", "title"),
    ])
    def test_requires_title_and_body(self, make_dispatcher, create_subscription, fake_push, title, body, field):
        """Should reject a blank title or body before sending anything."""
        create_subscription()

        with pytest.raises(ValidationError) as exc_info:
            make_dispatcher().send_notification(title, body, now=NOW)

        assert exc_info.value.field == field
        assert fake_push.requests == []

    def test_no_subscriptions(self, make_dispatcher):
        summary = make_dispatcher().send_notification("Hi", "There", now=NOW)
        assert (summary.sent, summary.failed) == (0, 0)


# ============================================================================
# Test: run bookkeeping
# ============================================================================


class TestBookkeeping:
    """Tests for subscription and ledger housekeeping at the end of a run."""

    def test_marks_subscription_used(self, make_dispatcher, create_subscription, create_reminder, test_db_session):
        sub = create_subscription()
        create_reminder()

        make_dispatcher().run(now=NOW)

        test_db_session.expire_all()
        assert test_db_session.get(PushSubscription, sub.id).last_used_at == NOW

    def test_purges_old_ledger_rows(self, make_dispatcher, test_db_session):
        test_db_session.add(NotifiedReminder(
            event_id="ancient",
            lead_time_minutes=15,
            claimed_by="run-x",
            claimed_at=NOW - timedelta(days=2),
            notified_at=NOW - timedelta(days=2),
        ))
        test_db_session.commit()

        make_dispatcher().run(now=NOW)

        assert test_db_session.query(NotifiedReminder).count() == 0

    def test_summary_dict(self):
        summary = DispatchSummary(run_id="abc", sent=2, duplicates_skipped=1, errors=["x"])
        assert summary.to_dict() == {
            "run_id": "abc",
            "sent": 2,
            "failed": 0,
            "duplicatesSkipped": 1,
            "subscriptionsRemoved": 0,
            "alreadyNotified": 0,
            "errors": ["x"],
        }

    def test_audits_every_attempt(self, make_dispatcher, create_subscription, create_reminder, fake_push):
        """Should write one audit record per delivery attempt."""
        gone = create_subscription()
        create_subscription()
        create_reminder()
        fake_push.set_status(gone.endpoint, 410)

        records = []
        handler = logging.Handler()
        handler.emit = records.append
        audit = get_logger("audit")
        audit.addHandler(handler)
        try:
            summary = make_dispatcher().run(now=NOW)
        finally:
            audit.removeHandler(handler)

        assert sorted(r.outcome for r in records) == ["delivered", "endpoint_expired"]
        assert {r.run_id for r in records} == {summary.run_id}
        assert {r.kind for r in records} == {"backlog"}
