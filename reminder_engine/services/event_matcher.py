"""
Event-window matching and reminder rendering for calendar events.

Pure functions: nothing here touches the database or the network.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List
from zoneinfo import ZoneInfo

from reminder_engine.services.calendar_service import CalendarEvent
from reminder_engine.utils.time_utils import to_naive_utc


TITLE_SEPARATOR = " - "
UNTITLED = "Untitled"
NOTIFICATION_ICON = "/pwa-192x192.png"


@dataclass(frozen=True)
class ParsedTitle:
    """Event title split into its client and service parts."""

    client_name: str
    service_name: str


def match_due_events(
    now: datetime,
    lead_time_minutes: int,
    events: Iterable[CalendarEvent],
) -> List[CalendarEvent]:
    """
    Select events whose reminder is due at ``now``.

    An event is due when it has not started yet and starts within the lead
    time: ``now < start <= now + lead``.

    Args:
        now: Current time (naive UTC or aware)
        lead_time_minutes: Subscriber lead time
        events: Candidate events

    Returns:
        Matching events, in input order
    """
    now = to_naive_utc(now)
    window_end = now + timedelta(minutes=lead_time_minutes)
    return [event for event in events if now < event.start <= window_end]


def parse_event_title(title: str) -> ParsedTitle:
    """
    Split ``"Service - Client name"`` titles.

    The first piece is the service; everything after the first separator is
    the client name. A title without a separator is only a client name.
    """
    title = (title or "").strip()
    if not title:
        return ParsedTitle(client_name=UNTITLED, service_name="")

    parts = title.split(TITLE_SEPARATOR)
    if len(parts) < 2:
        return ParsedTitle(client_name=title, service_name="")

    return ParsedTitle(
        client_name=TITLE_SEPARATOR.join(parts[1:]).strip(),
        service_name=parts[0].strip(),
    )


def format_local_time(value: datetime, display_timezone: str) -> str:
    """HH:MM of a naive UTC datetime in the display timezone."""
    aware = value.replace(tzinfo=timezone.utc)
    return aware.astimezone(ZoneInfo(display_timezone)).strftime("%H:%M")


def minutes_until(now: datetime, start: datetime) -> int:
    """Whole minutes from ``now`` to ``start``, at least 1 for a future start."""
    seconds = (start - to_naive_utc(now)).total_seconds()
    return max(1, round(seconds / 60))


def build_event_reminder_payload(
    event: CalendarEvent,
    now: datetime,
    display_timezone: str = "UTC",
) -> Dict[str, Any]:
    """
    Render the push payload for an upcoming event.

    Returns:
        Notification dict (title, body, icon, badge, tag, data)
    """
    parsed = parse_event_title(event.title)
    lines = [parsed.client_name]
    if parsed.service_name:
        lines.append(parsed.service_name)
    lines.append(
        f"Time: {format_local_time(event.start, display_timezone)}"
        f" - {format_local_time(event.end, display_timezone)}"
    )

    return {
        "title": f"Appointment in {minutes_until(now, event.start)} min",
        "body": "\n".join(lines),
        "icon": NOTIFICATION_ICON,
        "badge": NOTIFICATION_ICON,
        "tag": f"reminder-{event.id}",
        "data": {"eventId": event.id},
    }
