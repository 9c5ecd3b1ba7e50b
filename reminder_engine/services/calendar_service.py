"""
Calendar event sources.

A source returns the events starting inside a time window. Two sources are
provided:
- GoogleCalendarSource: Google Calendar API v3 (public calendar + API key)
- StaticEventSource: in-memory list, for tests and manual runs

All event times are normalized to naive UTC.
"""

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

import httpx

from reminder_engine.config.settings import AppSettings
from reminder_engine.services.exceptions import CalendarSourceError
from reminder_engine.utils.logging_config import get_logger
from reminder_engine.utils.time_utils import to_naive_utc


logger = get_logger("services")

GOOGLE_CALENDAR_API_URL = "https://www.googleapis.com/calendar/v3/calendars"


@dataclass(frozen=True)
class CalendarEvent:
    """
    Read-only calendar event.

    Attributes:
        id: Source event identifier
        title: Event summary (conventionally "Service - Client name")
        start: Event start (naive UTC)
        end: Event end (naive UTC)
    """

    id: str
    title: str
    start: datetime
    end: datetime


def _parse_event_time(value: Dict[str, Any]) -> Optional[datetime]:
    """Read a Google ``{dateTime|date}`` object; all-day dates start at 00:00 UTC."""
    if not value:
        return None
    if value.get("dateTime"):
        raw = value["dateTime"].replace("Z", "+00:00")
        return to_naive_utc(datetime.fromisoformat(raw))
    if value.get("date"):
        return datetime.combine(date.fromisoformat(value["date"]), time.min)
    return None


def parse_google_event(item: Dict[str, Any]) -> Optional[CalendarEvent]:
    """
    Convert a Google Calendar API event resource.

    Returns:
        CalendarEvent, or None if the item has no id or no usable start
    """
    event_id = item.get("id")
    try:
        start = _parse_event_time(item.get("start") or {})
        end = _parse_event_time(item.get("end") or {})
    except ValueError:
        start = None
        end = None

    if not event_id or start is None:
        logger.warning(
            "Skipping calendar event without id or start",
            extra={"event_id": event_id},
        )
        return None

    return CalendarEvent(
        id=event_id,
        title=item.get("summary") or "",
        start=start,
        end=end or start,
    )


def normalize_calendar_id(calendar_id: str) -> str:
    """Bare account names are Gmail addresses."""
    calendar_id = calendar_id.strip()
    if "@" not in calendar_id and ".calendar.google.com" not in calendar_id:
        return f"{calendar_id}@gmail.com"
    return calendar_id


class GoogleCalendarSource:
    """
    Google Calendar API event source.

    Usage:
        >>> source = GoogleCalendarSource(api_key, "studio@gmail.com")
        >>> events = source.fetch_events(now, now + timedelta(hours=3))
    """

    def __init__(
        self,
        api_key: str,
        calendar_id: str,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.calendar_id = normalize_calendar_id(calendar_id)
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout_seconds)

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def fetch_events(self, time_min: datetime, time_max: datetime) -> List[CalendarEvent]:
        """
        List single (expanded) events between ``time_min`` and ``time_max``.

        Raises:
            CalendarSourceError: On transport errors, a non-2xx response or a
                non-JSON body
        """
        url = f"{GOOGLE_CALENDAR_API_URL}/{quote(self.calendar_id, safe='')}/events"
        params = {
            "key": self.api_key,
            "timeMin": to_naive_utc(time_min).isoformat() + "Z",
            "timeMax": to_naive_utc(time_max).isoformat() + "Z",
            "singleEvents": "true",
            "orderBy": "startTime",
        }

        try:
            response = self.client.get(url, params=params)
        except httpx.ConnectError as e:
            raise CalendarSourceError(f"Failed to connect to calendar API: {e}")
        except httpx.TimeoutException as e:
            raise CalendarSourceError(f"Calendar API timed out: {e}")
        except httpx.HTTPError as e:
            raise CalendarSourceError(f"Calendar API request failed: {e}")

        if response.status_code == 404:
            raise CalendarSourceError(
                "Calendar not found; check the calendar id and that the calendar is public",
                status_code=404,
            )
        if response.status_code == 403:
            raise CalendarSourceError(
                "Calendar access denied; check the API key",
                status_code=403,
            )
        if response.status_code >= 400:
            raise CalendarSourceError(
                f"Calendar API error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise CalendarSourceError(f"Calendar API returned invalid JSON: {e}")
        if not isinstance(data, dict):
            raise CalendarSourceError("Calendar API returned an unexpected response body")

        items = data.get("items") or []
        events = [event for event in (parse_google_event(item) for item in items) if event]
        logger.info(
            "Fetched calendar events",
            extra={"count": len(events), "time_min": params["timeMin"], "time_max": params["timeMax"]},
        )
        return events


class StaticEventSource:
    """In-memory event source."""

    def __init__(self, events: Iterable[CalendarEvent] = ()):
        self.events = list(events)

    def close(self) -> None:
        pass

    def fetch_events(self, time_min: datetime, time_max: datetime) -> List[CalendarEvent]:
        time_min = to_naive_utc(time_min)
        time_max = to_naive_utc(time_max)
        return sorted(
            (e for e in self.events if time_min <= e.start <= time_max),
            key=lambda e: e.start,
        )


def build_event_source(settings: AppSettings) -> Optional[GoogleCalendarSource]:
    """Calendar source from settings, or None when no calendar is configured."""
    if not settings.calendar_configured:
        return None
    return GoogleCalendarSource(
        api_key=settings.google_calendar_api_key,
        calendar_id=settings.google_calendar_id,
        timeout_seconds=settings.push_timeout_seconds,
    )
