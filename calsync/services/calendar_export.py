"""
Calendar export helpers: .ics files and add-to-calendar deep links.

These cover calendars that are not connected for two-way sync, such as
Apple Calendar, which imports the .ics download.
"""

import re
from datetime import datetime, timezone
from typing import Dict, Optional
from urllib.parse import urlencode

from icalendar import Calendar, Event as ICalEvent

from calsync.models.calendar_sync import LocalEvent

ICS_PRODID = "-//Violets and Vibes//Events//EN"
ICS_UID_DOMAIN = "violetsandvibes.com"

GOOGLE_TEMPLATE_URL = "https://calendar.google.com/calendar/render"
OUTLOOK_COMPOSE_URL = "https://outlook.live.com/calendar/0/deeplink/compose"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_utc_stamp(value: datetime) -> str:
    """Basic-format UTC stamp, e.g. 20250101T090000Z."""
    return _as_utc(value).strftime("%Y%m%dT%H%M%SZ")


def build_ics(event: LocalEvent, now: Optional[datetime] = None) -> str:
    """
    Render a single-event VCALENDAR document.

    icalendar handles TEXT escaping and folds content lines at 75 octets.

    Args:
        event: Event to export
        now: DTSTAMP value (defaults to current time)

    Returns:
        iCalendar text with CRLF line endings
    """
    cal = Calendar()
    cal.add('prodid', ICS_PRODID)
    cal.add('version', '2.0')
    cal.add('calscale', 'GREGORIAN')
    cal.add('method', 'PUBLISH')

    ical_event = ICalEvent()
    ical_event.add('uid', f"{event.id}@{ICS_UID_DOMAIN}")
    ical_event.add('dtstamp', _as_utc(now or datetime.now(timezone.utc)).replace(microsecond=0))
    ical_event.add('dtstart', _as_utc(event.starts_at).replace(microsecond=0))
    ical_event.add('dtend', _as_utc(event.ends_at).replace(microsecond=0))
    ical_event.add('summary', event.title)

    if event.description:
        ical_event.add('description', event.description)

    if event.location:
        ical_event.add('location', event.location)

    cal.add_component(ical_event)
    return cal.to_ical().decode('utf-8')


def ics_filename(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return f"{slug or 'event'}.ics"


def build_google_template_url(event: LocalEvent) -> str:
    """Google Calendar "create event" link prefilled with the event."""
    params = {
        "action": "TEMPLATE",
        "text": event.title,
        "details": event.description or "",
        "location": event.location or "",
        "dates": f"{to_utc_stamp(event.starts_at)}/{to_utc_stamp(event.ends_at)}",
    }
    return f"{GOOGLE_TEMPLATE_URL}?{urlencode(params)}"


def _iso_millis(value: datetime) -> str:
    value = _as_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def build_outlook_compose_url(event: LocalEvent) -> str:
    """Outlook on the web compose link prefilled with the event."""
    params = {
        "path": "/calendar/action/compose",
        "rru": "addevent",
        "subject": event.title,
        "body": event.description or "",
        "location": event.location or "",
        "startdt": _iso_millis(event.starts_at),
        "enddt": _iso_millis(event.ends_at),
    }
    return f"{OUTLOOK_COMPOSE_URL}?{urlencode(params)}"


def build_calendar_links(event: LocalEvent) -> Dict[str, str]:
    return {
        "google": build_google_template_url(event),
        "outlook": build_outlook_compose_url(event),
    }
