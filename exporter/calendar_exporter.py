"""Calendar rendering for ICS files and provider add-event payloads."""
import json
import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlencode

from icalendar import Calendar, Event as ICalEvent

from processor.dates import DEFAULT_TIMEZONE, get_zone, localize, parse_datetime
from processor.errors import ExportError
from processor.event_processor import strip_html
from processor.models import CalendarResponse, Event

logger = logging.getLogger(__name__)


def _utc_stamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime('%Y%m%dT%H%M%SZ')


def _location_text(event: Event) -> str:
    if event.venue is None:
        return ''
    parts = [event.venue.name]
    if event.venue.address:
        parts.append(event.venue.address)
    return ', '.join(parts)


class CalendarExporter:
    """Renders events as ICS text or Google/Outlook event payloads."""

    PRODID = "-//Season Calendar Sync//Events//EN"
    SUPPORTED_FORMATS = ('ics', 'google', 'outlook')
    GOOGLE_TEMPLATE_URL = "https://calendar.google.com/calendar/render"
    OUTLOOK_COMPOSE_URL = "https://outlook.live.com/calendar/0/deeplink/compose"

    def __init__(
        self,
        calendar_name: str = 'Chautauqua Institution Calendar',
        default_timezone: str = DEFAULT_TIMEZONE,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.calendar_name = calendar_name
        self.default_timezone = default_timezone
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def export(self, events: Iterable[Event], fmt: str, tz_name: Optional[str] = None) -> CalendarResponse:
        """
        Render events in the requested format.

        Args:
            events: Events to include, in output order
            fmt: One of 'ics', 'google', 'outlook'
            tz_name: Target IANA timezone (default: each event's own timezone)

        Returns:
            CalendarResponse with the rendered body, or success=False and an
            error message if the format or timezone is not supported
        """
        events = list(events)
        try:
            if fmt not in self.SUPPORTED_FORMATS:
                raise ExportError(f"Unsupported calendar format: {fmt}")
            if tz_name:
                try:
                    get_zone(tz_name)
                except ValueError as e:
                    raise ExportError(str(e)) from e

            if fmt == 'ics':
                data = self.render_ics(events, tz_name)
            elif fmt == 'google':
                data = json.dumps([self.google_event(event, tz_name) for event in events], indent=2)
            else:
                data = json.dumps([self.outlook_event(event, tz_name) for event in events], indent=2)
        except ExportError as e:
            logger.warning(f"Calendar export failed: {e}")
            return CalendarResponse(success=False, error=str(e))

        logger.info(f"Exported {len(events)} events as {fmt}")
        return CalendarResponse(success=True, data=data)

    def render_ics(self, events: List[Event], tz_name: Optional[str] = None) -> str:
        """
        Render a VCALENDAR document with CRLF line endings.

        Every TZID used by an event gets a VTIMEZONE covering the years the
        events span.
        """
        cal = Calendar()
        cal.add('version', '2.0')
        cal.add('prodid', self.PRODID)
        cal.add('calscale', 'GREGORIAN')
        cal.add('method', 'PUBLISH')
        cal.add('x-wr-calname', self.calendar_name)
        cal.add('x-wr-timezone', tz_name or self.default_timezone)

        stamp = self.clock().astimezone(timezone.utc)
        years = set()
        for event in events:
            component, start = self._ics_event(event, tz_name, stamp)
            cal.add_component(component)
            years.add(start.year)

        if years:
            cal.add_missing_timezones(
                first_date=date(min(years) - 1, 1, 1),
                last_date=date(max(years) + 1, 12, 31)
            )
        return cal.to_ical().decode('utf-8')

    def _ics_event(self, event: Event, tz_name: Optional[str], stamp: datetime):
        target_tz = tz_name or event.timezone
        start = self._to_zone(event.start_date, event, target_tz)
        end = self._to_zone(event.end_date, event, target_tz)
        if target_tz == 'UTC':
            start = start.astimezone(timezone.utc)
            end = end.astimezone(timezone.utc)

        component = ICalEvent()
        component.add('uid', event.uid)
        component.add('dtstamp', stamp)
        component.add('dtstart', start)
        component.add('dtend', end)
        component.add('summary', event.title)

        description = strip_html(event.description)
        if description:
            component.add('description', description)
        location = _location_text(event)
        if location:
            component.add('location', location)
        if event.url:
            component.add('url', event.url)

        component.add('status', self._ics_status(event))
        if event.status == 'private':
            component.add('class', 'PRIVATE')

        component.add('categories', [cat.name for cat in event.categories] or [event.category])

        last_modified = parse_datetime(event.last_modified)
        if last_modified is not None and last_modified.tzinfo is not None:
            component.add('last-modified', last_modified.astimezone(timezone.utc))

        return component, start

    def _ics_status(self, event: Event) -> str:
        if event.is_deleted:
            return 'CANCELLED'
        if event.status == 'draft' or event.confidence != 'confirmed':
            return 'TENTATIVE'
        return 'CONFIRMED'

    def google_event(self, event: Event, tz_name: Optional[str] = None) -> Dict[str, Any]:
        """Build a Google Calendar API event resource with an add-event link."""
        target_tz = tz_name or event.timezone
        start = self._to_zone(event.start_date, event, target_tz)
        end = self._to_zone(event.end_date, event, target_tz)
        description = strip_html(event.description)
        location = _location_text(event)

        resource = {
            'iCalUID': event.uid,
            'summary': event.title,
            'description': description,
            'location': location,
            'start': {'dateTime': start.isoformat(), 'timeZone': target_tz},
            'end': {'dateTime': end.isoformat(), 'timeZone': target_tz},
            'status': self._ics_status(event).lower(),
            'htmlLink': self.GOOGLE_TEMPLATE_URL + '?' + urlencode({
                'action': 'TEMPLATE',
                'text': event.title,
                'dates': f"{_utc_stamp(start)}/{_utc_stamp(end)}",
                'details': description,
                'location': location,
                'ctz': target_tz,
            })
        }
        if event.url:
            resource['source'] = {'title': event.title, 'url': event.url}
        return resource

    def outlook_event(self, event: Event, tz_name: Optional[str] = None) -> Dict[str, Any]:
        """Build a Microsoft Graph event resource with a compose deeplink."""
        target_tz = tz_name or event.timezone
        start = self._to_zone(event.start_date, event, target_tz)
        end = self._to_zone(event.end_date, event, target_tz)
        description = strip_html(event.description)
        location = _location_text(event)

        return {
            'iCalUId': event.uid,
            'subject': event.title,
            'body': {'contentType': 'text', 'content': description},
            'start': {'dateTime': start.replace(tzinfo=None).isoformat(), 'timeZone': target_tz},
            'end': {'dateTime': end.replace(tzinfo=None).isoformat(), 'timeZone': target_tz},
            'location': {'displayName': location},
            'categories': [cat.name for cat in event.categories],
            'showAs': 'tentative' if self._ics_status(event) == 'TENTATIVE' else 'busy',
            'isCancelled': event.is_deleted,
            'webLink': self.OUTLOOK_COMPOSE_URL + '?' + urlencode({
                'path': '/calendar/action/compose',
                'rru': 'addevent',
                'subject': event.title,
                'startdt': start.isoformat(),
                'enddt': end.isoformat(),
                'body': description,
                'location': location,
            })
        }

    def _to_zone(self, value: str, event: Event, tz_name: str) -> datetime:
        try:
            return localize(value, event.timezone).astimezone(get_zone(tz_name))
        except ValueError as e:
            raise ExportError(f"Event {event.uid} has an invalid date: {e}") from e
