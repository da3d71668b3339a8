"""Data models for event sync and calendar export."""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from processor.dates import js_weekday, localize


PRIMARY_TAXONOMY = 'tribe_events_cat'
DEFAULT_CATEGORY = 'General'

PUBLISH_STATUSES = ('publish', 'draft', 'private')
CONFIDENCE_LEVELS = ('confirmed', 'tentative', 'placeholder', 'TBA')
SYNC_STATUSES = ('synced', 'pending', 'error', 'outdated')
SOURCES = ('events-calendar-api', 'chautauqua-api', 'web-scraper', 'manual', 'fallback')


@dataclass(frozen=True)
class Venue:
    """Where an event takes place."""
    id: int
    name: str
    address: Optional[str] = None
    show_map: bool = False


@dataclass(frozen=True)
class Category:
    """Taxonomy term attached to an event."""
    id: int
    name: str
    slug: str
    taxonomy: str
    parent: int = 0


@dataclass(frozen=True)
class EventImage:
    url: str
    alt: Optional[str] = None
    sizes: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class EventChange:
    """A single field-level change recorded against an event."""
    timestamp: datetime
    field: str
    old_value: Any
    new_value: Any
    source: str


@dataclass
class Event:
    """Canonical event record."""
    id: int
    uid: str
    title: str
    start_date: str
    end_date: str
    timezone: str
    last_modified: str
    created_at: str
    updated_at: str
    description: Optional[str] = None
    venue: Optional[Venue] = None
    categories: List[Category] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    cost: Optional[str] = None
    url: Optional[str] = None
    image: Optional[EventImage] = None
    status: str = 'publish'
    featured: bool = False
    audience: Optional[str] = None
    ticket_required: bool = False
    subcategory: Optional[str] = None
    series: Optional[str] = None
    presenter: Optional[str] = None
    discipline: Optional[str] = None
    confidence: str = 'confirmed'
    sync_status: str = 'synced'
    source: str = 'events-calendar-api'
    change_log: List[EventChange] = field(default_factory=list)
    missed_syncs: int = 0

    @property
    def category(self) -> str:
        """Primary category name, derived from the category list."""
        if not self.categories:
            return DEFAULT_CATEGORY
        for cat in self.categories:
            if cat.taxonomy == PRIMARY_TAXONOMY:
                return cat.name
        return self.categories[0].name

    @property
    def location(self) -> Optional[str]:
        """Legacy free-text location, derived from the venue."""
        return self.venue.name if self.venue else None

    @property
    def day_of_week(self) -> int:
        """Weekday of the local start, 0=Sunday .. 6=Saturday."""
        return js_weekday(localize(self.start_date, self.timezone))

    @property
    def week(self) -> Optional[int]:
        """Season week of the local start day, or None outside the season."""
        from processor.season import week_for_date
        return week_for_date(localize(self.start_date, self.timezone).date())

    @property
    def is_deleted(self) -> bool:
        return self.sync_status == 'outdated'


@dataclass(frozen=True)
class SeasonWeek:
    """One of the nine weeks of a festival season."""
    number: int
    start: date
    end: date
    label: str

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of calendar days."""
    start: date
    end: date

    @classmethod
    def from_strings(cls, start: str, end: str) -> 'DateRange':
        """
        Build a range from two YYYY-MM-DD strings.

        Raises:
            ValueError: If either date is malformed or end precedes start
        """
        range_start = date.fromisoformat(start)
        range_end = date.fromisoformat(end)
        if range_end < range_start:
            raise ValueError(f"Date range end {end} is before start {start}")
        return cls(start=range_start, end=range_end)

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    @property
    def key(self) -> str:
        return f"{self.start.isoformat()}..{self.end.isoformat()}"


@dataclass(frozen=True)
class ApiPage:
    """One page of the upstream events feed."""
    page: int
    events: List[Dict[str, Any]]
    total: int
    total_pages: int
    next_rest_url: Optional[str] = None


@dataclass(frozen=True)
class SyncResult:
    """Result of sync operation."""
    success: bool
    events_processed: int
    events_created: int
    events_updated: int
    events_deleted: int
    errors: Tuple[str, ...]
    duration: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'eventsProcessed': self.events_processed,
            'eventsCreated': self.events_created,
            'eventsUpdated': self.events_updated,
            'eventsDeleted': self.events_deleted,
            'errors': list(self.errors),
            'duration': self.duration
        }


@dataclass(frozen=True)
class CalendarResponse:
    """Outcome of a calendar export."""
    success: bool
    data: Optional[str] = None
    download_url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {'success': self.success}
        if self.data is not None:
            body['data'] = self.data
        if self.download_url is not None:
            body['downloadUrl'] = self.download_url
        if self.error is not None:
            body['error'] = self.error
        return body


@dataclass(frozen=True)
class CalendarRequest:
    """Calendar generation request as received from a client."""
    filters: Dict[str, Any]
    format: str = 'ics'
    timezone: Optional[str] = None
    include_series: bool = False

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'CalendarRequest':
        return cls(
            filters=payload.get('filters') or {},
            format=payload.get('format', 'ics'),
            timezone=payload.get('timezone'),
            include_series=bool(payload.get('includeSeries', False))
        )
