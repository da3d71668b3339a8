"""Event normalizer for mapping upstream feed records to the canonical schema."""
import hashlib
import html
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from bs4 import BeautifulSoup

from processor.dates import DEFAULT_TIMEZONE, get_zone, localize
from processor.errors import NormalizationError
from processor.models import (
    CONFIDENCE_LEVELS,
    PUBLISH_STATUSES,
    Category,
    Event,
    EventImage,
    Venue,
)

logger = logging.getLogger(__name__)


def strip_html(text: Optional[str]) -> str:
    """Return the visible text of an HTML fragment."""
    if not text:
        return ''
    return BeautifulSoup(text, 'html.parser').get_text(' ', strip=True)


def generate_uid(source: str, source_id: int) -> str:
    """
    Generate a stable identifier for a source event.

    Args:
        source: Provenance tag (e.g. "events-calendar-api")
        source_id: Numeric id assigned by the source

    Returns:
        SHA256 hex digest of source and id
    """
    composite = f"{source}|{source_id}"
    return hashlib.sha256(composite.encode('utf-8')).hexdigest()


class TagExtractor:
    """Strategy for deriving free-text tags from an event's title and description."""

    def extract(self, title: str, description: str) -> List[str]:
        raise NotImplementedError


class KeywordTagExtractor(TagExtractor):
    """Tags events by venue abbreviations and event-type keywords."""

    VENUE_ABBREVIATIONS = {
        'amp': 'amphitheater',
        'cso': 'chautauqua symphony orchestra',
        'ctc': 'chautauqua theater company',
        'clsc': 'chautauqua literary and scientific circle',
        'ciwl': 'chautauqua institution womens league',
        'hop': 'hall of philosophy',
        'hoc': 'hall of christ',
    }

    EVENT_TYPES = (
        'lecture', 'concert', 'recital', 'performance', 'workshop',
        'service', 'class', 'meeting', 'exhibition', 'tour',
        'discussion', 'presentation', 'ceremony', 'festival',
    )

    def extract(self, title: str, description: str) -> List[str]:
        text = f"{title} {description}".lower()
        tags = []

        for abbr, full in self.VENUE_ABBREVIATIONS.items():
            if re.search(rf'\b{abbr}\b', text):
                tags.append(full)

        for event_type in self.EVENT_TYPES:
            if event_type in text:
                tags.append(event_type)

        return tags


class EventNormalizer:
    """Maps raw feed events to canonical Event records."""

    SERIES_PATTERNS = (
        'morning lecture',
        'interfaith lecture',
        'porch discussion',
        'master class',
        'symphony concert',
        'chamber music',
        'sunday service',
    )

    PRESENTER_PATTERNS = (
        re.compile(r'\bwith\s+([^,\n]+)', re.IGNORECASE),
        re.compile(r'\bby\s+([^,\n]+)', re.IGNORECASE),
        re.compile(r'\bfeaturing\s+([^,\n]+)', re.IGNORECASE),
        re.compile(r'\bpresenter:\s*([^,\n]+)', re.IGNORECASE),
        re.compile(r'\bspeaker:\s*([^,\n]+)', re.IGNORECASE),
    )

    DISCIPLINES = (
        ('music', 'Music'),
        ('theater', 'Theater'),
        ('lecture', 'Education'),
        ('visual arts', 'Visual Arts'),
        ('dance', 'Dance'),
        ('literature', 'Literature'),
        ('religion', 'Religion'),
        ('philosophy', 'Philosophy'),
        ('science', 'Science'),
    )

    FREE_MARKERS = ('$0', 'free', 'no charge')
    MIN_KEYWORD_TAG_LENGTH = 3

    def __init__(
        self,
        source: str = 'events-calendar-api',
        default_timezone: str = DEFAULT_TIMEZONE,
        venue_timezones: Optional[Dict[str, str]] = None,
        tag_extractor: Optional[TagExtractor] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the normalizer.

        Args:
            source: Provenance tag stamped on every normalized event
            default_timezone: Zone used when neither the event nor its venue has one
            venue_timezones: Optional mapping of venue name to IANA timezone
            tag_extractor: Strategy for keyword tags (default: KeywordTagExtractor)
            clock: Returns the current time; injectable for tests
        """
        self.source = source
        self.default_timezone = default_timezone
        self.venue_timezones = venue_timezones or {}
        self.tag_extractor = tag_extractor or KeywordTagExtractor()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def normalize(self, api_event: Dict[str, Any], existing_event: Optional[Event] = None) -> Event:
        """
        Normalize one feed event.

        Args:
            api_event: Raw event dict from the upstream API
            existing_event: Previously stored version of the same event, if any

        Returns:
            Normalized Event

        Raises:
            NormalizationError: If a required field is missing or unparsable
        """
        if not isinstance(api_event, dict):
            raise NormalizationError('event', None, f"not an object ({type(api_event).__name__})")
        source_id = self._source_id(api_event)

        title = api_event.get('title')
        if not isinstance(title, str) or not title.strip():
            raise NormalizationError('title', source_id)
        title = html.unescape(title.strip())

        venue = self._transform_venue(api_event.get('venue'), source_id)
        tz_name = self._resolve_timezone(api_event.get('timezone'), venue, source_id)

        start_date = api_event.get('start_date')
        end_date = api_event.get('end_date')
        start = self._localize(start_date, tz_name, 'start_date', source_id)
        end = self._localize(end_date, tz_name, 'end_date', source_id)
        if end < start:
            raise NormalizationError('end_date', source_id, 'before start_date')

        description = api_event.get('description')
        if not isinstance(description, str) or not description.strip():
            description = None

        categories = self._transform_categories(api_event.get('categories') or [], source_id)
        cost = self._normalize_cost(api_event.get('cost'), source_id)
        plain_description = strip_html(description)

        now = self.clock().isoformat()
        if existing_event is not None:
            created_at = existing_event.created_at
            updated_at = existing_event.updated_at
            last_modified = existing_event.last_modified
            change_log = list(existing_event.change_log)
        else:
            created_at = updated_at = last_modified = now
            change_log = []

        return Event(
            id=source_id,
            uid=generate_uid(self.source, source_id),
            title=title,
            start_date=start_date,
            end_date=end_date,
            timezone=tz_name,
            last_modified=last_modified,
            created_at=created_at,
            updated_at=updated_at,
            description=description,
            venue=venue,
            categories=categories,
            tags=self._generate_tags(title, plain_description, venue, categories, cost),
            cost=cost,
            url=api_event.get('url') or None,
            image=self._transform_image(api_event.get('image')),
            status=self._normalize_status(api_event.get('status')),
            featured=bool(api_event.get('featured', False)),
            audience=self._infer_audience(title, plain_description),
            ticket_required=self._infer_ticket_required(cost),
            subcategory=self._extract_subcategory(categories),
            series=self._extract_series(title, plain_description),
            presenter=self._extract_presenter(title),
            discipline=self._extract_discipline(categories),
            confidence=self._assess_confidence(api_event, title, plain_description),
            sync_status='synced',
            source=self.source,
            change_log=change_log,
            missed_syncs=0
        )

    def _source_id(self, api_event: Dict[str, Any]) -> int:
        raw_id = api_event.get('id')
        if isinstance(raw_id, bool):
            raise NormalizationError('id', None)
        try:
            return int(raw_id)
        except (TypeError, ValueError):
            raise NormalizationError('id', None) from None

    def _normalize_cost(self, cost: Any, source_id: int) -> Optional[str]:
        if cost is None or isinstance(cost, bool):
            return None
        # Some feeds send bare numbers for a dollar price
        if isinstance(cost, (int, float)):
            return f"${cost:g}"
        if not isinstance(cost, str):
            raise NormalizationError('cost', source_id)
        return cost.strip() or None

    def _resolve_timezone(self, tz_name: Any, venue: Optional[Venue], source_id: int) -> str:
        if not tz_name and venue is not None:
            tz_name = self.venue_timezones.get(venue.name)
        if not tz_name:
            tz_name = self.default_timezone
        try:
            get_zone(tz_name)
        except ValueError:
            raise NormalizationError('timezone', source_id, f"unknown ({tz_name})") from None
        return tz_name

    def _localize(self, value: Any, tz_name: str, field_name: str, source_id: int) -> datetime:
        if not isinstance(value, str) or not value.strip():
            raise NormalizationError(field_name, source_id)
        try:
            return localize(value, tz_name)
        except ValueError:
            raise NormalizationError(field_name, source_id, 'unparsable') from None

    def _transform_venue(self, venue: Any, source_id: int) -> Optional[Venue]:
        if not venue or not isinstance(venue, dict):
            return None
        name = venue.get('venue')
        if not name:
            return None
        try:
            venue_id = int(venue.get('id', 0))
        except (TypeError, ValueError):
            raise NormalizationError('venue', source_id) from None
        return Venue(
            id=venue_id,
            name=html.unescape(name),
            address=venue.get('address') or None,
            show_map=bool(venue.get('show_map', False))
        )

    def _transform_categories(self, categories: List[Any], source_id: int) -> List[Category]:
        result = []
        for cat in categories:
            try:
                result.append(Category(
                    id=int(cat['id']),
                    name=html.unescape(cat['name']),
                    slug=cat['slug'],
                    taxonomy=cat.get('taxonomy', ''),
                    parent=int(cat.get('parent') or 0)
                ))
            except (KeyError, TypeError, ValueError):
                raise NormalizationError('categories', source_id) from None
        return result

    def _transform_image(self, image: Any) -> Optional[EventImage]:
        if not image or not isinstance(image, dict) or not image.get('url'):
            return None
        sizes = {}
        for size_name, size in (image.get('sizes') or {}).items():
            # Feed sizes are either plain URLs or objects carrying a url key
            size_url = size.get('url') if isinstance(size, dict) else size
            if size_url:
                sizes[size_name] = size_url
        return EventImage(url=image['url'], alt=image.get('alt') or None, sizes=sizes)

    def _normalize_status(self, status: Any) -> str:
        if status in PUBLISH_STATUSES:
            return status
        return 'draft'

    def _generate_tags(
        self,
        title: str,
        description: str,
        venue: Optional[Venue],
        categories: List[Category],
        cost: Optional[str]
    ) -> List[str]:
        tags = []

        def add(tag: str) -> None:
            if tag and tag not in tags:
                tags.append(tag)

        for cat in categories:
            add(cat.slug)
            add(cat.name.lower())

        if venue is not None:
            add(venue.name.lower())

        for tag in self.tag_extractor.extract(title, description):
            if len(tag) >= self.MIN_KEYWORD_TAG_LENGTH:
                add(tag.lower())

        if cost:
            add('ticketed' if self._infer_ticket_required(cost) else 'free')

        return tags

    def _infer_audience(self, title: str, description: str) -> str:
        text = f"{title} {description}".lower()
        if 'children' in text or 'kids' in text or 'youth' in text:
            return 'children'
        if 'family' in text:
            return 'family-friendly'
        if 'adult' in text or 'mature' in text:
            return 'adult-oriented'
        return 'all-ages'

    def _infer_ticket_required(self, cost: Optional[str]) -> bool:
        if not cost:
            return False
        lowered = cost.lower()
        return not any(marker in lowered for marker in self.FREE_MARKERS)

    def _extract_subcategory(self, categories: List[Category]) -> Optional[str]:
        for cat in categories:
            if cat.parent > 0:
                return cat.name
        return None

    def _extract_series(self, title: str, description: str) -> Optional[str]:
        title_lower = title.lower()
        description_lower = description.lower()
        for pattern in self.SERIES_PATTERNS:
            if pattern in title_lower or pattern in description_lower:
                return pattern.title()
        return None

    def _extract_presenter(self, title: str) -> Optional[str]:
        for pattern in self.PRESENTER_PATTERNS:
            match = pattern.search(title)
            if match:
                return match.group(1).strip()
        return None

    def _extract_discipline(self, categories: List[Category]) -> Optional[str]:
        names = [cat.name.lower() for cat in categories]
        for keyword, discipline in self.DISCIPLINES:
            if any(keyword in name for name in names):
                return discipline
        return None

    def _assess_confidence(self, api_event: Dict[str, Any], title: str, description: str) -> str:
        explicit = api_event.get('confidence')
        if explicit in CONFIDENCE_LEVELS:
            return explicit

        if self.source == 'fallback':
            return 'placeholder'

        text = f"{title} {description}".lower()
        if re.search(r'\btba\b', text) or 'to be announced' in text:
            return 'TBA'
        if 'tentative' in text:
            return 'tentative'
        if 'placeholder' in text:
            return 'placeholder'
        return 'confirmed'
