"""Field-level change tracking between stored and freshly normalized events."""
import copy
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from processor.models import Category, Event, EventChange, EventImage, Venue


def _identity(value: Any) -> Any:
    return value


def _venue_to_plain(value: Optional[Venue]) -> Optional[Dict[str, Any]]:
    return asdict(value) if value is not None else None


def _venue_from_plain(value: Optional[Dict[str, Any]]) -> Optional[Venue]:
    if value is None:
        return None
    return Venue(
        id=int(value['id']),
        name=value['name'],
        address=value.get('address'),
        show_map=bool(value.get('show_map', False))
    )


def _categories_to_plain(value: List[Category]) -> List[Dict[str, Any]]:
    return [asdict(cat) for cat in value]


def _categories_from_plain(value: Optional[List[Dict[str, Any]]]) -> List[Category]:
    return [
        Category(
            id=int(cat['id']),
            name=cat['name'],
            slug=cat['slug'],
            taxonomy=cat.get('taxonomy', ''),
            parent=int(cat.get('parent') or 0)
        )
        for cat in (value or [])
    ]


def _image_to_plain(value: Optional[EventImage]) -> Optional[Dict[str, Any]]:
    return asdict(value) if value is not None else None


def _image_from_plain(value: Optional[Dict[str, Any]]) -> Optional[EventImage]:
    if value is None:
        return None
    return EventImage(url=value['url'], alt=value.get('alt'), sizes=dict(value.get('sizes') or {}))


def _optional_int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


Codec = Tuple[Callable[[Any], Any], Callable[[Any], Any]]

# Compared in this order; change logs are emitted in the same order
TRACKED_FIELDS: Dict[str, Codec] = {
    'id': (_identity, int),
    'uid': (_identity, _identity),
    'title': (_identity, _identity),
    'description': (_identity, _identity),
    'start_date': (_identity, _identity),
    'end_date': (_identity, _identity),
    'timezone': (_identity, _identity),
    'venue': (_venue_to_plain, _venue_from_plain),
    'location': (_identity, _identity),
    'categories': (_categories_to_plain, _categories_from_plain),
    'category': (_identity, _identity),
    'tags': (list, list),
    'cost': (_identity, _identity),
    'url': (_identity, _identity),
    'image': (_image_to_plain, _image_from_plain),
    'status': (_identity, _identity),
    'featured': (_identity, bool),
    'day_of_week': (_identity, int),
    'week': (_identity, _optional_int),
    'audience': (_identity, _identity),
    'ticket_required': (_identity, bool),
    'subcategory': (_identity, _identity),
    'series': (_identity, _identity),
    'presenter': (_identity, _identity),
    'discipline': (_identity, _identity),
    'confidence': (_identity, _identity),
    'sync_status': (_identity, _identity),
    'source': (_identity, _identity),
}


def value_to_plain(field_name: str, value: Any) -> Any:
    """Convert a tracked field's value to a JSON-compatible form."""
    to_plain, _ = TRACKED_FIELDS[field_name]
    return to_plain(value) if value is not None else None


def value_from_plain(field_name: str, value: Any) -> Any:
    """Rebuild a tracked field's typed value from its JSON-compatible form."""
    _, from_plain = TRACKED_FIELDS[field_name]
    return from_plain(value) if value is not None else None


def diff(
    previous: Optional[Event],
    current: Event,
    source: Optional[str] = None,
    now: Optional[datetime] = None
) -> List[EventChange]:
    """
    Compare two versions of an event field by field.

    Args:
        previous: Stored event, or None if the event is new
        current: Freshly normalized event
        source: Provenance tag recorded on each change (default: current.source)
        now: Timestamp for the changes (default: current UTC time)

    Returns:
        Changes in TRACKED_FIELDS order; empty when previous is None or nothing differs
    """
    if previous is None:
        return []

    timestamp = now or datetime.now(timezone.utc)
    change_source = source or current.source
    changes = []

    for field_name in TRACKED_FIELDS:
        old_value = getattr(previous, field_name)
        new_value = getattr(current, field_name)
        if old_value != new_value:
            changes.append(EventChange(
                timestamp=timestamp,
                field=field_name,
                old_value=copy.deepcopy(old_value),
                new_value=copy.deepcopy(new_value),
                source=change_source
            ))

    return changes
