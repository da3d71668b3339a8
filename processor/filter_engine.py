"""Multi-dimensional event filtering.

A filter is the AND of its present dimensions. Within a value-set dimension
any listed value may match.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from processor.dates import localize
from processor.errors import FilterValidationError
from processor.models import Event

logger = logging.getLogger(__name__)

# (start hour inclusive, end hour exclusive)
TIME_OF_DAY_HOURS = {
    'morning': (0, 12),
    'afternoon': (12, 17),
    'evening': (17, 24),
}

STRING_DIMENSIONS = (
    'venue', 'category', 'tags', 'series', 'discipline',
    'audience', 'presenter', 'location',
)
INTEGER_DIMENSIONS = ('dayOfWeek', 'week')
DIMENSIONS = STRING_DIMENSIONS + INTEGER_DIMENSIONS + ('timeOfDay', 'duration', 'ticketRequired')


@dataclass(frozen=True)
class ValueSetConstraint:
    """Event matches if its attribute equals any of ``values``."""
    dimension: str
    values: FrozenSet[Any]


@dataclass(frozen=True)
class DurationRange:
    """Inclusive duration bounds in minutes; either bound may be open."""
    min_minutes: Optional[float] = None
    max_minutes: Optional[float] = None


@dataclass(frozen=True)
class TicketRequirement:
    required: bool


Constraint = Union[ValueSetConstraint, DurationRange, TicketRequirement]


@dataclass(frozen=True)
class EventFilter:
    """Parsed filter: one constraint per constrained dimension."""
    constraints: Tuple[Constraint, ...] = ()

    @classmethod
    def from_dict(cls, payload: Optional[Dict[str, Any]]) -> 'EventFilter':
        """
        Parse a sparse filter dict as sent by clients.

        Args:
            payload: Mapping of dimension name to selected values, e.g.
                {"category": ["lecture"], "duration": {"min": 30, "max": 90}}

        Returns:
            EventFilter with absent and empty dimensions left unconstrained

        Raises:
            FilterValidationError: On unknown dimensions or ill-typed values
        """
        if not payload:
            return cls()
        if not isinstance(payload, dict):
            raise FilterValidationError("Filter must be an object")

        constraints: List[Constraint] = []
        for dimension, value in payload.items():
            if dimension not in DIMENSIONS:
                raise FilterValidationError(f"Unknown filter dimension: {dimension}")
            if value is None:
                continue

            if dimension == 'duration':
                constraints.append(_parse_duration(value))
            elif dimension == 'ticketRequired':
                if not isinstance(value, bool):
                    raise FilterValidationError(f"ticketRequired must be a boolean, got {value!r}")
                constraints.append(TicketRequirement(required=value))
            else:
                values = _parse_values(dimension, value)
                if values:
                    constraints.append(ValueSetConstraint(dimension=dimension, values=values))

        return cls(constraints=tuple(constraints))


def _parse_duration(value: Any) -> DurationRange:
    if not isinstance(value, dict):
        raise FilterValidationError(f"duration must be an object with min/max, got {value!r}")
    bounds = []
    for key in ('min', 'max'):
        bound = value.get(key)
        if bound is not None and (isinstance(bound, bool) or not isinstance(bound, (int, float))):
            raise FilterValidationError(f"duration.{key} must be a number, got {bound!r}")
        bounds.append(bound)
    min_minutes, max_minutes = bounds
    if min_minutes is not None and max_minutes is not None and min_minutes > max_minutes:
        raise FilterValidationError(f"duration.min {min_minutes} exceeds duration.max {max_minutes}")
    return DurationRange(min_minutes=min_minutes, max_minutes=max_minutes)


def _parse_values(dimension: str, value: Any) -> FrozenSet[Any]:
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise FilterValidationError(f"{dimension} must be a list, got {value!r}")

    if dimension in INTEGER_DIMENSIONS:
        parsed = set()
        for item in value:
            if isinstance(item, bool):
                raise FilterValidationError(f"{dimension} values must be numeric, got {item!r}")
            try:
                parsed.add(int(item))
            except (TypeError, ValueError):
                raise FilterValidationError(
                    f"{dimension} values must be numeric, got {item!r}"
                ) from None
        return frozenset(parsed)

    parsed = set()
    for item in value:
        if not isinstance(item, str):
            raise FilterValidationError(f"{dimension} values must be strings, got {item!r}")
        parsed.add(item.strip().lower())

    if dimension == 'timeOfDay':
        unknown = parsed - set(TIME_OF_DAY_HOURS)
        if unknown:
            raise FilterValidationError(f"Unknown timeOfDay values: {sorted(unknown)}")
    return frozenset(parsed)


def _lower(value: Optional[str]) -> Optional[str]:
    return value.lower() if value else None


def _start(event: Event) -> datetime:
    return localize(event.start_date, event.timezone)


def _duration_minutes(event: Event) -> float:
    # Same-zone aware datetimes subtract as wall time, so compare in UTC
    start = _start(event).astimezone(timezone.utc)
    end = localize(event.end_date, event.timezone).astimezone(timezone.utc)
    return (end - start).total_seconds() / 60


def _match_values(event: Event, constraint: ValueSetConstraint) -> bool:
    dimension = constraint.dimension
    values = constraint.values

    if dimension == 'venue':
        if event.venue is None:
            return False
        return event.venue.name.lower() in values or str(event.venue.id) in values

    if dimension == 'category':
        candidates = {event.category.lower()}
        for cat in event.categories:
            candidates.add(cat.slug.lower())
            candidates.add(cat.name.lower())
        return bool(candidates & values)

    if dimension == 'tags':
        return bool({tag.lower() for tag in event.tags} & values)

    if dimension == 'dayOfWeek':
        return event.day_of_week in values

    if dimension == 'week':
        return event.week is not None and event.week in values

    if dimension == 'timeOfDay':
        hour = _start(event).hour
        return any(
            TIME_OF_DAY_HOURS[name][0] <= hour < TIME_OF_DAY_HOURS[name][1]
            for name in values
        )

    # series, discipline, audience, presenter, location
    attribute = _lower(getattr(event, dimension))
    return attribute is not None and attribute in values


def _match(event: Event, constraint: Constraint) -> bool:
    if isinstance(constraint, ValueSetConstraint):
        return _match_values(event, constraint)
    if isinstance(constraint, DurationRange):
        minutes = _duration_minutes(event)
        if constraint.min_minutes is not None and minutes < constraint.min_minutes:
            return False
        if constraint.max_minutes is not None and minutes > constraint.max_minutes:
            return False
        return True
    if isinstance(constraint, TicketRequirement):
        return event.ticket_required == constraint.required
    raise FilterValidationError(f"Unsupported constraint: {constraint!r}")


def matches(event: Event, event_filter: Union[EventFilter, Dict[str, Any], None]) -> bool:
    """
    Check whether an event satisfies every constrained dimension of a filter.

    Args:
        event: Event to test
        event_filter: EventFilter, or a raw filter dict to be parsed

    Returns:
        True if the event matches (always True for an empty filter)

    Raises:
        FilterValidationError: If a raw filter dict is invalid
    """
    if not isinstance(event_filter, EventFilter):
        event_filter = EventFilter.from_dict(event_filter)
    return all(_match(event, constraint) for constraint in event_filter.constraints)


def filter_events(
    events: Iterable[Event],
    event_filter: Union[EventFilter, Dict[str, Any], None]
) -> List[Event]:
    """Return the events matching ``event_filter``, preserving order."""
    if not isinstance(event_filter, EventFilter):
        event_filter = EventFilter.from_dict(event_filter)
    matched = [event for event in events if matches(event, event_filter)]
    logger.debug(f"Filter kept {len(matched)} events with {len(event_filter.constraints)} constraints")
    return matched
