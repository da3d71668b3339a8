"""Date and timezone helpers shared by the normalizer, filter and exporter."""
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_TIMEZONE = 'America/New_York'

# Formats the upstream feed has been seen to use besides strict ISO 8601
FALLBACK_FORMATS = [
    '%Y-%m-%d %H:%M:%S',
    '%Y-%m-%d %H:%M',
    '%Y-%m-%dT%H:%M',
    '%Y-%m-%d',
]


def get_zone(tz_name: str) -> ZoneInfo:
    """
    Resolve an IANA timezone name.

    Raises:
        ValueError: If the name is empty, not a string, or unknown
    """
    if not tz_name:
        raise ValueError("Timezone name is empty")
    if not isinstance(tz_name, str):
        raise ValueError(f"Timezone name must be a string, got {type(tz_name).__name__}")
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {tz_name}") from e


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO 8601 datetime string, keeping any offset it carries.

    Args:
        value: Datetime string such as "2025-07-01T10:00:00" or "2025-07-01 10:00:00"

    Returns:
        datetime (naive or aware) or None if parsing fails
    """
    if not value or not isinstance(value, str):
        return None

    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'

    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass

    for fmt in FALLBACK_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    return None


def localize(value: str, tz_name: str) -> datetime:
    """
    Parse an event timestamp and express it in the given timezone.

    Naive timestamps are wall-clock times in ``tz_name``.

    Raises:
        ValueError: If the timestamp or timezone cannot be parsed
    """
    zone = get_zone(tz_name)
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValueError(f"Unparsable datetime: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=zone)
    return parsed.astimezone(zone)


def js_weekday(moment: datetime) -> int:
    """Day of week with 0=Sunday .. 6=Saturday."""
    return (moment.weekday() + 1) % 7
