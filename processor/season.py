"""Season week calculation.

The season runs nine weeks, starting on the fourth Sunday of June.
"""
import logging
from datetime import date, timedelta
from functools import lru_cache
from typing import Optional, Tuple

from processor.models import DateRange, SeasonWeek

logger = logging.getLogger(__name__)

SEASON_WEEKS = 9
FALLBACK_ANCHOR = date(2025, 6, 22)


def _fourth_sunday_of_june(year: int) -> Optional[date]:
    current = date(year, 6, 1)
    sundays = 0
    while current.month == 6:
        if current.weekday() == 6:
            sundays += 1
            if sundays == 4:
                return current
        current += timedelta(days=1)
    return None


def _short_day(day: date) -> str:
    return f"{day.strftime('%b')} {day.day}"


@lru_cache(maxsize=32)
def compute_season_weeks(year: int) -> Tuple[SeasonWeek, ...]:
    """
    Compute the nine season weeks for a year.

    Args:
        year: Season year

    Returns:
        Tuple of 9 SeasonWeek objects, week 1 first
    """
    anchor = _fourth_sunday_of_june(year)
    if anchor is None:
        logger.warning(f"Could not find 4th Sunday of June {year}, using {FALLBACK_ANCHOR}")
        anchor = FALLBACK_ANCHOR

    weeks = []
    for i in range(SEASON_WEEKS):
        start = anchor + timedelta(days=7 * i)
        end = start + timedelta(days=6)
        weeks.append(SeasonWeek(
            number=i + 1,
            start=start,
            end=end,
            label=f"Week {i + 1} ({_short_day(start)} - {_short_day(end)})"
        ))
    return tuple(weeks)


def week_for_date(day: date) -> Optional[int]:
    """Return the season week containing ``day``, or None outside the season."""
    for week in compute_season_weeks(day.year):
        if week.contains(day):
            return week.number
    return None


def season_date_range(year: int) -> DateRange:
    weeks = compute_season_weeks(year)
    return DateRange(start=weeks[0].start, end=weeks[-1].end)
