"""Calendar generation: stored events, filtered and exported per request."""
import logging
from typing import List, Optional

from exporter.calendar_exporter import CalendarExporter
from processor.dates import localize
from processor.errors import FilterValidationError
from processor.filter_engine import EventFilter, filter_events
from processor.models import CalendarRequest, CalendarResponse, Event

logger = logging.getLogger(__name__)

DEFAULT_INLINE_LIMIT = 1024 * 1024


def _expand_series(selected: List[Event], candidates: List[Event]) -> List[Event]:
    """Add every candidate sharing a series with one of the selected events."""
    series = {event.series for event in selected if event.series}
    if not series:
        return selected
    chosen = {event.uid for event in selected}
    return selected + [
        event for event in candidates
        if event.series in series and event.uid not in chosen
    ]


def generate_calendar(
    request: CalendarRequest,
    store,
    exporter: Optional[CalendarExporter] = None,
    export_bucket=None,
    inline_limit: int = DEFAULT_INLINE_LIMIT
) -> CalendarResponse:
    """
    Build a calendar for a generation request.

    Args:
        request: Filters, output format and timezone
        store: Event store offering scan_events
        exporter: Renderer (default: CalendarExporter())
        export_bucket: Optional ExportBucket for bodies over ``inline_limit`` bytes
        inline_limit: Largest body returned inline when a bucket is configured

    Returns:
        CalendarResponse; success=False for invalid filters or formats

    Raises:
        TransportError: If the store cannot be read
    """
    exporter = exporter or CalendarExporter()

    try:
        event_filter = EventFilter.from_dict(request.filters)
    except FilterValidationError as e:
        logger.warning(f"Rejected calendar request: {e}")
        return CalendarResponse(success=False, error=str(e))

    candidates = [event for event in store.scan_events() if not event.is_deleted]
    selected = filter_events(candidates, event_filter)
    if request.include_series:
        selected = _expand_series(selected, candidates)
    selected.sort(key=lambda event: (localize(event.start_date, event.timezone), event.uid))

    logger.info(f"Found {len(selected)} events after filtering")
    response = exporter.export(selected, request.format, request.timezone)

    if not response.success or export_bucket is None or response.data is None:
        return response
    if len(response.data.encode('utf-8')) <= inline_limit:
        return response

    download_url = export_bucket.publish(response.data, request.format)
    return CalendarResponse(success=True, download_url=download_url)
