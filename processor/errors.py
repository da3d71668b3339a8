"""Error types raised by the sync and export pipeline."""
from typing import Optional


class CalendarSyncError(Exception):
    """Base class for pipeline errors."""


class NormalizationError(CalendarSyncError):
    """Raised when a source event is missing or has an unparsable required field."""

    def __init__(self, field: str, source_id: Optional[int], reason: str = 'missing or invalid'):
        self.field = field
        self.source_id = source_id
        self.reason = reason
        super().__init__(
            f"Event {source_id if source_id is not None else '<unknown>'}: "
            f"field '{field}' is {reason}"
        )


class TransportError(CalendarSyncError):
    """Raised when the upstream API or storage is unreachable or returns an error."""


class FilterValidationError(CalendarSyncError):
    """Raised when a filter references an unknown dimension or a value of the wrong type."""


class ExportError(CalendarSyncError):
    """Raised when a calendar cannot be rendered in the requested format."""
