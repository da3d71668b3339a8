"""Synchronization of the upstream events feed into the event store."""
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional, Set

from feed.events_calendar_api import EventsCalendarApiClient
from processor.change_tracker import diff
from processor.errors import NormalizationError, TransportError
from processor.event_processor import EventNormalizer, generate_uid
from processor.models import DateRange, EventChange, SyncResult
from processor.season import season_date_range

logger = logging.getLogger(__name__)


@dataclass
class _SyncCounters:
    processed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: List[str] = field(default_factory=list)
    observed: Set[str] = field(default_factory=set)


class SyncOrchestrator:
    """Fetches, normalizes and reconciles feed events against the store."""

    INCREMENTAL_DAYS_BACK = 7
    INCREMENTAL_DAYS_AHEAD = 30
    UPCOMING_DAYS = 7

    def __init__(
        self,
        api_client: EventsCalendarApiClient,
        normalizer: EventNormalizer,
        store,
        missing_sync_threshold: int = 1,
        lock_ttl_seconds: int = 900,
        status_store=None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            api_client: Upstream feed client
            normalizer: Maps feed records to Events
            store: Event store offering get_event, put_event, scan_events,
                acquire_sync_lock and release_sync_lock
            missing_sync_threshold: Consecutive syncs an event may be absent
                from the feed before it is soft-deleted
            lock_ttl_seconds: Lifetime of the per-range run lock
            status_store: Optional SyncStatusStore recording each run
            clock: Returns the current time; injectable for tests
        """
        self.api_client = api_client
        self.normalizer = normalizer
        self.store = store
        self.missing_sync_threshold = max(1, missing_sync_threshold)
        self.lock_ttl_seconds = lock_ttl_seconds
        self.status_store = status_store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def sync(
        self,
        date_range: DateRange,
        per_page: Optional[int] = None,
        should_abort: Optional[Callable[[], bool]] = None,
        sync_type: str = 'manual'
    ) -> SyncResult:
        """
        Sync all feed events in a date range.

        Pages already processed stay committed when a later page fails or
        the run is aborted; missing events are only reconciled after a
        complete pass over the feed.

        Args:
            date_range: Days to sync
            per_page: Page size (default: the client's)
            should_abort: Checked between pages; returning True stops the run
            sync_type: Label recorded on the run's status record

        Returns:
            SyncResult summarizing the run
        """
        started = time.monotonic()
        counters = _SyncCounters()
        success = False
        owner = uuid.uuid4().hex

        logger.info(f"Starting {sync_type} sync for date range: {date_range.start} to {date_range.end}")
        sync_id = self._record_start(sync_type, date_range)

        try:
            locked = self.store.acquire_sync_lock(date_range, owner, self.lock_ttl_seconds)
        except TransportError as e:
            counters.errors.append(f"Sync failed: {e}")
            return self._finish(sync_id, False, counters, started)

        if not locked:
            counters.errors.append(f"Another sync is already running for {date_range.key}")
            return self._finish(sync_id, False, counters, started)

        try:
            if self._process_pages(date_range, per_page, should_abort, counters):
                self._reconcile(date_range, counters)
                success = True
        except TransportError as e:
            logger.error(f"Sync aborted: {e}", exc_info=True)
            counters.errors.append(f"Sync failed: {e}")
        finally:
            self.store.release_sync_lock(date_range, owner)

        result = self._finish(sync_id, success, counters, started)
        logger.info(
            f"Sync completed in {result.duration}ms",
            extra={
                'success': result.success,
                'events_processed': result.events_processed,
                'events_created': result.events_created,
                'events_updated': result.events_updated,
                'events_deleted': result.events_deleted,
                'error_count': len(result.errors)
            }
        )
        return result

    def sync_season(self, year: int) -> SyncResult:
        """Sync every week of the given season."""
        logger.info(f"Starting full season sync for {year}")
        return self.sync(season_date_range(year), sync_type='full')

    def sync_incremental(self, today: Optional[date] = None) -> SyncResult:
        """Sync from a week ago to a month ahead."""
        today = today or self.clock().date()
        return self.sync(DateRange(
            start=today - timedelta(days=self.INCREMENTAL_DAYS_BACK),
            end=today + timedelta(days=self.INCREMENTAL_DAYS_AHEAD)
        ), sync_type='incremental')

    def sync_upcoming(self, today: Optional[date] = None) -> SyncResult:
        """Sync the next seven days."""
        today = today or self.clock().date()
        return self.sync(
            DateRange(start=today, end=today + timedelta(days=self.UPCOMING_DAYS)),
            sync_type='hourly'
        )

    def _process_pages(
        self,
        date_range: DateRange,
        per_page: Optional[int],
        should_abort: Optional[Callable[[], bool]],
        counters: _SyncCounters
    ) -> bool:
        """
        Process every feed page in fetch order.

        Returns:
            True if pagination ran to completion

        Raises:
            TransportError: If a page or a store call fails
        """
        last_page = 0
        for page in self.api_client.iter_pages(date_range, per_page=per_page):
            if should_abort is not None and should_abort():
                logger.warning(f"Sync aborted after page {last_page}")
                counters.errors.append(f"Sync aborted after page {last_page}")
                return False

            for raw_event in page.events:
                self._process_event(raw_event, counters)
            last_page = page.page

        return True

    def _process_event(self, raw_event: dict, counters: _SyncCounters) -> None:
        source = self.normalizer.source
        try:
            candidate = self.normalizer.normalize(raw_event)
        except NormalizationError as e:
            logger.warning(f"Skipping event: {e}")
            counters.errors.append(str(e))
            if e.source_id is not None:
                # Still present upstream, so not a reconciliation candidate
                counters.observed.add(generate_uid(source, e.source_id))
            return

        counters.observed.add(candidate.uid)
        existing = self.store.get_event(candidate.uid)
        counters.processed += 1

        if existing is None:
            self.store.put_event(candidate)
            counters.created += 1
            logger.info(f"Created new event: {candidate.title} (ID: {candidate.id})")
            return

        event = self.normalizer.normalize(raw_event, existing)
        now = self.clock()
        changes = diff(existing, event, source=source, now=now)

        if not changes:
            if existing.missed_syncs:
                self.store.put_event(replace(existing, missed_syncs=0))
            return

        stamp = now.isoformat()
        self.store.put_event(replace(
            event,
            change_log=existing.change_log + changes,
            last_modified=stamp,
            updated_at=stamp
        ))
        counters.updated += 1
        logger.info(
            f"Updated event: {event.title} (ID: {event.id}), "
            f"changed: {', '.join(change.field for change in changes)}"
        )

    def _reconcile(self, date_range: DateRange, counters: _SyncCounters) -> None:
        """
        Soft-delete stored events in the range that the feed no longer lists.

        Each committed soft delete is counted as it is written.
        """
        source = self.normalizer.source

        for event in self.store.scan_events(date_range):
            if event.uid in counters.observed or event.is_deleted or event.source != source:
                continue

            missed = event.missed_syncs + 1
            if missed < self.missing_sync_threshold:
                self.store.put_event(replace(event, missed_syncs=missed))
                continue

            now = self.clock()
            stamp = now.isoformat()
            change = EventChange(
                timestamp=now,
                field='sync_status',
                old_value=event.sync_status,
                new_value='outdated',
                source=source
            )
            self.store.put_event(replace(
                event,
                sync_status='outdated',
                missed_syncs=missed,
                change_log=event.change_log + [change],
                last_modified=stamp,
                updated_at=stamp
            ))
            counters.deleted += 1
            logger.info(f"Marked event outdated: {event.title} (ID: {event.id})")

        logger.info(f"Reconciliation for {date_range.key}: {counters.deleted} events marked outdated")

    def _result(self, success: bool, counters: _SyncCounters, started: float) -> SyncResult:
        return SyncResult(
            success=success,
            events_processed=counters.processed,
            events_created=counters.created,
            events_updated=counters.updated,
            events_deleted=counters.deleted,
            errors=tuple(counters.errors),
            duration=int((time.monotonic() - started) * 1000)
        )

    def _finish(
        self,
        sync_id: Optional[str],
        success: bool,
        counters: _SyncCounters,
        started: float
    ) -> SyncResult:
        result = self._result(success, counters, started)
        if self.status_store is not None and sync_id is not None:
            try:
                self.status_store.complete(sync_id, result)
            except TransportError as e:
                logger.warning(f"Could not record outcome of sync {sync_id}: {e}")
        return result

    def _record_start(self, sync_type: str, date_range: DateRange) -> Optional[str]:
        if self.status_store is None:
            return None
        try:
            return self.status_store.create(sync_type, date_range)
        except TransportError as e:
            logger.warning(f"Could not record start of {sync_type} sync: {e}")
            return None
