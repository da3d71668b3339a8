"""Unit tests for SyncOrchestrator."""
import json
import logging
from datetime import date, datetime, timezone
from unittest.mock import Mock, patch

import pytest

from lambda_function import JsonFormatter
from processor.errors import TransportError
from processor.event_processor import EventNormalizer, generate_uid
from processor.models import ApiPage, DateRange
from processor.season import season_date_range
from processor.sync_orchestrator import SyncOrchestrator
from storage.dynamodb_manager import DynamoDBManager
from storage.sync_status import SyncStatusStore


SEASON = season_date_range(2025)
NOW = datetime(2025, 7, 2, 8, 0, 0, tzinfo=timezone.utc)


class FakeFeed:
    """Serves fixed pages of raw events, optionally failing on one page."""

    def __init__(self, *pages, fail_on_page=None):
        self.pages = pages
        self.fail_on_page = fail_on_page
        self.ranges = []

    def iter_pages(self, date_range, per_page=None):
        self.ranges.append(date_range)
        for number, events in enumerate(self.pages, start=1):
            if number == self.fail_on_page:
                raise TransportError(f"Request failed after 3 attempts: HTTP 500 on page {number}")
            yield ApiPage(page=number, events=list(events), total=0, total_pages=len(self.pages))


@pytest.fixture
def store(dynamodb_table):
    return DynamoDBManager(dynamodb_table.name)


@pytest.fixture
def run_sync(store):
    """Run one sync over the 2025 season against the given pages."""
    def run(*pages, fail_on_page=None, threshold=1, should_abort=None):
        orchestrator = SyncOrchestrator(
            FakeFeed(*pages, fail_on_page=fail_on_page),
            EventNormalizer(),
            store,
            missing_sync_threshold=threshold,
            clock=lambda: NOW
        )
        return orchestrator.sync(SEASON, should_abort=should_abort)
    return run


def uid(event_id):
    return generate_uid('events-calendar-api', event_id)


class TestSync:
    """Test cases for SyncOrchestrator.sync."""

    def test_first_sync_creates_events(self, run_sync, store, api_event):
        result = run_sync([api_event(), api_event(id=43, title='Other')])

        assert result.success is True
        assert result.events_processed == 2
        assert result.events_created == 2
        assert result.events_updated == 0
        assert result.events_deleted == 0
        assert result.errors == ()
        assert store.get_event(uid(42)).title == 'A'
        assert store.get_event(uid(42)).change_log == []

    def test_resync_unchanged_feed_is_a_no_op(self, run_sync, api_event):
        pages = ([api_event(), api_event(id=43, title='Other')],)
        run_sync(*pages)

        result = run_sync(*pages)

        assert result.success is True
        assert result.events_processed == 2
        assert result.events_created == 0
        assert result.events_updated == 0
        assert result.events_deleted == 0

    def test_title_change_is_logged_once(self, run_sync, store, api_event):
        run_sync([api_event(title='A')])
        created_at = store.get_event(uid(42)).created_at

        result = run_sync([api_event(title='B')])

        stored = store.get_event(uid(42))
        assert result.events_updated == 1
        assert result.events_created == 0
        assert stored.title == 'B'
        assert len(stored.change_log) == 1
        change = stored.change_log[0]
        assert (change.field, change.old_value, change.new_value) == ('title', 'A', 'B')
        assert change.source == 'events-calendar-api'
        assert change.timestamp == NOW
        assert stored.last_modified == NOW.isoformat()
        assert stored.created_at == created_at

    def test_change_log_accumulates(self, run_sync, store, api_event):
        run_sync([api_event(title='A')])
        run_sync([api_event(title='B')])
        run_sync([api_event(title='B', cost='$10')])

        fields = [change.field for change in store.get_event(uid(42)).change_log]

        assert fields[0] == 'title'
        assert 'cost' in fields[1:]

    def test_normalization_error_is_not_fatal(self, run_sync, store, api_event):
        result = run_sync([api_event(), api_event(id=43, title=''), api_event(id=44)])

        assert result.success is True
        assert result.events_created == 2
        assert len(result.errors) == 1
        assert '43' in result.errors[0]
        assert store.get_event(uid(43)) is None

    def test_non_object_entry_is_skipped(self, run_sync, store, api_event):
        result = run_sync([api_event(), None, api_event(id=44)])

        assert result.success is True
        assert result.events_created == 2
        assert len(result.errors) == 1
        assert "field 'event'" in result.errors[0]

    def test_sync_logs_at_info_level(self, run_sync, api_event, caplog):
        with caplog.at_level(logging.INFO):
            result = run_sync([api_event()])

        assert result.success is True
        [record] = [r for r in caplog.records if r.getMessage().startswith('Sync completed')]
        payload = json.loads(JsonFormatter().format(record))
        assert payload['events_created'] == 1
        assert payload['error_count'] == 0

    def test_invalid_upstream_event_is_not_soft_deleted(self, run_sync, store, api_event):
        run_sync([api_event(), api_event(id=43)])

        result = run_sync([api_event(), api_event(id=43, start_date='garbage')])

        assert result.events_deleted == 0
        assert store.get_event(uid(43)).sync_status == 'synced'

    def test_transport_failure_keeps_processed_pages(self, run_sync, store, api_event):
        run_sync([api_event(id=50)])

        result = run_sync([api_event(id=42)], [api_event(id=43)], fail_on_page=2)

        assert result.success is False
        assert result.events_created == 1
        assert result.events_deleted == 0
        assert any(error.startswith('Sync failed') for error in result.errors)
        assert store.get_event(uid(42)) is not None
        assert store.get_event(uid(43)) is None
        # No reconciliation after a partial pass
        assert store.get_event(uid(50)).sync_status == 'synced'

    def test_missing_event_is_soft_deleted(self, run_sync, store, api_event):
        run_sync([api_event(), api_event(id=43)])

        result = run_sync([api_event()])

        stored = store.get_event(uid(43))
        assert result.success is True
        assert result.events_deleted == 1
        assert stored is not None
        assert stored.sync_status == 'outdated'
        assert stored.is_deleted is True
        assert stored.change_log[-1].field == 'sync_status'
        assert stored.change_log[-1].new_value == 'outdated'

        again = run_sync([api_event()])
        assert again.events_deleted == 0

    def test_soft_deleted_event_is_restored(self, run_sync, store, api_event):
        run_sync([api_event(), api_event(id=43)])
        run_sync([api_event()])

        result = run_sync([api_event(), api_event(id=43)])

        assert result.events_updated == 1
        assert result.events_created == 0
        assert store.get_event(uid(43)).sync_status == 'synced'

    def test_store_failure_during_reconcile_keeps_committed_deletes(self, run_sync, store, api_event):
        run_sync([api_event(), api_event(id=43), api_event(id=44)])
        real_put = store.put_event
        outdated_writes = []

        def flaky_put(event):
            if event.sync_status == 'outdated':
                outdated_writes.append(event.uid)
                if len(outdated_writes) == 2:
                    raise TransportError('Failed to store event: throttled')
            real_put(event)

        with patch.object(store, 'put_event', side_effect=flaky_put):
            result = run_sync([api_event()])

        assert result.success is False
        assert result.events_deleted == 1
        assert any(error.startswith('Sync failed') for error in result.errors)
        statuses = sorted(store.get_event(uid(event_id)).sync_status for event_id in (43, 44))
        assert statuses == ['outdated', 'synced']

    def test_missing_sync_threshold(self, run_sync, store, api_event):
        run_sync([api_event(), api_event(id=43)], threshold=2)

        first = run_sync([api_event()], threshold=2)
        assert first.events_deleted == 0
        assert store.get_event(uid(43)).missed_syncs == 1
        assert store.get_event(uid(43)).sync_status == 'synced'

        second = run_sync([api_event()], threshold=2)
        assert second.events_deleted == 1
        assert store.get_event(uid(43)).sync_status == 'outdated'

    def test_reappearing_event_resets_missed_syncs(self, run_sync, store, api_event):
        run_sync([api_event(), api_event(id=43)], threshold=3)
        run_sync([api_event()], threshold=3)

        result = run_sync([api_event(), api_event(id=43)], threshold=3)

        assert result.events_updated == 0
        assert store.get_event(uid(43)).missed_syncs == 0

    def test_events_from_other_sources_are_left_alone(self, run_sync, store, api_event):
        manual = EventNormalizer(source='manual').normalize(api_event(id=77))
        store.put_event(manual)

        result = run_sync([api_event()])

        assert result.events_deleted == 0
        assert store.get_event(manual.uid).sync_status == 'synced'

    def test_events_outside_range_are_not_reconciled(self, run_sync, store, api_event):
        winter = EventNormalizer().normalize(api_event(
            id=60, start_date='2025-01-10T10:00:00', end_date='2025-01-10T11:00:00'
        ))
        store.put_event(winter)

        result = run_sync([api_event()])

        assert result.events_deleted == 0
        assert store.get_event(winter.uid).sync_status == 'synced'

    def test_concurrent_run_is_rejected(self, run_sync, store, api_event):
        store.acquire_sync_lock(SEASON, 'someone-else')

        result = run_sync([api_event()])

        assert result.success is False
        assert result.events_processed == 0
        assert 'Another sync is already running' in result.errors[0]
        assert store.get_event(uid(42)) is None

    def test_overlapping_run_is_rejected(self, store, api_event):
        store.acquire_sync_lock(SEASON, 'season-run')
        feed = FakeFeed([api_event()])
        orchestrator = SyncOrchestrator(feed, EventNormalizer(), store, clock=lambda: NOW)

        result = orchestrator.sync_upcoming(date(2025, 7, 1))

        assert result.success is False
        assert feed.ranges == []
        assert store.get_event(uid(42)) is None

    def test_lock_is_released_after_run(self, run_sync, store, api_event):
        run_sync([api_event()])

        assert store.acquire_sync_lock(SEASON, 'next-run') is True

    def test_abort_between_pages(self, run_sync, store, api_event):
        run_sync([api_event(id=50)])
        answers = iter([False, True])

        result = run_sync([api_event(id=42)], [api_event(id=43)], should_abort=lambda: next(answers))

        assert result.success is False
        assert result.events_created == 1
        assert result.errors == ('Sync aborted after page 1',)
        assert store.get_event(uid(43)) is None
        assert store.get_event(uid(50)).sync_status == 'synced'

    def test_result_to_dict(self, run_sync, api_event):
        result = run_sync([api_event()]).to_dict()

        assert result['success'] is True
        assert result['eventsCreated'] == 1
        assert result['eventsProcessed'] == 1
        assert isinstance(result['duration'], int)


class TestSyncWindows:
    """Test cases for the preset sync windows."""

    def make(self, store):
        feed = FakeFeed([])
        return feed, SyncOrchestrator(feed, EventNormalizer(), store, clock=lambda: NOW)

    def test_sync_season(self, store):
        feed, orchestrator = self.make(store)

        orchestrator.sync_season(2025)

        assert feed.ranges == [DateRange(start=date(2025, 6, 22), end=date(2025, 8, 23))]

    def test_sync_incremental(self, store):
        feed, orchestrator = self.make(store)

        orchestrator.sync_incremental()

        assert feed.ranges == [DateRange(start=date(2025, 6, 25), end=date(2025, 8, 1))]

    def test_sync_upcoming(self, store):
        feed, orchestrator = self.make(store)

        orchestrator.sync_upcoming(date(2025, 7, 10))

        assert feed.ranges == [DateRange(start=date(2025, 7, 10), end=date(2025, 7, 17))]


class TestSyncStatusRecording:
    """Test cases for per-run status records."""

    @pytest.fixture
    def status_store(self, dynamodb_table):
        return SyncStatusStore(dynamodb_table.name)

    def make(self, store, status_store, *pages):
        return SyncOrchestrator(
            FakeFeed(*pages), EventNormalizer(), store, status_store=status_store, clock=lambda: NOW
        )

    def test_completed_run_is_recorded(self, store, status_store, api_event):
        self.make(store, status_store, [api_event()]).sync_season(2025)

        [record] = status_store.recent()
        assert record['type'] == 'full'
        assert record['status'] == 'completed'
        assert record['range'] == SEASON.key
        assert record['result']['eventsCreated'] == 1
        assert record['endTime'] is not None
        assert status_store.active() == []

    def test_rejected_run_is_recorded_as_failed(self, store, status_store, api_event):
        store.acquire_sync_lock(SEASON, 'season-run')

        self.make(store, status_store, [api_event()]).sync_upcoming(date(2025, 7, 1))

        [record] = status_store.recent()
        assert record['type'] == 'hourly'
        assert record['status'] == 'failed'
        assert 'Another sync is already running' in record['error']

    def test_status_records_are_not_events(self, store, status_store, api_event):
        self.make(store, status_store, [api_event()]).sync(SEASON)

        assert [event.id for event in store.scan_events()] == [42]

    def test_status_store_failure_does_not_fail_the_sync(self, store, api_event):
        status_store = Mock()
        status_store.create.side_effect = TransportError('DynamoDB unavailable')

        result = self.make(store, status_store, [api_event()]).sync(SEASON)

        assert result.success is True
        status_store.complete.assert_not_called()
