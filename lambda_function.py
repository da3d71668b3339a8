"""AWS Lambda handlers for season calendar sync and calendar generation."""
import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict

from exporter.calendar_exporter import CalendarExporter
from exporter.calendar_service import DEFAULT_INLINE_LIMIT, generate_calendar
from feed.events_calendar_api import EventsCalendarApiClient
from processor.errors import TransportError
from processor.event_processor import EventNormalizer
from processor.models import CalendarRequest, DateRange
from processor.sync_orchestrator import SyncOrchestrator
from storage.dynamodb_manager import DynamoDBManager
from storage.export_bucket import ExportBucket
from storage.sync_status import SyncStatusStore


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    RESERVED = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including any ``extra`` fields."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in self.RESERVED and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(body)
    }


def _error_response(status_code: int, message: str, error: Exception, started: float) -> Dict[str, Any]:
    return _response(status_code, {
        'message': message,
        'error': str(error),
        'error_type': type(error).__name__,
        'duration_seconds': round(time.time() - started, 2)
    })


def build_orchestrator() -> SyncOrchestrator:
    """Wire the sync pipeline from environment configuration."""
    api_client = EventsCalendarApiClient(
        base_url=os.environ.get('API_BASE_URL') or None,
        timeout=int(os.environ.get('TIMEOUT_SECONDS', '30')),
        per_page=int(os.environ.get('PER_PAGE', '50'))
    )
    normalizer = EventNormalizer(
        default_timezone=os.environ.get('DEFAULT_TIMEZONE', 'America/New_York')
    )
    table_name = os.environ.get('TABLE_NAME', 'chq-calendar-events')
    return SyncOrchestrator(
        api_client=api_client,
        normalizer=normalizer,
        store=DynamoDBManager(table_name=table_name),
        missing_sync_threshold=int(os.environ.get('MISSING_SYNC_THRESHOLD', '1')),
        lock_ttl_seconds=int(os.environ.get('LOCK_TTL_SECONDS', '900')),
        status_store=SyncStatusStore(table_name)
    )


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Scheduled sync handler.

    The EventBridge ``detail-type`` picks the scope: "Hourly Sync" covers the
    next seven days, "Weekly Full Sync" the whole season, anything else an
    incremental window. A payload with ``start`` and ``end`` syncs that range.

    Args:
        event: EventBridge event payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and the sync result
    """
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
    logger = logging.getLogger(__name__)

    start_time = time.time()
    event = event or {}
    detail_type = event.get('detail-type', 'default')
    logger.info("Sync execution started", extra={'detail_type': detail_type})

    try:
        orchestrator = build_orchestrator()

        if event.get('start') and event.get('end'):
            try:
                date_range = DateRange.from_strings(event['start'], event['end'])
            except ValueError as e:
                return _error_response(400, 'Invalid date range', e, start_time)
            result = orchestrator.sync(date_range)
        elif detail_type == 'Hourly Sync':
            result = orchestrator.sync_upcoming()
        elif detail_type == 'Weekly Full Sync':
            year = int(os.environ.get('SEASON_YEAR') or datetime.now().year)
            result = orchestrator.sync_season(year)
        else:
            result = orchestrator.sync_incremental()

    except Exception as e:
        logger.error(
            f"Sync execution failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _error_response(500, 'Sync failed', e, start_time)

    duration = time.time() - start_time
    logger.info(
        "Sync execution completed",
        extra={
            'duration_seconds': round(duration, 2),
            'success': result.success,
            'events_created': result.events_created,
            'events_updated': result.events_updated,
            'events_deleted': result.events_deleted,
            'error_count': len(result.errors)
        }
    )

    return _response(200 if result.success else 500, {
        'message': 'Sync completed successfully' if result.success else 'Sync completed with errors',
        'result': result.to_dict(),
        'duration_seconds': round(duration, 2)
    })


def calendar_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Calendar generation handler.

    Args:
        event: API Gateway proxy event whose body is a calendar request
        context: Lambda context object

    Returns:
        Response dict with statusCode and the CalendarResponse fields
    """
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
    logger = logging.getLogger(__name__)
    start_time = time.time()

    try:
        payload = json.loads((event or {}).get('body') or '{}')
        if not isinstance(payload, dict):
            raise ValueError('Request body must be a JSON object')
    except ValueError as e:
        logger.warning(f"Invalid calendar request body: {e}")
        return _error_response(400, 'Invalid JSON in request body', e, start_time)

    request = CalendarRequest.from_dict(payload)
    bucket_name = os.environ.get('EXPORT_BUCKET')

    try:
        store = DynamoDBManager(table_name=os.environ.get('TABLE_NAME', 'chq-calendar-events'))
        response = generate_calendar(
            request,
            store,
            exporter=CalendarExporter(
                default_timezone=os.environ.get('DEFAULT_TIMEZONE', 'America/New_York')
            ),
            export_bucket=ExportBucket(bucket_name) if bucket_name else None,
            inline_limit=int(os.environ.get('EXPORT_INLINE_LIMIT', str(DEFAULT_INLINE_LIMIT)))
        )
    except TransportError as e:
        logger.error(f"Calendar generation failed: {e}", exc_info=True)
        return _error_response(500, 'Calendar generation failed', e, start_time)

    logger.info(
        "Calendar generated",
        extra={
            'format': request.format,
            'success': response.success,
            'duration_seconds': round(time.time() - start_time, 2)
        }
    )
    return _response(200 if response.success else 400, response.to_dict())


def sync_status_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Report one sync run by its ``syncId`` path parameter.

    Returns:
        200 with the run record, 400 without an id, 404 for an unknown id
    """
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
    logger = logging.getLogger(__name__)
    start_time = time.time()

    sync_id = ((event or {}).get('pathParameters') or {}).get('syncId')
    if not sync_id:
        return _response(400, {'success': False, 'error': 'Missing sync ID'})

    try:
        record = SyncStatusStore(os.environ.get('TABLE_NAME', 'chq-calendar-events')).get(sync_id)
    except TransportError as e:
        logger.error(f"Sync status lookup failed: {e}", exc_info=True)
        return _error_response(500, 'Sync status lookup failed', e, start_time)

    if record is None:
        return _response(404, {'success': False, 'error': 'Sync not found'})
    return _response(200, {'success': True, **record})


def sync_list_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    List recent and active sync runs with weekly statistics.

    Query parameters ``type`` and ``limit`` (default 10) narrow the recent list.
    """
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
    logger = logging.getLogger(__name__)
    start_time = time.time()

    params = (event or {}).get('queryStringParameters') or {}
    try:
        limit = int(params.get('limit') or 10)
    except ValueError as e:
        return _error_response(400, 'Invalid limit', e, start_time)

    try:
        status_store = SyncStatusStore(os.environ.get('TABLE_NAME', 'chq-calendar-events'))
        body = {
            'success': True,
            'activeSyncs': status_store.active(),
            'recentSyncs': status_store.recent(limit=limit, sync_type=params.get('type')),
            'statistics': status_store.statistics()
        }
    except TransportError as e:
        logger.error(f"Sync list failed: {e}", exc_info=True)
        return _error_response(500, 'Sync list failed', e, start_time)

    return _response(200, body)


def health_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Health check for monitoring.

    Combines an upstream API check with the sync statistics of the last
    week. Answers 503 when the API is unreachable.
    """
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
    logger = logging.getLogger(__name__)
    start_time = time.time()

    api_client = EventsCalendarApiClient(
        base_url=os.environ.get('API_BASE_URL') or None,
        timeout=int(os.environ.get('TIMEOUT_SECONDS', '30'))
    )
    health = api_client.health_check()

    try:
        status_store = SyncStatusStore(os.environ.get('TABLE_NAME', 'chq-calendar-events'))
        statistics = status_store.statistics()
        active = status_store.active()
    except TransportError as e:
        logger.error(f"Health check failed: {e}", exc_info=True)
        return _error_response(500, 'Health check failed', e, start_time)

    healthy = health['healthy']
    if not healthy:
        logger.warning(health['message'])

    return _response(200 if healthy else 503, {
        'status': 'healthy' if healthy else 'unhealthy',
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'apiType': 'events-calendar-api',
        'health': health,
        'stats': statistics,
        'activeSyncs': len(active)
    })
