"""Per-run sync status records kept alongside events in DynamoDB."""
import logging
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from processor.errors import TransportError
from processor.models import DateRange, SyncResult

logger = logging.getLogger(__name__)

SYNC_RUN_RECORD = 'sync-run'


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def _plain(value: Any) -> Any:
    """Convert DynamoDB Decimals back to ints/floats, recursively."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value


class SyncStatusStore:
    """Records the lifecycle and outcome of each sync run."""

    def __init__(self, table_name: str):
        """
        Initialize DynamoDB client and table reference.

        Args:
            table_name: Name of the DynamoDB table shared with the event store
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)

    def create(self, sync_type: str, date_range: DateRange) -> str:
        """
        Record a sync run as in progress.

        Returns:
            The new sync id

        Raises:
            TransportError: If the write fails
        """
        sync_id = uuid.uuid4().hex
        item = {
            'uid': self._key(sync_id),
            'record_type': SYNC_RUN_RECORD,
            'sync_id': sync_id,
            'type': sync_type,
            'status': 'in_progress',
            'range': date_range.key,
            'timestamp': _epoch_ms(),
            'start_time': datetime.now(timezone.utc).isoformat()
        }
        try:
            self.table.put_item(Item=item)
        except ClientError as e:
            raise TransportError(f"Failed to create sync status: {e}") from e

        logger.info(f"Created sync status record: {sync_id} (type: {sync_type})")
        return sync_id

    def complete(self, sync_id: str, result: SyncResult) -> None:
        """
        Store the outcome of a run; failed runs keep their partial counts.

        Raises:
            TransportError: If the update fails
        """
        status = 'completed' if result.success else 'failed'
        values = {
            ':status': status,
            ':end_time': datetime.now(timezone.utc).isoformat(),
            ':duration': result.duration,
            ':result': result.to_dict()
        }
        expression = 'SET #status = :status, end_time = :end_time, #duration = :duration, #result = :result'
        if not result.success and result.errors:
            expression += ', #error = :error'
            values[':error'] = result.errors[-1]

        names = {'#status': 'status', '#duration': 'duration', '#result': 'result'}
        if ':error' in values:
            names['#error'] = 'error'

        try:
            self.table.update_item(
                Key={'uid': self._key(sync_id)},
                UpdateExpression=expression,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values
            )
        except ClientError as e:
            raise TransportError(f"Failed to update sync status {sync_id}: {e}") from e

        logger.info(f"Sync {sync_id} {status} (duration: {result.duration}ms)")

    def get(self, sync_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one run record, or None if unknown."""
        try:
            response = self.table.get_item(Key={'uid': self._key(sync_id)})
        except ClientError as e:
            raise TransportError(f"Failed to read sync status {sync_id}: {e}") from e

        item = response.get('Item')
        if not item or item.get('record_type') != SYNC_RUN_RECORD:
            return None
        return self._to_record(item)

    def recent(self, limit: int = 10, sync_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Most recent runs first, optionally of one type."""
        condition = Attr('record_type').eq(SYNC_RUN_RECORD)
        if sync_type:
            condition = condition & Attr('type').eq(sync_type)

        records = [self._to_record(item) for item in self._scan(condition)]
        records.sort(key=lambda record: record['timestamp'], reverse=True)
        return records[:limit]

    def active(self) -> List[Dict[str, Any]]:
        """Runs that have started but not finished."""
        condition = Attr('record_type').eq(SYNC_RUN_RECORD) & Attr('status').eq('in_progress')
        return [self._to_record(item) for item in self._scan(condition)]

    def statistics(self, days: int = 7) -> Dict[str, Any]:
        """
        Summarize runs started within the last ``days`` days.

        Returns:
            Dict with totalSyncs, successfulSyncs, failedSyncs,
            averageDuration (ms, completed runs only) and syncsByType
        """
        cutoff = _epoch_ms() - days * 86400 * 1000
        runs = [record for record in self.recent(limit=1000) if record['timestamp'] >= cutoff]
        completed = [run for run in runs if run['status'] == 'completed']

        by_type: Dict[str, int] = {}
        for run in runs:
            by_type[run['type']] = by_type.get(run['type'], 0) + 1

        durations = [run['duration'] for run in completed if run.get('duration') is not None]
        return {
            'totalSyncs': len(runs),
            'successfulSyncs': len(completed),
            'failedSyncs': len([run for run in runs if run['status'] == 'failed']),
            'averageDuration': sum(durations) / len(durations) if durations else 0,
            'syncsByType': by_type
        }

    def _scan(self, condition) -> List[Dict[str, Any]]:
        try:
            response = self.table.scan(FilterExpression=condition)
            items = response.get('Items', [])
            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    FilterExpression=condition,
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))
        except ClientError as e:
            raise TransportError(f"Failed to scan sync status records: {e}") from e
        return items

    def _key(self, sync_id: str) -> str:
        return f"{SYNC_RUN_RECORD}#{sync_id}"

    def _to_record(self, item: Dict[str, Any]) -> Dict[str, Any]:
        item = _plain(item)
        return {
            'syncId': item['sync_id'],
            'type': item['type'],
            'status': item['status'],
            'range': item.get('range'),
            'timestamp': item['timestamp'],
            'startTime': item.get('start_time'),
            'endTime': item.get('end_time'),
            'duration': item.get('duration'),
            'result': item.get('result'),
            'error': item.get('error')
        }
