"""DynamoDB manager for event storage operations."""
import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from processor.change_tracker import value_from_plain, value_to_plain
from processor.dates import localize
from processor.errors import TransportError
from processor.models import DateRange, Event, EventChange

logger = logging.getLogger(__name__)

EVENT_RECORD = 'event'
LOCK_RECORD = 'sync-lock'


class DynamoDBManager:
    """Key-value event store keyed by event UID."""

    def __init__(self, table_name: str):
        """
        Initialize DynamoDB client and table reference.

        Args:
            table_name: Name of the DynamoDB table
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBManager for table: {table_name}")

    def get_event(self, uid: str) -> Optional[Event]:
        """
        Fetch a stored event by UID.

        Returns:
            Event or None if no event is stored under ``uid``

        Raises:
            TransportError: If DynamoDB cannot be reached
        """
        try:
            response = self.table.get_item(Key={'uid': uid})
        except ClientError as e:
            logger.error(f"Error reading event {uid}: {e}")
            raise TransportError(f"Failed to read event {uid}: {e}") from e

        item = response.get('Item')
        if not item or item.get('record_type') != EVENT_RECORD:
            return None
        return self._item_to_event(item)

    def put_event(self, event: Event) -> None:
        """
        Write an event, replacing any stored version.

        Raises:
            TransportError: If the write fails
        """
        try:
            self.table.put_item(Item=self._event_to_item(event))
        except ClientError as e:
            logger.error(f"Error writing event {event.uid}: {e}")
            raise TransportError(f"Failed to write event {event.uid}: {e}") from e

    def scan_events(self, date_range: Optional[DateRange] = None) -> List[Event]:
        """
        Retrieve stored events, optionally restricted to those starting within a date range.

        Raises:
            TransportError: If the scan fails
        """
        condition = Attr('record_type').eq(EVENT_RECORD)
        if date_range is not None:
            condition = condition & Attr('start_day').between(
                date_range.start.isoformat(), date_range.end.isoformat()
            )

        try:
            response = self.table.scan(FilterExpression=condition)
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    FilterExpression=condition,
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))
        except ClientError as e:
            logger.error(f"Error scanning DynamoDB table: {e}")
            raise TransportError(f"Failed to scan events: {e}") from e

        events = []
        for item in items:
            event = self._item_to_event(item)
            if event:
                events.append(event)

        logger.info(f"Retrieved {len(events)} events from DynamoDB")
        return events

    def acquire_sync_lock(self, date_range: DateRange, owner: str, ttl_seconds: int = 900) -> bool:
        """
        Take the run lock for a date range.

        Locks are held per calendar year the range touches, so any two
        overlapping ranges contend for at least one common lock. An expired
        lock may be taken over by a new owner.

        Returns:
            True if every lock was acquired, False if another run holds one

        Raises:
            TransportError: If DynamoDB cannot be reached
        """
        now = int(time.time())
        acquired = []
        for key in self._lock_keys(date_range):
            try:
                self.table.put_item(
                    Item={
                        'uid': key,
                        'record_type': LOCK_RECORD,
                        'owner': owner,
                        'range': date_range.key,
                        'expires_at': now + ttl_seconds
                    },
                    ConditionExpression=Attr('uid').not_exists() | Attr('expires_at').lt(now)
                )
            except ClientError as e:
                self._release_keys(acquired, owner)
                if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                    logger.warning(f"Sync lock {key} is held by another run")
                    return False
                raise TransportError(f"Failed to acquire sync lock: {e}") from e
            acquired.append(key)

        logger.info(f"Acquired sync lock for {date_range.key} as {owner}")
        return True

    def release_sync_lock(self, date_range: DateRange, owner: str) -> None:
        """Release the run lock if ``owner`` still holds it."""
        self._release_keys(self._lock_keys(date_range), owner)
        logger.info(f"Released sync lock for {date_range.key}")

    def _release_keys(self, keys: List[str], owner: str) -> None:
        for key in keys:
            try:
                self.table.delete_item(
                    Key={'uid': key},
                    ConditionExpression=Attr('owner').eq(owner)
                )
            except ClientError as e:
                logger.warning(f"Could not release sync lock {key}: {e}")

    def _lock_keys(self, date_range: DateRange) -> List[str]:
        return [
            f"{LOCK_RECORD}#{year}"
            for year in range(date_range.start.year, date_range.end.year + 1)
        ]

    def _event_to_item(self, event: Event) -> Dict[str, Any]:
        """
        Convert Event object to DynamoDB item.

        Derived values (primary category, location, weekday, week, start day) are stored for
        querying only and recomputed on read.
        """
        item = {
            'uid': event.uid,
            'record_type': EVENT_RECORD,
            'id': event.id,
            'title': event.title,
            'start_date': event.start_date,
            'end_date': event.end_date,
            'start_day': localize(event.start_date, event.timezone).date().isoformat(),
            'timezone': event.timezone,
            'day_of_week': event.day_of_week,
            'categories': value_to_plain('categories', event.categories),
            'category': event.category,
            'tags': list(event.tags),
            'status': event.status,
            'featured': event.featured,
            'ticket_required': event.ticket_required,
            'confidence': event.confidence,
            'sync_status': event.sync_status,
            'source': event.source,
            'last_modified': event.last_modified,
            'created_at': event.created_at,
            'updated_at': event.updated_at,
            'missed_syncs': event.missed_syncs,
            'change_log': [self._change_to_item(change) for change in event.change_log]
        }

        # Add optional fields if present
        optional = {
            'week': event.week,
            'description': event.description,
            'venue': value_to_plain('venue', event.venue),
            'location': event.location,
            'cost': event.cost,
            'url': event.url,
            'image': value_to_plain('image', event.image),
            'audience': event.audience,
            'subcategory': event.subcategory,
            'series': event.series,
            'presenter': event.presenter,
            'discipline': event.discipline,
        }
        item.update({key: value for key, value in optional.items() if value is not None})
        return item

    def _item_to_event(self, item: Dict[str, Any]) -> Optional[Event]:
        """
        Convert DynamoDB item to Event object.

        Returns:
            Event object or None if conversion fails
        """
        try:
            return Event(
                id=int(item['id']),
                uid=item['uid'],
                title=item['title'],
                start_date=item['start_date'],
                end_date=item['end_date'],
                timezone=item['timezone'],
                last_modified=item['last_modified'],
                created_at=item['created_at'],
                updated_at=item['updated_at'],
                description=item.get('description'),
                venue=value_from_plain('venue', item.get('venue')),
                categories=value_from_plain('categories', item.get('categories')) or [],
                tags=list(item.get('tags') or []),
                cost=item.get('cost'),
                url=item.get('url'),
                image=value_from_plain('image', item.get('image')),
                status=item.get('status', 'publish'),
                featured=bool(item.get('featured', False)),
                audience=item.get('audience'),
                ticket_required=bool(item.get('ticket_required', False)),
                subcategory=item.get('subcategory'),
                series=item.get('series'),
                presenter=item.get('presenter'),
                discipline=item.get('discipline'),
                confidence=item.get('confidence', 'confirmed'),
                sync_status=item.get('sync_status', 'synced'),
                source=item.get('source', 'events-calendar-api'),
                change_log=[self._item_to_change(entry) for entry in item.get('change_log') or []],
                missed_syncs=int(item.get('missed_syncs', 0))
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Failed to convert item {item.get('uid')} to Event: {e}")
            return None

    def _change_to_item(self, change: EventChange) -> Dict[str, Any]:
        return {
            'timestamp': change.timestamp.isoformat(),
            'field': change.field,
            'old_value': json.dumps(value_to_plain(change.field, change.old_value)),
            'new_value': json.dumps(value_to_plain(change.field, change.new_value)),
            'source': change.source
        }

    def _item_to_change(self, entry: Dict[str, Any]) -> EventChange:
        field_name = entry['field']
        return EventChange(
            timestamp=datetime.fromisoformat(entry['timestamp']),
            field=field_name,
            old_value=value_from_plain(field_name, json.loads(entry['old_value'])),
            new_value=value_from_plain(field_name, json.loads(entry['new_value'])),
            source=entry['source']
        )
