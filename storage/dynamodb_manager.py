"""DynamoDB-backed storage for imported events."""
import logging
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from processor.models import ParsedEvent, SyncResult

logger = logging.getLogger(__name__)


class DynamoDBEventStore:
    """Event store persisted in a DynamoDB table keyed by event_id."""

    BATCH_SIZE = 25  # DynamoDB batch operation limit
    TTL_DAYS = 90

    def __init__(self, table_name: str):
        """
        Initialize DynamoDB client and table reference.

        Args:
            table_name: Name of the DynamoDB table
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBEventStore for table: {table_name}")

    def put_event(self, event: ParsedEvent) -> bool:
        """
        Add or replace a single event.

        Returns:
            True if the event was new, False if it replaced one
        """
        try:
            response = self.table.put_item(
                Item=self._event_to_item(event),
                ReturnValues='ALL_OLD'
            )
        except ClientError as e:
            logger.error(f"Error writing event {event.event_id}: {e}")
            raise

        return 'Attributes' not in response

    def save_events(self, events: List[ParsedEvent]) -> SyncResult:
        """
        Upsert events, writing only those that are new or changed.

        Args:
            events: Parsed events of one import

        Returns:
            SyncResult with counts of added, updated and unchanged events
        """
        logger.info(f"Saving {len(events)} events")
        errors = []

        existing = {
            event.event_id: event for event in self._scan()
        }

        to_add = [e for e in events if e.event_id not in existing]
        to_update = [
            e for e in events
            if e.event_id in existing and existing[e.event_id] != e
        ]
        unchanged = len(events) - len(to_add) - len(to_update)

        written, write_errors = self.batch_write_events(to_add + to_update)
        errors.extend(write_errors)

        added = min(written, len(to_add))
        updated = written - added

        logger.info(
            f"Save complete: {added} added, {updated} updated, "
            f"{unchanged} unchanged"
        )
        return SyncResult(
            added=added,
            updated=updated,
            unchanged=unchanged,
            errors=errors
        )

    def batch_write_events(self, events: List[ParsedEvent]):
        """
        Write events to DynamoDB in batches of 25 items.

        Args:
            events: Events to write

        Returns:
            Tuple of (count of written events, list of error messages)
        """
        if not events:
            return 0, []

        logger.info(f"Writing {len(events)} events to DynamoDB")
        success_count = 0
        errors = []

        for i in range(0, len(events), self.BATCH_SIZE):
            batch = events[i:i + self.BATCH_SIZE]

            try:
                with self.table.batch_writer() as writer:
                    for event in batch:
                        writer.put_item(Item=self._event_to_item(event))
                success_count += len(batch)

            except ClientError as e:
                error_msg = f"Error writing batch {i // self.BATCH_SIZE + 1}: {e}"
                logger.error(error_msg)
                errors.append(error_msg)
                continue

        logger.info(f"Successfully wrote {success_count} events")
        return success_count, errors

    def get_event(self, event_id: str) -> Optional[ParsedEvent]:
        try:
            response = self.table.get_item(Key={'event_id': event_id})
        except ClientError as e:
            logger.error(f"Error reading event {event_id}: {e}")
            raise

        item = response.get('Item')
        return self._item_to_event(item) if item else None

    def get_events(self) -> List[ParsedEvent]:
        """All events, latest start first."""
        return sorted(self._scan(), key=lambda e: e.start_time, reverse=True)

    def get_events_by_channel(self, channel_id: str) -> List[ParsedEvent]:
        """Events imported from one channel, latest start first."""
        events = self._scan(Attr('channel_id').eq(channel_id))
        return sorted(events, key=lambda e: e.start_time, reverse=True)

    def remove_event(self, event_id: str) -> bool:
        try:
            response = self.table.delete_item(
                Key={'event_id': event_id},
                ReturnValues='ALL_OLD'
            )
        except ClientError as e:
            logger.error(f"Error deleting event {event_id}: {e}")
            raise

        return 'Attributes' in response

    def clear(self) -> None:
        """Delete every event in the table."""
        keys = [event.event_id for event in self._scan()]
        logger.info(f"Deleting {len(keys)} events from DynamoDB")

        for i in range(0, len(keys), self.BATCH_SIZE):
            with self.table.batch_writer() as writer:
                for event_id in keys[i:i + self.BATCH_SIZE]:
                    writer.delete_item(Key={'event_id': event_id})

    def count(self) -> int:
        try:
            response = self.table.scan(ProjectionExpression='event_id')
            total = len(response.get('Items', []))
            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    ProjectionExpression='event_id',
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                total += len(response.get('Items', []))
            return total
        except ClientError as e:
            logger.error(f"Error counting events: {e}")
            raise

    def _scan(self, filter_expression=None) -> List[ParsedEvent]:
        """
        Scan the table, following pagination.

        Args:
            filter_expression: Optional boto3 condition

        Returns:
            Events converted from the scanned items
        """
        kwargs = {}
        if filter_expression is not None:
            kwargs['FilterExpression'] = filter_expression

        try:
            response = self.table.scan(**kwargs)
            items = response.get('Items', [])

            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey'],
                    **kwargs
                )
                items.extend(response.get('Items', []))

        except ClientError as e:
            logger.error(f"Error scanning DynamoDB table: {e}")
            raise

        events = []
        for item in items:
            event = self._item_to_event(item)
            if event:
                events.append(event)
        return events

    def _item_to_event(self, item: dict) -> Optional[ParsedEvent]:
        """
        Convert DynamoDB item to ParsedEvent.

        Returns:
            ParsedEvent or None if the item is malformed
        """
        try:
            return ParsedEvent(
                event_id=item['event_id'],
                channel_id=item['channel_id'],
                title=item['title'],
                description=item.get('description', ''),
                start_time=datetime.fromisoformat(item['start_time']),
                end_time=datetime.fromisoformat(item['end_time']),
                location=item.get('location', ''),
                categories=tuple(item.get('categories', [])),
                organizer_id=item.get('organizer_id', ''),
                organizer_name=item.get('organizer_name', ''),
                tags=tuple(item.get('tags', [])),
                color=item.get('color', '')
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Failed to convert item to ParsedEvent: {e}")
            return None

    def _event_to_item(self, event: ParsedEvent) -> dict:
        """
        Convert ParsedEvent to DynamoDB item.
        """
        ttl = event.end_time + timedelta(days=self.TTL_DAYS)
        return {
            'event_id': event.event_id,
            'channel_id': event.channel_id,
            'title': event.title,
            'description': event.description,
            'start_time': event.start_time.isoformat(),
            'end_time': event.end_time.isoformat(),
            'location': event.location,
            'categories': list(event.categories),
            'organizer_id': event.organizer_id,
            'organizer_name': event.organizer_name,
            'tags': list(event.tags),
            'color': event.color,
            'last_updated': int(time.time()),
            'ttl': int(ttl.timestamp())
        }
