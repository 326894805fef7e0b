"""In-memory event store keyed by event id."""
import logging
from typing import Dict, List, Optional

from processor.models import ParsedEvent, SyncResult

logger = logging.getLogger(__name__)


class InMemoryEventStore:
    """Event cache owned by the service; lives as long as the process."""

    def __init__(self):
        self._events: Dict[str, ParsedEvent] = {}

    def put_event(self, event: ParsedEvent) -> bool:
        """
        Add or replace an event.

        Returns:
            True if the event was new, False if it replaced one
        """
        is_new = event.event_id not in self._events
        self._events[event.event_id] = event
        return is_new

    def save_events(self, events: List[ParsedEvent]) -> SyncResult:
        """
        Upsert a batch of events.

        Returns:
            SyncResult with counts of added, updated and unchanged events
        """
        added = updated = unchanged = 0
        for event in events:
            existing = self._events.get(event.event_id)
            if existing is None:
                added += 1
            elif existing != event:
                updated += 1
            else:
                unchanged += 1
            self._events[event.event_id] = event

        logger.info(
            f"Saved events: {added} added, {updated} updated, {unchanged} unchanged"
        )
        return SyncResult(added=added, updated=updated, unchanged=unchanged)

    def get_event(self, event_id: str) -> Optional[ParsedEvent]:
        return self._events.get(event_id)

    def get_events(self) -> List[ParsedEvent]:
        """All events, latest start first."""
        return sorted(
            self._events.values(), key=lambda e: e.start_time, reverse=True
        )

    def get_events_by_channel(self, channel_id: str) -> List[ParsedEvent]:
        """Events imported from one channel, latest start first."""
        return [e for e in self.get_events() if e.channel_id == channel_id]

    def remove_event(self, event_id: str) -> bool:
        return self._events.pop(event_id, None) is not None

    def clear(self) -> None:
        self._events.clear()

    def count(self) -> int:
        return len(self._events)
