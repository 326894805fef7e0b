"""Normalize loosely shaped event records into layout events."""
from datetime import datetime
from typing import Any, Mapping

from processor.models import Event, ParsedEvent

ID_KEYS = ('id', 'event_id')
TITLE_KEYS = ('title', 'name')
START_KEYS = ('startTime', 'start_time', 'start_ts', 'start')
END_KEYS = ('endTime', 'end_time', 'end_ts', 'end')


def _first(record: Mapping[str, Any], keys) -> Any:
    for key in keys:
        value = record.get(key)
        if value not in (None, ''):
            return value
    return None


def parse_timestamp(value: Any) -> datetime:
    """
    Parse an ISO 8601 timestamp.

    Args:
        value: datetime, or ISO 8601 string (a trailing 'Z' means UTC)

    Returns:
        datetime value

    Raises:
        ValueError: If the value is missing or not a valid timestamp
    """
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid timestamp: {value!r}")

    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    return datetime.fromisoformat(text)


def event_from_record(record: Mapping[str, Any]) -> Event:
    """
    Convert an event record using any of the known field spellings.

    Accepts app events (startTime/endTime), database rows
    (start_ts/end_ts) and stored items (start_time/end_time).

    Raises:
        ValueError: If the id or either timestamp is missing or invalid
    """
    event_id = _first(record, ID_KEYS)
    if event_id is None:
        raise ValueError("Event record is missing an id")

    start_time = parse_timestamp(_first(record, START_KEYS))
    end_time = parse_timestamp(_first(record, END_KEYS))
    if (start_time.tzinfo is None) != (end_time.tzinfo is None):
        raise ValueError(
            f"Event {event_id} mixes naive and timezone-aware timestamps"
        )

    return Event(
        event_id=str(event_id),
        start_time=start_time,
        end_time=end_time,
        title=str(_first(record, TITLE_KEYS) or '')
    )


def event_from_parsed(parsed: ParsedEvent) -> Event:
    """Convert a parsed chat event into a layout event."""
    return Event(
        event_id=parsed.event_id,
        start_time=parsed.start_time,
        end_time=parsed.end_time,
        title=parsed.title
    )
