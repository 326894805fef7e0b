"""Data models for message parsing and calendar layout."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple


@dataclass(frozen=True)
class Event:
    """Timed event placed on the calendar grid."""
    event_id: str
    start_time: datetime
    end_time: datetime
    title: str = ''


@dataclass(frozen=True)
class LayoutResult:
    """Column placement of one event within its day."""
    event_id: str
    column: int
    total_columns: int


@dataclass(frozen=True)
class RawMessage:
    """Chat message as fetched from a Slack channel."""
    text: str
    ts: str
    channel_id: str
    channel_name: str
    user: Optional[str] = None
    username: Optional[str] = None


@dataclass(frozen=True)
class ParsedEvent:
    """Event extracted from a chat message."""
    event_id: str
    channel_id: str
    title: str
    description: str
    start_time: datetime
    end_time: datetime
    location: str
    categories: Tuple[str, ...]
    organizer_id: str
    organizer_name: str
    tags: Tuple[str, ...]
    color: str

    def to_dict(self) -> dict:
        """Render the event in the client's JSON shape."""
        return {
            'id': self.event_id,
            'title': self.title,
            'description': self.description,
            'startTime': self.start_time.isoformat(),
            'endTime': self.end_time.isoformat(),
            'location': self.location,
            'categories': list(self.categories),
            'organizer': {
                'id': self.organizer_id,
                'name': self.organizer_name,
                'type': 'club'
            },
            'color': self.color,
            'tags': list(self.tags),
            'isClubEvent': True,
            'rsvpEnabled': False
        }


@dataclass
class SyncResult:
    """Result of a store upsert."""
    added: int
    updated: int
    unchanged: int
    errors: list[str] = field(default_factory=list)
