"""Best-effort extraction of events from free-form chat messages."""
import logging
import re
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Tuple

from processor.models import ParsedEvent, RawMessage

logger = logging.getLogger(__name__)

MONTHS = {
    'january': 1, 'february': 2, 'march': 3, 'april': 4, 'may': 5,
    'june': 6, 'july': 7, 'august': 8, 'september': 9, 'october': 10,
    'november': 11, 'december': 12,
    'jan': 1, 'feb': 2, 'mar': 3, 'apr': 4, 'jun': 6, 'jul': 7,
    'aug': 8, 'sep': 9, 'sept': 9, 'oct': 10, 'nov': 11, 'dec': 12,
}

NUMERIC_DATE = re.compile(r'\b(\d{1,2})[/-](\d{1,2})[/-](\d{4}|\d{2})\b')

NAMED_DATE = re.compile(
    r'\b(' + '|'.join(sorted(MONTHS, key=len, reverse=True)) + r')\.?'
    r'\s+(\d{1,2})(?:st|nd|rd|th)?(?:,?\s+(\d{4}))?\b',
    re.IGNORECASE
)

_CLOCK = r'(\d{1,2})(?::(\d{2}))?\s*([ap]\.?m\.?)?'

TIME_RANGE = re.compile(
    r'\b' + _CLOCK + r'\s*(?:-|–|—|\bto\b)\s*' + _CLOCK + r'(?!\w)',
    re.IGNORECASE
)

SINGLE_TIME = re.compile(r'\b' + _CLOCK + r'(?!\w)', re.IGNORECASE)

LOCATION_LABEL = re.compile(
    r'^(?:location|where|place|venue)\s*:\s*(.+)$', re.IGNORECASE
)
LEADING_AT = re.compile(r'^(?:at|@)\s+(.{3,})$', re.IGNORECASE)
INLINE_AT = re.compile(
    r"(?:^|\s)(?:[Aa]t\s+|@\s*)([A-Z][\w'&.-]*(?:\s+[A-Z][\w'&.-]*)*)"
)

SYSTEM_MESSAGE = re.compile(
    r'^(?:<@\w+>\s+)?has (?:joined|left) the channel', re.IGNORECASE
)

CATEGORY_KEYWORDS = [
    ('Career', r'careers?|jobs?|interviews?|interviewing|hiring|recruit\w*'),
    ('Food', r'food|lunch|dinner|breakfast|pizza|snacks?|coffee|tea|boba'),
    ('Fun', r'fun|party|parties|game night|trivia|karaoke'),
    ('Academic', r'academic|class(?:es)?|lectures?|study|studying|homework|exams?|office hours'),
    ('Networking', r'network\w*|meetups?|mixers?'),
    ('Social', r'social|hangouts?|hang out|meet people|casual'),
    ('Sports', r'sports?|fitness|gym|basketball|soccer|volleyball|yoga|run|running|pickup'),
    ('Arts', r'arts?|music|theater|theatre|dance|dancing|paint\w*|drawing|creative'),
    ('Tech', r'tech|code|coding|hackathons?|workshops?|programming|ai|ml'),
    ('Wellness', r'wellness|health|meditation|mindful\w*|self[- ]care'),
]

_CATEGORY_PATTERNS = [
    (name, re.compile(r'\b(?:' + words + r')\b', re.IGNORECASE))
    for name, words in CATEGORY_KEYWORDS
]


class EventTextParser:
    """
    Turns Slack channel messages into calendar events.

    Extraction is best effort: any text that is not a system message yields
    an event, with defaulted date, time, location and category wherever
    nothing recognizable was found.
    """

    MAX_TITLE_LENGTH = 100
    DEFAULT_CATEGORY = 'Uncategorized'
    DEFAULT_START = time(12, 0)
    DEFAULT_DURATION = timedelta(hours=1)
    EVENT_COLOR = '#611f69'

    def parse_messages(
        self,
        messages: List[RawMessage],
        now: Optional[datetime] = None
    ) -> List[ParsedEvent]:
        """
        Parse a batch of messages, dropping non-events and duplicates.

        Args:
            messages: Messages in channel order
            now: Reference time for default dates

        Returns:
            Parsed events, first occurrence of each id kept
        """
        now = now or datetime.now()
        events = []
        seen = set()

        for message in messages:
            event = self.parse(message, now=now)
            if event is None or event.event_id in seen:
                continue
            seen.add(event.event_id)
            events.append(event)

        logger.info(
            f"Parsed {len(events)} events out of {len(messages)} messages"
        )
        return events

    def parse(
        self,
        message: RawMessage,
        now: Optional[datetime] = None
    ) -> Optional[ParsedEvent]:
        """
        Parse a single message.

        Args:
            message: Raw chat message
            now: Reference time; defaults to the wall clock

        Returns:
            ParsedEvent, or None for empty and system messages
        """
        text = (message.text or '').strip()
        if not text or SYSTEM_MESSAGE.match(text):
            return None

        now = now or datetime.now()

        lines = [line.strip() for line in text.splitlines() if line.strip()]
        title = lines[0][:self.MAX_TITLE_LENGTH]

        event_date, date_span = self._extract_date(text, now)
        if event_date is None:
            event_date = (now + timedelta(days=1)).date()

        time_text = text
        if date_span:
            begin, end = date_span
            time_text = text[:begin] + ' ' * (end - begin) + text[end:]

        start_of_day, end_of_day = self._extract_time(time_text)
        start_time = datetime.combine(event_date, start_of_day, tzinfo=now.tzinfo)
        if end_of_day is None:
            end_time = start_time + self.DEFAULT_DURATION
        else:
            end_time = datetime.combine(event_date, end_of_day, tzinfo=now.tzinfo)

        if end_time <= start_time:
            logger.debug(
                f"Correcting inverted time range for message {message.ts}: "
                f"{start_time.isoformat()} - {end_time.isoformat()}"
            )
            end_time = start_time + self.DEFAULT_DURATION

        return ParsedEvent(
            event_id=self.generate_event_id(message.channel_id, message.ts),
            channel_id=message.channel_id,
            title=title,
            description=text,
            start_time=start_time,
            end_time=end_time,
            location=self._extract_location(lines),
            categories=self._infer_categories(text),
            organizer_id=f"slack-user-{message.user or 'unknown'}",
            organizer_name=message.username or message.channel_name,
            tags=('Slack', message.channel_name),
            color=self.EVENT_COLOR
        )

    def generate_event_id(self, channel_id: str, ts: str) -> str:
        """
        Build the event id from the channel and the message timestamp.

        The same message always maps to the same id, so repeated imports
        upsert instead of duplicating.
        """
        return f"slack-{channel_id}-{ts}"

    def _extract_date(
        self,
        text: str,
        now: datetime
    ) -> Tuple[Optional[date], Optional[Tuple[int, int]]]:
        """
        Find the first valid numeric date, then the first named-month date.

        Returns:
            (date, (start, end) of the matched text), or (None, None)
        """
        for match in NUMERIC_DATE.finditer(text):
            month, day, year = (int(part) for part in match.groups())
            if year < 100:
                year += 2000
            try:
                return _calendar_date(year, month, day), match.span()
            except ValueError:
                continue

        for match in NAMED_DATE.finditer(text):
            month = MONTHS[match.group(1).lower()]
            day = int(match.group(2))
            year = int(match.group(3)) if match.group(3) else now.year
            try:
                return _calendar_date(year, month, day), match.span()
            except ValueError:
                continue

        return None, None

    def _extract_time(self, text: str) -> Tuple[time, Optional[time]]:
        """
        Find a time range, then a single time, else default to noon.

        A bare hour ("3-5", "at 7") is not taken as a time; it needs a
        meridiem or minutes, so room numbers and counts are left alone.

        Returns:
            (start, end); end is None when the duration is implicit
        """
        for match in TIME_RANGE.finditer(text):
            (start_h, start_m, start_mer,
             end_h, end_m, end_mer) = match.groups()
            if not (start_mer or end_mer or start_m or end_m):
                continue

            start_mer = _meridiem(start_mer)
            end_mer = _meridiem(end_mer)
            start_minute = int(start_m or 0)
            end_minute = int(end_m or 0)
            if not (_valid_clock(int(start_h), start_minute, start_mer or end_mer)
                    and _valid_clock(int(end_h), end_minute, end_mer)):
                continue

            end_hour = _to_24h(int(end_h), end_mer)
            start_hour = _to_24h(int(start_h), start_mer or end_mer)
            if not start_mer and (start_hour, start_minute) > (end_hour, end_minute):
                # "11-1pm": the start is not in the afternoon
                start_hour = _to_24h(int(start_h), None)

            return time(start_hour, start_minute), time(end_hour, end_minute)

        for match in SINGLE_TIME.finditer(text):
            hour, minute, meridiem = match.groups()
            if not (minute or meridiem):
                continue

            meridiem = _meridiem(meridiem)
            minute = int(minute or 0)
            if not _valid_clock(int(hour), minute, meridiem):
                continue

            return time(_to_24h(int(hour), meridiem), minute), None

        return self.DEFAULT_START, None

    def _extract_location(self, lines: List[str]) -> str:
        """
        Look for a labelled location line, then a line starting with
        "at"/"@", then an inline "at Some Place" phrase.
        """
        cleaned = [line.replace('*', '').strip().lstrip('•>- ').strip()
                   for line in lines]

        for line in cleaned:
            match = LOCATION_LABEL.match(line)
            if match and match.group(1).strip():
                return match.group(1).strip()

        for line in cleaned:
            match = LEADING_AT.match(line)
            if match:
                return match.group(1).strip()

        for line in cleaned:
            for match in INLINE_AT.finditer(line):
                place = match.group(1).rstrip('.-')
                if len(place) >= 3:
                    return place

        return ''

    def _infer_categories(self, text: str) -> Tuple[str, ...]:
        categories = tuple(
            name for name, pattern in _CATEGORY_PATTERNS
            if pattern.search(text)
        )
        return categories or (self.DEFAULT_CATEGORY,)


def _calendar_date(year: int, month: int, day: int) -> date:
    value = date(year, month, day)
    # An event on the last representable day has no room for its end time
    if value == date.max:
        raise ValueError(f"Date out of range: {value.isoformat()}")
    return value


def _meridiem(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    return raw.replace('.', '').lower()


def _valid_clock(hour: int, minute: int, meridiem: Optional[str]) -> bool:
    if minute > 59:
        return False
    if meridiem:
        return 1 <= hour <= 12
    return 0 <= hour <= 23


def _to_24h(hour: int, meridiem: Optional[str]) -> int:
    if meridiem == 'pm' and hour < 12:
        return hour + 12
    if meridiem == 'am' and hour == 12:
        return 0
    return hour
