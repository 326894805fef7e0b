"""Side-by-side column layout for overlapping calendar events."""
import logging
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Tuple

from processor.models import Event, LayoutResult

logger = logging.getLogger(__name__)


class OverlapLayoutEngine:
    """
    Assigns overlapping events of a day to columns.

    Events that are active at the same instant never share a column, and
    every event of a connected overlap group reports the same column count:
    the largest number of events active at once within that group.
    """

    # Effective length of zero-length and inverted events
    EPSILON = timedelta(microseconds=1)

    def layout(self, events: List[Event]) -> List[LayoutResult]:
        """
        Compute column placement for one day's events.

        Args:
            events: Events to lay out; never mutated

        Returns:
            One LayoutResult per event, in layout order
            (start ascending, longer events first)
        """
        if not events:
            return []

        ordered = sorted(events, key=self._sort_key)
        columns = self._assign_columns(ordered)

        results = []
        for group in self._overlap_groups(ordered):
            total_columns = self._max_simultaneous(group)
            for event in group:
                results.append(LayoutResult(
                    event_id=event.event_id,
                    column=columns[event.event_id],
                    total_columns=total_columns
                ))

        logger.debug(f"Laid out {len(results)} events")
        return results

    def layout_days(
        self,
        events: List[Event],
        days: Iterable[date]
    ) -> Dict[date, List[LayoutResult]]:
        """
        Lay out each day independently.

        Args:
            events: Events of the whole range (e.g. one week)
            days: Calendar days to lay out

        Returns:
            Mapping of day to that day's layout
        """
        return {
            day: self.layout(events_on_day(events, day))
            for day in days
        }

    def _bounds(self, event: Event) -> Tuple[datetime, datetime]:
        start = event.start_time
        end = event.end_time
        if end <= start:
            end = start + self.EPSILON
        return start, end

    def _sort_key(self, event: Event):
        start, end = self._bounds(event)
        return (start, -(end - start), event.event_id)

    def _assign_columns(self, ordered: List[Event]) -> Dict[str, int]:
        """First-fit: reuse the first column whose last event has ended."""
        column_ends: List[datetime] = []
        columns: Dict[str, int] = {}

        for event in ordered:
            start, end = self._bounds(event)
            placed = None
            for index, column_end in enumerate(column_ends):
                if column_end <= start:
                    placed = index
                    break

            if placed is None:
                column_ends.append(end)
                placed = len(column_ends) - 1
            else:
                column_ends[placed] = end

            columns[event.event_id] = placed

        return columns

    def _overlap_groups(self, ordered: List[Event]) -> List[List[Event]]:
        """Split start-ordered events into transitively overlapping runs."""
        groups: List[List[Event]] = []
        group_end = None

        for event in ordered:
            start, end = self._bounds(event)
            if group_end is not None and start < group_end:
                groups[-1].append(event)
                group_end = max(group_end, end)
            else:
                groups.append([event])
                group_end = end

        return groups

    def _max_simultaneous(self, group: List[Event]) -> int:
        bounds = [self._bounds(event) for event in group]
        boundaries = {start for start, _ in bounds} | {end for _, end in bounds}

        best = 1
        for instant in boundaries:
            active = sum(1 for start, end in bounds if start <= instant < end)
            best = max(best, active)

        return best


def events_on_day(events: Iterable[Event], day: date) -> List[Event]:
    """
    Select the events that start on, end on, or span the given day.

    The end is exclusive: an event ending at midnight stays on the day
    before.
    """
    selected = []
    for event in events:
        last_day = event.start_time.date()
        if event.end_time > event.start_time:
            last_day = (event.end_time - OverlapLayoutEngine.EPSILON).date()
        if event.start_time.date() <= day <= last_day:
            selected.append(event)
    return selected
