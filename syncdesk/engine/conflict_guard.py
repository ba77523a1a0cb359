import logging
from datetime import datetime, time, timedelta, timezone
from typing import Iterable, Optional, Tuple

from syncdesk.data.models import BusyInterval, CalendarEvent, Conflict

logger = logging.getLogger(__name__)


def overlaps(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    """Half-open interval overlap: touching boundaries do not overlap."""
    return start < other_end and end > other_start


def first_conflict(events: Iterable[CalendarEvent], start: datetime, end: datetime) -> Optional[Conflict]:
    """First timed event (in start order) overlapping [start, end). All-day events never conflict."""
    for event in sorted(events, key=lambda e: e.start_time):
        if event.all_day:
            continue
        if overlaps(start, end, event.start_time, event.end_time):
            return Conflict(
                existing_summary=event.summary,
                existing_start=event.start_time,
                existing_end=event.end_time,
                event_id=event.id,
            )
    return None


def _round_up(value: datetime, step_minutes: int) -> datetime:
    extra = timedelta(minutes=value.minute % step_minutes, seconds=value.second, microseconds=value.microsecond)
    if not extra:
        return value
    return value - extra + timedelta(minutes=step_minutes)


def first_free_slot(
    busy: Iterable[BusyInterval],
    window_start: datetime,
    window_end: datetime,
    minutes: int,
    zone,
    day_start_hour: int = 9,
    day_end_hour: int = 18,
    step_minutes: int = 15,
) -> Optional[Tuple[datetime, datetime]]:
    """
    Earliest [start, end) of `minutes` inside working hours of `zone` that
    overlaps no busy interval (half-open, like `overlaps`). Starts are aligned
    to `step_minutes`. Returns None when the window has no such gap.
    """
    duration = timedelta(minutes=minutes)
    intervals = sorted((b.start, b.end) for b in busy)
    cursor = _round_up(window_start.astimezone(zone), step_minutes)

    while cursor + duration <= window_end:
        day_open = datetime.combine(cursor.date(), time(day_start_hour), tzinfo=zone)
        day_close = datetime.combine(cursor.date(), time(day_end_hour), tzinfo=zone)
        if cursor < day_open:
            cursor = day_open
            continue
        if cursor + duration > day_close:
            cursor = datetime.combine(cursor.date() + timedelta(days=1), time(day_start_hour), tzinfo=zone)
            continue

        end = cursor + duration
        blocking = [b_end for b_start, b_end in intervals if overlaps(cursor, end, b_start, b_end)]
        if not blocking:
            return cursor, end
        cursor = _round_up(max(blocking).astimezone(zone), step_minutes)

    return None


class ConflictGuard:
    """
    Checks a candidate slot against the events already on the user's calendar.

    The event list, not free/busy, decides whether a slot is free, so a
    conflict can always name the event it collides with.
    """

    def __init__(self, calendar_engine):
        self.calendar_engine = calendar_engine

    async def check_conflict(self, user_id: str, start: datetime, end: datetime) -> Optional[Conflict]:
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)

        # The candidate's whole local day, extended when the candidate runs past midnight
        day_start = datetime.combine(start.date(), time.min, tzinfo=start.tzinfo)
        window_end = max(day_start + timedelta(days=1), end)

        events = await self.calendar_engine.fetch_events(user_id, day_start, window_end)
        conflict = first_conflict(events, start, end)
        if conflict:
            logger.info(f"[SCHEDULER] Slot {start.isoformat()} - {end.isoformat()} conflicts with {conflict.describe()}")
        return conflict
