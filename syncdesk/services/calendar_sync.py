"""
Calendar Sync Engine - reads events and free/busy data and creates events on
the user's primary Google Calendar. Every operation refreshes the calendar
credential first.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from dateutil import parser as date_parser

from syncdesk.adapters import google_api
from syncdesk.auth.token_manager import TokenManager
from syncdesk.config import Config
from syncdesk.data.models import BusyInterval, CalendarEvent, CalendarSyncResult, Conflict, Scope
from syncdesk.engine.conflict_guard import ConflictGuard, first_free_slot

logger = logging.getLogger(__name__)

PRIMARY = "primary"
EVENTS_PAGE_MAX = 250


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _rfc3339(value: datetime) -> str:
    return _aware(value).isoformat()


def _event_time(node: Dict[str, Any]) -> datetime:
    if node.get("dateTime"):
        return _aware(date_parser.isoparse(node["dateTime"]))
    # All-day events carry a bare date
    return date_parser.isoparse(node["date"]).replace(tzinfo=timezone.utc)


def to_event(raw: Dict[str, Any]) -> CalendarEvent:
    """Convert a Google Calendar event resource to CalendarEvent."""
    start = raw.get("start") or {}
    end = raw.get("end") or start
    return CalendarEvent(
        id=raw.get("id", ""),
        summary=raw.get("summary") or "(No title)",
        start_time=_event_time(start),
        end_time=_event_time(end),
        all_day="date" in start and "dateTime" not in start,
    )


class CalendarSyncEngine:
    def __init__(
        self,
        token_manager: TokenManager,
        service_factory: Optional[Callable[[str], Any]] = None,
    ):
        self.token_manager = token_manager
        self._service_factory = service_factory or (lambda token: google_api.build_service("calendar", "v3", token))
        self.conflict_guard = ConflictGuard(self)

    async def fetch_events(self, user_id: str, start: datetime, end: datetime) -> List[CalendarEvent]:
        """
        Events on the primary calendar intersecting [start, end), ordered by start.
        Recurring events are expanded into instances.
        """
        access_token = await self.token_manager.ensure_fresh(user_id, Scope.CALENDAR)

        events: List[CalendarEvent] = []
        page_token = None
        while True:
            params = {
                "calendarId": PRIMARY,
                "timeMin": _rfc3339(start),
                "timeMax": _rfc3339(end),
                "singleEvents": True,
                "orderBy": "startTime",
                "maxResults": EVENTS_PAGE_MAX,
            }
            if page_token:
                params["pageToken"] = page_token

            page = await google_api.execute(
                lambda: self._service_factory(access_token).events().list(**params),
                label="Calendar events.list",
            )
            for item in page.get("items", []):
                try:
                    events.append(to_event(item))
                except (KeyError, ValueError, OverflowError) as e:
                    logger.warning(f"[CALENDAR] Skipping unreadable event {item.get('id')}: {e}")

            page_token = page.get("nextPageToken")
            if not page_token:
                break

        events.sort(key=lambda e: e.start_time)
        logger.info(f"[CALENDAR] Fetched {len(events)} events for user {user_id}")
        return events

    async def fetch_busy(self, user_id: str, start: datetime, end: datetime) -> List[BusyInterval]:
        access_token = await self.token_manager.ensure_fresh(user_id, Scope.CALENDAR)
        body = {
            "timeMin": _rfc3339(start),
            "timeMax": _rfc3339(end),
            "items": [{"id": PRIMARY}],
        }
        response = await google_api.execute(
            lambda: self._service_factory(access_token).freebusy().query(body=body),
            label="Calendar freebusy.query",
        )
        busy = (response.get("calendars", {}).get(PRIMARY) or {}).get("busy", [])
        return [
            BusyInterval(start=_aware(date_parser.isoparse(b["start"])), end=_aware(date_parser.isoparse(b["end"])))
            for b in busy
        ]

    async def create_event(
        self,
        user_id: str,
        summary: str,
        start: datetime,
        end: datetime,
        check_conflicts: bool = True,
    ) -> Union[CalendarEvent, Conflict]:
        """
        Creates an event on the primary calendar.

        Returns:
            The created CalendarEvent, or the first Conflict found when
            `check_conflicts` is set and the slot overlaps an existing event.

        Raises:
            NotConnected / AuthExpired: calendar credential missing or unusable
        """
        if check_conflicts:
            conflict = await self.conflict_guard.check_conflict(user_id, start, end)
            if conflict is not None:
                logger.info(f"[CALENDAR] Not creating '{summary}' for user {user_id}: conflicts with {conflict.describe()}")
                return conflict

        access_token = await self.token_manager.ensure_fresh(user_id, Scope.CALENDAR)
        body = {
            "summary": summary,
            "start": {"dateTime": _rfc3339(start)},
            "end": {"dateTime": _rfc3339(end)},
        }
        tz_name = getattr(start.tzinfo, "key", None)
        if tz_name:
            body["start"]["timeZone"] = tz_name
            body["end"]["timeZone"] = tz_name

        created = await google_api.execute(
            lambda: self._service_factory(access_token).events().insert(calendarId=PRIMARY, body=body),
            label="Calendar events.insert",
        )
        event = to_event(created)
        logger.info(f"[CALENDAR] Created event {event.id} '{event.summary}' for user {user_id}")
        return event

    async def suggest_focus_slot(
        self,
        user_id: str,
        zone,
        minutes: Optional[int] = None,
        days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Tuple[datetime, datetime]]:
        """
        First free working-hours slot of `minutes` between now and `days` ahead,
        judged against free/busy. Times are returned in `zone`.
        """
        minutes = minutes or Config.FOCUS_MINUTES
        days = days or Config.CALENDAR_SYNC_DAYS
        if now is None:
            now = datetime.now(zone)
        elif now.tzinfo is None:
            now = now.replace(tzinfo=zone)
        else:
            now = now.astimezone(zone)
        end = now + timedelta(days=days)

        busy = await self.fetch_busy(user_id, now, end)
        slot = first_free_slot(
            busy, now, end, minutes, zone,
            day_start_hour=Config.FOCUS_DAY_START_HOUR,
            day_end_hour=Config.FOCUS_DAY_END_HOUR,
        )
        if slot is None:
            logger.info(f"[CALENDAR] No free {minutes}-minute slot in the next {days} days for user {user_id}")
        return slot

    async def sync(self, user_id: str, days: Optional[int] = None) -> CalendarSyncResult:
        """Events and busy intervals from now until `days` ahead."""
        days = days or Config.CALENDAR_SYNC_DAYS
        start = datetime.now(timezone.utc)
        end = start + timedelta(days=days)
        events = await self.fetch_events(user_id, start, end)
        busy = await self.fetch_busy(user_id, start, end)
        return CalendarSyncResult(events=events, busy=busy)
