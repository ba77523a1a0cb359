import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from syncdesk.data.models import CalendarEvent, Conflict, Scope
from syncdesk.errors import AuthExpired, NotConnected
from syncdesk.services.calendar_sync import CalendarSyncEngine, to_event


def t(hour, minute=0, day=14):
    return datetime(2026, 10, day, hour, minute, tzinfo=timezone.utc)


def fake_calendar_service(items=(), busy=()):
    service = MagicMock()
    service.events.return_value.list.return_value.execute.return_value = {"items": list(items)}
    service.freebusy.return_value.query.return_value.execute.return_value = {
        "calendars": {"primary": {"busy": list(busy)}}
    }

    def insert(calendarId, body):
        created = {"id": "evt-new", "summary": body["summary"], "start": body["start"], "end": body["end"]}
        return MagicMock(execute=MagicMock(return_value=created))

    service.events.return_value.insert.side_effect = insert
    return service


TIMED = {
    "id": "evt-1",
    "summary": "Design review",
    "start": {"dateTime": "2026-10-14T16:00:00+02:00"},
    "end": {"dateTime": "2026-10-14T17:00:00+02:00"},
}
ALL_DAY = {"id": "evt-2", "summary": "Offsite", "start": {"date": "2026-10-14"}, "end": {"date": "2026-10-15"}}


@pytest.fixture
def calendar_connected(credential_store, make_credential):
    credential_store.put(make_credential(scope=Scope.CALENDAR))


def test_to_event_handles_timed_and_all_day_events():
    timed = to_event(TIMED)
    all_day = to_event(ALL_DAY)

    assert timed.start_time == t(14)
    assert timed.all_day is False
    assert all_day.all_day is True
    assert all_day.start_time == t(0)
    assert to_event({"id": "x", "start": {"date": "2026-10-14"}}).summary == "(No title)"


def test_fetch_events_orders_by_start(token_manager, calendar_connected):
    service = fake_calendar_service(items=[TIMED, ALL_DAY])
    engine = CalendarSyncEngine(token_manager, service_factory=lambda token: service)

    events = asyncio.run(engine.fetch_events("user-1", t(0), t(0, day=15)))

    assert [e.id for e in events] == ["evt-2", "evt-1"]
    kwargs = service.events.return_value.list.call_args.kwargs
    assert kwargs["calendarId"] == "primary"
    assert kwargs["singleEvents"] is True
    assert kwargs["orderBy"] == "startTime"


def test_fetch_busy(token_manager, calendar_connected):
    service = fake_calendar_service(busy=[{"start": "2026-10-14T09:00:00Z", "end": "2026-10-14T10:00:00Z"}])
    engine = CalendarSyncEngine(token_manager, service_factory=lambda token: service)

    busy = asyncio.run(engine.fetch_busy("user-1", t(0), t(0, day=15)))

    assert busy[0].start == t(9)
    assert busy[0].end == t(10)
    body = service.freebusy.return_value.query.call_args.kwargs["body"]
    assert body["items"] == [{"id": "primary"}]


def test_create_event_inserts_when_slot_is_free(token_manager, calendar_connected):
    service = fake_calendar_service(items=[TIMED])
    engine = CalendarSyncEngine(token_manager, service_factory=lambda token: service)

    event = asyncio.run(engine.create_event("user-1", "Write report", t(15), t(16)))

    assert isinstance(event, CalendarEvent)
    assert event.id == "evt-new"
    assert event.start_time == t(15)
    body = service.events.return_value.insert.call_args.kwargs["body"]
    assert body["summary"] == "Write report"


def test_create_event_returns_conflict_without_inserting(token_manager, calendar_connected):
    service = fake_calendar_service(items=[TIMED])
    engine = CalendarSyncEngine(token_manager, service_factory=lambda token: service)

    result = asyncio.run(engine.create_event("user-1", "Write report", t(14, 30), t(15, 30)))

    assert isinstance(result, Conflict)
    assert result.existing_summary == "Design review"
    service.events.return_value.insert.assert_not_called()


def test_sync_returns_events_and_busy(token_manager, calendar_connected):
    service = fake_calendar_service(items=[TIMED], busy=[{"start": "2026-10-14T14:00:00Z", "end": "2026-10-14T15:00:00Z"}])
    engine = CalendarSyncEngine(token_manager, service_factory=lambda token: service)

    result = asyncio.run(engine.sync("user-1", days=3))

    assert [e.id for e in result.events] == ["evt-1"]
    assert len(result.busy) == 1
    kwargs = service.events.return_value.list.call_args.kwargs
    span = datetime.fromisoformat(kwargs["timeMax"]) - datetime.fromisoformat(kwargs["timeMin"])
    assert span == timedelta(days=3)


def test_calendar_requires_calendar_credential(token_manager, credential_store, make_credential):
    credential_store.put(make_credential(scope=Scope.MAIL))
    engine = CalendarSyncEngine(token_manager, service_factory=lambda token: fake_calendar_service())

    with pytest.raises(NotConnected):
        asyncio.run(engine.sync("user-1"))


def test_expired_calendar_credential_without_refresh_token(token_manager, credential_store, make_credential):
    credential_store.put(make_credential(scope=Scope.CALENDAR, refresh_token=None, expires_in=timedelta(minutes=-1)))
    engine = CalendarSyncEngine(token_manager, service_factory=lambda token: fake_calendar_service())

    with pytest.raises(AuthExpired):
        asyncio.run(engine.create_event("user-1", "x", t(9), t(10)))


def test_suggest_focus_slot_uses_free_busy(token_manager, calendar_connected):
    service = fake_calendar_service(busy=[
        {"start": "2026-10-14T09:00:00Z", "end": "2026-10-14T11:00:00Z"},
        {"start": "2026-10-14T11:30:00Z", "end": "2026-10-14T12:00:00Z"},
    ])
    engine = CalendarSyncEngine(token_manager, service_factory=lambda token: service)

    slot = asyncio.run(engine.suggest_focus_slot("user-1", timezone.utc, minutes=45, days=2, now=t(8)))

    assert slot == (t(12), t(12, 45))
    body = service.freebusy.return_value.query.call_args.kwargs["body"]
    assert body["timeMin"] == t(8).isoformat()
    assert body["timeMax"] == t(8, day=16).isoformat()


def test_suggest_focus_slot_none_when_calendar_is_full(token_manager, calendar_connected):
    service = fake_calendar_service(busy=[{"start": "2026-10-14T00:00:00Z", "end": "2026-10-17T00:00:00Z"}])
    engine = CalendarSyncEngine(token_manager, service_factory=lambda token: service)

    assert asyncio.run(engine.suggest_focus_slot("user-1", timezone.utc, minutes=30, days=2, now=t(8))) is None


def test_suggest_focus_slot_requires_calendar_credential(token_manager):
    engine = CalendarSyncEngine(token_manager, service_factory=lambda token: fake_calendar_service())

    with pytest.raises(NotConnected):
        asyncio.run(engine.suggest_focus_slot("user-1", timezone.utc, now=t(8)))
