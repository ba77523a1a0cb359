import asyncio
import base64
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from syncdesk.adapters import google_api
from syncdesk.adapters.base import parse_sender
from syncdesk.adapters.gmail import GmailApiSource
from syncdesk.data.models import MessageSource
from syncdesk.errors import AuthExpired, NotConnected, ParseFailure, ProviderRateLimited, ProviderUnavailable


def gmail_message(message_id, minutes_ago=0, sender="Alice <alice@example.com>", body="Hello"):
    received = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc) - timedelta(minutes=minutes_ago)
    return {
        "id": message_id,
        "snippet": "Hello &amp; welcome",
        "internalDate": str(int(received.timestamp() * 1000)),
        "payload": {
            "mimeType": "text/plain",
            "headers": [
                {"name": "From", "value": sender},
                {"name": "subject", "value": f"Subject {message_id}"},
            ],
            "body": {"data": base64.urlsafe_b64encode(body.encode()).decode()},
        },
    }


def fake_gmail_service(listing, messages):
    """MagicMock service: `listing` is the list() response, `messages` maps id -> dict or exception."""
    service = MagicMock()
    api = service.users.return_value.messages.return_value
    api.list.return_value.execute.return_value = listing

    def get(userId, id, format):
        request = MagicMock()
        outcome = messages[id]
        if isinstance(outcome, Exception):
            request.execute.side_effect = outcome
        else:
            request.execute.return_value = outcome
        return request

    api.get.side_effect = get
    return service


@pytest.mark.parametrize("value,expected", [
    ('"Alice Smith" <alice@example.com>', ("Alice Smith", "alice@example.com")),
    ("Bob <bob@example.com>", ("Bob", "bob@example.com")),
    ("<carol@example.com>", ("carol", "carol@example.com")),
    ("dave@example.com", ("dave", "dave@example.com")),
    ("", ("Unknown", "")),
    (None, ("Unknown", "")),
    ("Weird", ("Weird", "")),
])
def test_parse_sender(value, expected):
    assert parse_sender(value) == expected


def test_to_fetched_normalizes_headers_and_body():
    message = GmailApiSource.to_fetched(gmail_message("m1", sender="newsletter@example.com"))

    assert message.id == "m1"
    assert message.sender_name == "newsletter"
    assert message.sender_email == "newsletter@example.com"
    assert message.subject == "Subject m1"
    assert message.snippet == "Hello & welcome"
    assert message.body_text == "Hello"
    assert message.received_at == datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)
    assert message.source == MessageSource.GMAIL_API


def test_to_fetched_falls_back_to_date_header_and_snippet():
    raw = {
        "id": "m2",
        "snippet": "only a snippet",
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [{"name": "Date", "value": "Tue, 13 Oct 2026 08:30:00 +0200"}],
            "parts": [],
        },
    }
    message = GmailApiSource.to_fetched(raw)

    assert message.body_text == "only a snippet"
    assert message.subject == "No Subject"
    assert message.sender_name == "Unknown"
    assert message.received_at == datetime(2026, 10, 13, 6, 30, tzinfo=timezone.utc)


def test_to_fetched_without_id_is_a_parse_failure():
    with pytest.raises(ParseFailure):
        GmailApiSource.to_fetched({"payload": {}})


def test_fetch_recent_skips_failed_message_and_keeps_the_rest(token_manager, credential_store, make_credential, http_error):
    credential_store.put(make_credential())
    ids = [f"m{i}" for i in range(10)]
    messages = {mid: gmail_message(mid, minutes_ago=i) for i, mid in enumerate(ids)}
    messages["m4"] = http_error(404)
    service = fake_gmail_service({"messages": [{"id": mid} for mid in ids]}, messages)
    source = GmailApiSource(token_manager, credential_store, workers=3, service_factory=lambda token: service)

    batch = asyncio.run(source.fetch_recent("user-1", limit=20, window=timedelta(hours=24)))

    assert batch.skipped == 1
    assert len(batch.messages) == 9
    assert "m4" not in [m.id for m in batch.messages]
    assert [m.id for m in batch.messages][:2] == ["m0", "m1"]
    list_kwargs = service.users.return_value.messages.return_value.list.call_args.kwargs
    assert list_kwargs["q"].startswith("after:")
    assert list_kwargs["maxResults"] == 20


def test_fetch_recent_paginates_until_limit(token_manager, credential_store, make_credential):
    credential_store.put(make_credential())
    service = MagicMock()
    api = service.users.return_value.messages.return_value
    pages = iter([
        {"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "page-2"},
        {"messages": [{"id": "c"}], "nextPageToken": "page-3"},
    ])
    api.list.return_value.execute.side_effect = lambda: next(pages)
    api.get.side_effect = lambda userId, id, format: MagicMock(execute=MagicMock(return_value=gmail_message(id)))
    source = GmailApiSource(token_manager, credential_store, service_factory=lambda token: service)

    batch = asyncio.run(source.fetch_recent("user-1", limit=3, window=timedelta(hours=24)))

    assert sorted(m.id for m in batch.messages) == ["a", "b", "c"]
    assert batch.next_page_token == "page-3"
    assert api.list.call_args_list[1].kwargs["pageToken"] == "page-2"


def test_fetch_recent_requires_mail_credential(token_manager, credential_store):
    source = GmailApiSource(token_manager, credential_store, service_factory=lambda token: MagicMock())

    assert source.is_available("user-1") is False
    with pytest.raises(NotConnected):
        asyncio.run(source.fetch_recent("user-1", limit=5, window=timedelta(hours=1)))


def test_rejected_access_token_aborts_the_batch(token_manager, credential_store, make_credential, http_error):
    credential_store.put(make_credential())
    service = fake_gmail_service({"messages": [{"id": "m1"}]}, {"m1": http_error(401)})
    source = GmailApiSource(token_manager, credential_store, service_factory=lambda token: service)

    with pytest.raises(AuthExpired):
        asyncio.run(source.fetch_recent("user-1", limit=5, window=timedelta(hours=1)))


def test_execute_retries_rate_limits_then_gives_up(http_error):
    request = MagicMock()
    request.execute.side_effect = http_error(429)

    with pytest.raises(ProviderRateLimited):
        asyncio.run(google_api.execute(lambda: request, label="test", retry_delays=(0, 0)))

    assert request.execute.call_count == 3


def test_execute_recovers_after_rate_limit(http_error):
    request = MagicMock()
    request.execute.side_effect = [
        http_error(403, b'{"error": {"errors": [{"reason": "rateLimitExceeded"}], "message": "slow down"}}'),
        {"ok": True},
    ]

    assert asyncio.run(google_api.execute(lambda: request, label="test", retry_delays=(0,))) == {"ok": True}


def test_execute_maps_server_errors(http_error):
    request = MagicMock()
    request.execute.side_effect = http_error(503)

    with pytest.raises(ProviderUnavailable):
        asyncio.run(google_api.execute(lambda: request, label="test", retry_delays=()))
    assert request.execute.call_count == 1
