from datetime import datetime, timedelta, timezone

import pytest

from syncdesk.auth.credential_store import CredentialStore
from syncdesk.data.models import FetchedMessage, MessageSource, NormalizedMessage, Scope
from syncdesk.errors import NotConnected
from syncdesk.security.security_manager import SecurityManager, generate_key


def _message(message_id, received_at, subject="Subject"):
    fetched = FetchedMessage(
        id=message_id,
        sender_name="Alice",
        sender_email="alice@example.com",
        subject=subject,
        received_at=received_at,
        snippet="snippet",
        body_text="body",
        source=MessageSource.GMAIL_API,
    )
    return NormalizedMessage(**fetched.model_dump(), ai_summary="summary", suggested_replies=["ok"])


def test_put_get_round_trip(credential_store, make_credential):
    credential = make_credential(scope=Scope.CALENDAR)
    credential_store.put(credential)

    loaded = credential_store.get("user-1", "calendar")

    assert loaded == credential
    assert credential_store.get("user-1", Scope.MAIL) is None


def test_require_raises_when_missing(credential_store):
    with pytest.raises(NotConnected) as exc_info:
        credential_store.require("user-1", Scope.MAIL)
    assert exc_info.value.scope == "mail"


def test_delete_removes_credential(credential_store, make_credential):
    credential_store.put(make_credential())
    assert credential_store.get("user-1", Scope.MAIL) is not None

    credential_store.delete("user-1", Scope.MAIL)

    assert credential_store.get("user-1", Scope.MAIL) is None


def test_put_invalidates_cached_entry(credential_store, make_credential):
    credential_store.put(make_credential(access_token="first"))
    assert credential_store.get("user-1", Scope.MAIL).access_token == "first"

    credential_store.put(make_credential(access_token="second"))

    assert credential_store.get("user-1", Scope.MAIL).access_token == "second"


def test_tokens_are_encrypted_at_rest(backend, make_credential):
    store = CredentialStore(backend, SecurityManager(generate_key()))
    store.put(make_credential(access_token="plain-access", refresh_token="plain-refresh"))

    raw = backend.load_credential("user-1", "mail")
    assert raw["encrypted"] is True
    assert raw["access_token"] != "plain-access"
    assert raw["refresh_token"] != "plain-refresh"

    other_key_store = CredentialStore(backend, SecurityManager(generate_key()))
    assert other_key_store.get("user-1", Scope.MAIL) is None

    loaded = CredentialStore(backend, store._security).get("user-1", Scope.MAIL)
    assert loaded.access_token == "plain-access"
    assert loaded.refresh_token == "plain-refresh"


def test_encrypted_payload_without_key_reads_as_disconnected(backend, make_credential):
    CredentialStore(backend, SecurityManager(generate_key())).put(make_credential())

    assert CredentialStore(backend).get("user-1", Scope.MAIL) is None


def test_credentials_survive_a_new_persistence_instance(tmp_path, make_credential):
    from syncdesk.data.store import PersistenceManager

    CredentialStore(PersistenceManager(base_dir=str(tmp_path))).put(make_credential())

    reloaded = CredentialStore(PersistenceManager(base_dir=str(tmp_path))).get("user-1", Scope.MAIL)
    assert reloaded.access_token == "access-1"


def test_upsert_keeps_first_received_at_and_never_duplicates(backend):
    first_seen = datetime(2026, 10, 14, 9, 0, tzinfo=timezone.utc)
    backend.upsert_messages("user-1", [_message("m1", first_seen), _message("m2", first_seen)])
    backend.upsert_messages(
        "user-1",
        [_message("m2", first_seen + timedelta(hours=2), subject="Updated"), _message("m3", first_seen + timedelta(hours=1))],
    )

    stored = backend.list_messages("user-1")

    assert stored[0].id == "m3"
    assert sorted(m.id for m in stored) == ["m1", "m2", "m3"]
    m2 = next(m for m in stored if m.id == "m2")
    assert m2.subject == "Updated"
    assert m2.received_at == first_seen
