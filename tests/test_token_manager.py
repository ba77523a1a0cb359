import asyncio
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from google.auth.exceptions import RefreshError, TransportError

from syncdesk.auth.credential_store import CredentialStore
from syncdesk.auth.token_manager import TokenManager
from syncdesk.data.models import Scope
from syncdesk.errors import AuthExpired, AuthTransient, NotConnected


def test_valid_token_is_returned_without_refresh(token_manager, credential_store, make_credential):
    credential_store.put(make_credential())
    token_manager._call_refresh_grant = MagicMock()

    token = asyncio.run(token_manager.ensure_fresh("user-1", Scope.MAIL))

    assert token == "access-1"
    token_manager._call_refresh_grant.assert_not_called()


def test_expired_token_is_refreshed_with_later_expiry(token_manager, credential_store, make_credential):
    old = make_credential(expires_in=timedelta(minutes=-5))
    credential_store.put(old)
    new_expiry = datetime.now(timezone.utc) + timedelta(hours=1)
    token_manager._call_refresh_grant = MagicMock(return_value=("access-2", new_expiry))

    token = asyncio.run(token_manager.ensure_fresh("user-1", "mail"))

    assert token == "access-2"
    assert token != old.access_token
    stored = credential_store.get("user-1", Scope.MAIL)
    assert stored.access_token == "access-2"
    assert stored.expires_at > old.expires_at
    assert stored.refresh_token == "refresh-1"


def test_expiry_never_moves_backwards(token_manager, credential_store, make_credential):
    old = make_credential(expires_in=timedelta(minutes=-1))
    credential_store.put(old)
    token_manager._call_refresh_grant = MagicMock(
        return_value=("access-2", old.expires_at - timedelta(minutes=10))
    )

    asyncio.run(token_manager.ensure_fresh("user-1", Scope.MAIL))

    assert credential_store.get("user-1", Scope.MAIL).expires_at == old.expires_at


def test_missing_credential_raises_not_connected(token_manager):
    with pytest.raises(NotConnected):
        asyncio.run(token_manager.ensure_fresh("nobody", Scope.CALENDAR))


def test_expired_without_refresh_token_raises_auth_expired(token_manager, credential_store, make_credential):
    credential_store.put(make_credential(refresh_token=None, expires_in=timedelta(minutes=-1)))
    token_manager._call_refresh_grant = MagicMock()

    with pytest.raises(AuthExpired):
        asyncio.run(token_manager.ensure_fresh("user-1", Scope.MAIL))
    token_manager._call_refresh_grant.assert_not_called()


def test_rejected_refresh_is_not_retried(token_manager, credential_store, make_credential):
    credential_store.put(make_credential(expires_in=timedelta(minutes=-1)))
    token_manager._call_refresh_grant = MagicMock(side_effect=RefreshError("invalid_grant: Token has been revoked"))

    with pytest.raises(AuthExpired) as exc_info:
        asyncio.run(token_manager.ensure_fresh("user-1", Scope.MAIL))

    assert exc_info.value.scope == "mail"
    assert token_manager._call_refresh_grant.call_count == 1


def test_transient_failures_surface_as_auth_transient_after_retries(token_manager, credential_store, make_credential):
    credential_store.put(make_credential(expires_in=timedelta(minutes=-1)))
    token_manager._call_refresh_grant = MagicMock(side_effect=TransportError("connection reset"))

    with pytest.raises(AuthTransient):
        asyncio.run(token_manager.ensure_fresh("user-1", Scope.MAIL))

    # one attempt plus one per retry delay
    assert token_manager._call_refresh_grant.call_count == 3
    assert credential_store.get("user-1", Scope.MAIL).access_token == "access-1"


def test_retryable_refresh_error_recovers(token_manager, credential_store, make_credential):
    credential_store.put(make_credential(expires_in=timedelta(minutes=-1)))
    expiry = datetime.now(timezone.utc) + timedelta(hours=1)
    token_manager._call_refresh_grant = MagicMock(
        side_effect=[RefreshError("backend error", retryable=True), ("access-2", expiry)]
    )

    token = asyncio.run(token_manager.ensure_fresh("user-1", Scope.MAIL))

    assert token == "access-2"
    assert token_manager._call_refresh_grant.call_count == 2


def test_refresh_replaces_cached_credential(token_manager, credential_store, make_credential):
    credential_store.put(make_credential(expires_in=timedelta(minutes=-1)))
    # Warm the cache with the expired credential
    assert credential_store.get("user-1", Scope.MAIL).access_token == "access-1"
    token_manager._call_refresh_grant = MagicMock(
        return_value=("access-2", datetime.now(timezone.utc) + timedelta(hours=1))
    )

    asyncio.run(token_manager.ensure_fresh("user-1", Scope.MAIL))

    assert credential_store.get("user-1", Scope.MAIL).access_token == "access-2"


def test_store_access_runs_off_the_event_loop_thread(recording_backend, make_credential):
    store = CredentialStore(recording_backend)
    manager = TokenManager(store, client_id="client", client_secret="secret", retry_delays=())
    store.put(make_credential(expires_in=timedelta(minutes=-5)))
    recording_backend.threads.clear()
    manager._call_refresh_grant = MagicMock(return_value=("access-2", datetime.now(timezone.utc) + timedelta(hours=1)))

    asyncio.run(manager.ensure_fresh("user-1", Scope.MAIL))

    assert len(recording_backend.threads) == 2
    assert threading.get_ident() not in recording_backend.threads
