import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from googleapiclient.errors import HttpError

from syncdesk.auth.credential_store import CredentialStore
from syncdesk.auth.token_manager import TokenManager
from syncdesk.data.models import Credential, Scope
from syncdesk.data.store import PersistenceManager


@pytest.fixture
def backend(tmp_path):
    return PersistenceManager(base_dir=str(tmp_path))


class ThreadRecordingBackend(PersistenceManager):
    """PersistenceManager that records which thread each store call ran on."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.threads = []

    def load_credential(self, user_id, scope):
        self.threads.append(threading.get_ident())
        return super().load_credential(user_id, scope)

    def save_credential(self, user_id, scope, payload):
        self.threads.append(threading.get_ident())
        super().save_credential(user_id, scope, payload)

    def upsert_messages(self, user_id, messages):
        self.threads.append(threading.get_ident())
        return super().upsert_messages(user_id, messages)


@pytest.fixture
def recording_backend(tmp_path):
    return ThreadRecordingBackend(base_dir=str(tmp_path))


@pytest.fixture
def credential_store(backend):
    return CredentialStore(backend)


@pytest.fixture
def token_manager(credential_store):
    return TokenManager(credential_store, client_id="client", client_secret="secret", retry_delays=(0, 0))


@pytest.fixture
def make_credential():
    def _make(
        scope=Scope.MAIL,
        user_id="user-1",
        access_token="access-1",
        refresh_token="refresh-1",
        expires_in=timedelta(hours=1),
    ):
        return Credential(
            user_id=user_id,
            scope=scope,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=datetime.now(timezone.utc) + expires_in,
            account_email="user@example.com",
        )

    return _make


@pytest.fixture
def http_error():
    def _make(status, content=b'{"error": {"message": "provider error"}}'):
        return HttpError(MagicMock(status=status, reason="provider error"), content)

    return _make
