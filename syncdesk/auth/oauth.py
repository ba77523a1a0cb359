import asyncio
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build

from syncdesk.auth.credential_store import CredentialStore
from syncdesk.config import Config
from syncdesk.data.models import Credential, Scope
from syncdesk.errors import ProviderUnavailable

logger = logging.getLogger(__name__)

IDENTITY_SCOPES = ["openid", "https://www.googleapis.com/auth/userinfo.email"]

SCOPES = {
    Scope.MAIL: IDENTITY_SCOPES + ["https://www.googleapis.com/auth/gmail.readonly"],
    Scope.CALENDAR: IDENTITY_SCOPES + [
        "https://www.googleapis.com/auth/calendar.readonly",
        "https://www.googleapis.com/auth/calendar.events",
    ],
}

STATE_TTL_SECONDS = 600


class OAuthStateError(ValueError):
    """The callback carried an unknown, expired or already used state token."""


class OAuthManager:
    """Handles the OAuth 2.0 authorization handshake for Google APIs."""

    def __init__(
        self,
        credential_store: CredentialStore,
        client_config: Optional[Dict[str, Any]] = None,
        redirect_uri: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.credential_store = credential_store
        self.timeout = timeout if timeout is not None else Config.HTTP_TIMEOUT_SECONDS
        self.client_config = client_config or Config.client_config()
        self.redirect_uri = redirect_uri or Config.GOOGLE_REDIRECT_URI
        # state -> (user_id, scope, issued_at)
        self._pending: Dict[str, Tuple[str, Scope, float]] = {}
        self._lock = threading.Lock()

    def _flow(self, scope: Scope, state: Optional[str] = None) -> Flow:
        # The exchange runs in a different Flow instance than the URL, so no PKCE verifier
        return Flow.from_client_config(
            self.client_config,
            scopes=SCOPES[scope],
            redirect_uri=self.redirect_uri,
            state=state,
            autogenerate_code_verifier=False,
        )

    def get_authorization_url(self, user_id: str, scope) -> Tuple[str, str]:
        """
        Generates the Google OAuth consent URL for one scope.

        Returns:
            (authorization_url, state)
        """
        scope = Scope(scope)
        # access_type='offline' + prompt='consent' is what yields a refresh_token
        authorization_url, state = self._flow(scope).authorization_url(
            access_type="offline",
            include_granted_scopes="true",
            prompt="consent",
        )
        with self._lock:
            self._purge_expired()
            self._pending[state] = (user_id, scope, time.monotonic())
        logger.info(f"[OAUTH] Issued {scope.value} authorization URL for user {user_id}")
        return authorization_url, state

    def exchange_code(self, code: str, state: str) -> Credential:
        """
        Exchanges an authorization code for tokens and stores the resulting credential.

        Raises:
            OAuthStateError: Unknown or expired state token.
        """
        with self._lock:
            self._purge_expired()
            pending = self._pending.pop(state, None)
        if pending is None:
            raise OAuthStateError("Unknown or expired OAuth state")
        user_id, scope, _ = pending

        flow = self._flow(scope, state=state)
        flow.fetch_token(code=code, timeout=self.timeout)
        creds = flow.credentials

        if creds.expiry is not None:
            expires_at = creds.expiry.replace(tzinfo=timezone.utc)
        else:
            expires_at = datetime.now(timezone.utc) + timedelta(hours=1)

        credential = Credential(
            user_id=user_id,
            scope=scope,
            access_token=creds.token,
            refresh_token=creds.refresh_token or self._stored_refresh_token(user_id, scope),
            expires_at=expires_at,
            account_email=self._account_email(creds),
            scopes=list(creds.scopes or SCOPES[scope]),
        )
        self.credential_store.put(credential)
        logger.info(f"[OAUTH] Connected {scope.value} account for user {user_id}")
        return credential

    async def exchange_code_async(self, code: str, state: str) -> Credential:
        """
        exchange_code off the event loop, bounded as a whole: the token request
        and the userinfo lookup together get two HTTP timeouts.

        Raises:
            OAuthStateError: Unknown or expired state token.
            ProviderUnavailable: Google did not answer in time.
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.exchange_code, code, state),
                timeout=self.timeout * 2,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"[OAUTH] Code exchange timed out after {self.timeout * 2}s")
            raise ProviderUnavailable("Google did not complete the sign-in in time; try connecting again") from e

    def _stored_refresh_token(self, user_id: str, scope: Scope) -> Optional[str]:
        # Google only returns a refresh_token on some consents; keep the one on file
        existing = self.credential_store.get(user_id, scope)
        if existing is not None and existing.refresh_token:
            logger.info(f"[OAUTH] No refresh token in {scope.value} grant for user {user_id}, keeping the stored one")
            return existing.refresh_token
        return None

    @staticmethod
    def _account_email(creds) -> str:
        service = build("oauth2", "v2", credentials=creds, cache_discovery=False)
        info = service.userinfo().get().execute()
        return info.get("email", "")

    def _purge_expired(self) -> None:
        cutoff = time.monotonic() - STATE_TTL_SECONDS
        for state in [s for s, (_, _, issued) in self._pending.items() if issued < cutoff]:
            del self._pending[state]
