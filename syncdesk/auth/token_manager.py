import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence, Tuple

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from syncdesk.auth.credential_store import CredentialStore
from syncdesk.config import Config
from syncdesk.data.models import Credential, Scope
from syncdesk.errors import AuthExpired, AuthTransient

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


class TokenManager:
    """
    Manages the lifecycle of OAuth tokens.
    Guarantees a currently-valid access token, refreshing against Google when expired.

    Concurrent requests may both refresh the same expired credential. Every
    refresh yields a valid token and the store is last-write-wins.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        retry_delays: Optional[Sequence[float]] = None,
        timeout: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.credential_store = credential_store
        self.client_id = client_id if client_id is not None else Config.GOOGLE_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else Config.GOOGLE_CLIENT_SECRET
        self.retry_delays = tuple(retry_delays if retry_delays is not None else Config.REFRESH_RETRY_DELAYS)
        self.timeout = timeout if timeout is not None else Config.HTTP_TIMEOUT_SECONDS
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def ensure_fresh(self, user_id: str, scope) -> str:
        """
        Returns a valid access token for (user_id, scope).

        Raises:
            NotConnected: No credential on file for the scope.
            AuthExpired: No refresh token, or Google rejected the refresh. Never retried.
            AuthTransient: Network/5xx failures persisted through every retry.
        """
        scope = Scope(scope)
        credential = await asyncio.to_thread(self.credential_store.require, user_id, scope)

        if not credential.is_expired(self._clock(), Config.TOKEN_EXPIRY_SKEW_SECONDS):
            return credential.access_token

        if not credential.refresh_token:
            logger.warning(f"[TOKEN] {scope.value} token expired for user {user_id} and no refresh token is stored")
            raise AuthExpired("Access expired; reconnect the account", user_id=user_id, scope=scope.value)

        logger.info(f"[TOKEN] {scope.value} token expired for user {user_id}, refreshing...")
        access_token, expiry = await self._refresh_with_retry(credential)

        refreshed = credential.model_copy(update={
            "access_token": access_token,
            "expires_at": max(credential.expires_at, expiry),
        })
        await asyncio.to_thread(self.credential_store.put, refreshed)
        logger.info(f"[TOKEN] {scope.value} token refreshed for user {user_id}, valid until {refreshed.expires_at.isoformat()}")
        return access_token

    async def _refresh_with_retry(self, credential: Credential) -> Tuple[str, datetime]:
        last_error: Optional[Exception] = None

        for attempt in range(len(self.retry_delays) + 1):
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(self._call_refresh_grant, credential),
                    timeout=self.timeout,
                )
            except RefreshError as e:
                if not getattr(e, "retryable", False):
                    logger.error(f"[TOKEN] Refresh rejected for user {credential.user_id} ({credential.scope.value}): {e}")
                    raise AuthExpired(
                        "Refresh was rejected; reconnect the account",
                        user_id=credential.user_id,
                        scope=credential.scope.value,
                    ) from e
                last_error = e
            except (TransportError, asyncio.TimeoutError) as e:
                last_error = e

            if attempt < len(self.retry_delays):
                delay = self.retry_delays[attempt]
                logger.warning(
                    f"[TOKEN] Transient refresh failure for user {credential.user_id} "
                    f"({type(last_error).__name__}), retry {attempt + 1}/{len(self.retry_delays)} after {delay}s"
                )
                await asyncio.sleep(delay)

        logger.error(f"[TOKEN] Refresh failed after {len(self.retry_delays) + 1} attempts for user {credential.user_id}")
        raise AuthTransient(
            "Could not reach the identity provider",
            user_id=credential.user_id,
            scope=credential.scope.value,
        ) from last_error

    def _call_refresh_grant(self, credential: Credential) -> Tuple[str, datetime]:
        """Runs the refresh_token grant. Blocking; called from a worker thread."""
        creds = Credentials(
            token=credential.access_token,
            refresh_token=credential.refresh_token,
            token_uri=Config.GOOGLE_TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=credential.scopes or None,
        )
        creds.refresh(Request())

        if creds.expiry is not None:
            # google-auth reports expiry as naive UTC
            expiry = creds.expiry.replace(tzinfo=timezone.utc)
        else:
            expiry = self._clock() + DEFAULT_TOKEN_LIFETIME
        return creds.token, expiry
