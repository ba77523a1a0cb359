import logging
import threading
from typing import Dict, Optional, Tuple

from syncdesk.data.models import Credential, Scope
from syncdesk.data.store import StateBackend
from syncdesk.errors import NotConnected
from syncdesk.security.security_manager import SecurityManager, SecurityManagerError, is_sealed

logger = logging.getLogger(__name__)


class TokenCache:
    """
    Process-local cache of credentials keyed by (user_id, scope).

    A performance optimization only: the StateBackend is the source of truth,
    and entries are dropped whenever the credential is written or deleted.
    """

    def __init__(self):
        self._entries: Dict[Tuple[str, str], Credential] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str, scope: str) -> Optional[Credential]:
        with self._lock:
            cached = self._entries.get((user_id, scope))
        return cached.model_copy() if cached else None

    def set(self, credential: Credential) -> None:
        with self._lock:
            self._entries[(credential.user_id, credential.scope.value)] = credential.model_copy()

    def invalidate(self, user_id: str, scope: str) -> None:
        with self._lock:
            self._entries.pop((user_id, scope), None)


class CredentialStore:
    """
    Interface for storing and retrieving delegated credentials.
    Wraps the raw StateBackend, encrypting tokens at rest when a SecurityManager is given.
    """

    def __init__(
        self,
        backend: StateBackend,
        security_manager: Optional[SecurityManager] = None,
        cache: Optional[TokenCache] = None,
    ):
        self._backend = backend
        self._security = security_manager
        self._cache = cache if cache is not None else TokenCache()

    def get(self, user_id: str, scope) -> Optional[Credential]:
        """
        Retrieves the credential for (user_id, scope).

        Returns:
            Credential, or None if not found or if its tokens cannot be decrypted
            (corruption or key rotation; the user must re-authorize).
        """
        scope = Scope(scope).value
        cached = self._cache.get(user_id, scope)
        if cached is not None:
            return cached

        payload = self._backend.load_credential(user_id, scope)
        if not payload:
            logger.info(f"[CREDENTIAL] No {scope} credential on file for user {user_id}")
            return None

        try:
            credential = Credential.model_validate(self._decrypt(payload))
        except SecurityManagerError as e:
            logger.error(f"[CREDENTIAL] Could not decrypt {scope} credential for user {user_id}: {e}")
            return None
        except ValueError as e:
            logger.error(f"[CREDENTIAL] Stored {scope} credential for user {user_id} is malformed: {e}")
            return None

        self._cache.set(credential)
        return credential

    def require(self, user_id: str, scope) -> Credential:
        credential = self.get(user_id, scope)
        if credential is None:
            scope = Scope(scope).value
            raise NotConnected(f"No {scope} account connected", user_id=user_id, scope=scope)
        return credential

    def put(self, credential: Credential) -> None:
        """
        Persists a credential (last write wins) and invalidates its cache entry.

        Raises:
            SecurityManagerError: If encryption fails; unencrypted tokens are never stored
        """
        payload = self._encrypt(credential.model_dump(mode="json"))
        self._backend.save_credential(credential.user_id, credential.scope.value, payload)
        self._cache.invalidate(credential.user_id, credential.scope.value)
        logger.debug(f"[CREDENTIAL] Stored {credential.scope.value} credential for user {credential.user_id}")

    def delete(self, user_id: str, scope) -> None:
        """Removes a credential (explicit disconnect only)."""
        scope = Scope(scope).value
        self._backend.delete_credential(user_id, scope)
        self._cache.invalidate(user_id, scope)
        logger.info(f"[CREDENTIAL] Deleted {scope} credential for user {user_id}")

    def _encrypt(self, payload: dict) -> dict:
        if not self._security:
            return payload
        return self._security.seal(payload)

    def _decrypt(self, payload: dict) -> dict:
        if self._security:
            return self._security.open(payload)
        if is_sealed(payload):
            raise SecurityManagerError("Credential is encrypted but no FERNET_KEY is configured")
        return dict(payload)
