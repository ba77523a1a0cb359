"""
Credential encryption at rest.

Access and refresh tokens inside a stored credential payload are sealed with
Fernet before they reach a StateBackend and opened again only in memory.
Key material and plaintext tokens never reach the logs.
"""

import logging
from typing import Any, Dict, Optional, Sequence

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

SEALED_FIELDS = ("access_token", "refresh_token")
SEALED_MARKER = "encrypted"


class SecurityManagerError(Exception):
    """A credential payload could not be sealed or opened."""


class SecurityManager:
    """Seals and opens the token fields of credential payloads with one Fernet key."""

    def __init__(self, key: Optional[str] = None, fields: Sequence[str] = SEALED_FIELDS):
        if key is None:
            from syncdesk.config import Config
            key = Config.FERNET_KEY

        if not key or not key.strip():
            logger.critical("[SECURITY] FERNET_KEY is not set, credentials cannot be sealed")
            raise SecurityManagerError("FERNET_KEY is required to encrypt credentials")

        try:
            self._fernet = Fernet(key.strip().encode())
        except (ValueError, TypeError) as e:
            logger.critical(f"[SECURITY] FERNET_KEY rejected: {type(e).__name__}")
            raise SecurityManagerError(f"FERNET_KEY is not a valid Fernet key ({type(e).__name__})") from e

        self.fields = tuple(fields)

    def seal(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Copy of `payload` with every non-empty token field encrypted and the sealed marker set."""
        sealed = dict(payload)
        for field in self.fields:
            value = sealed.get(field)
            if value:
                sealed[field] = self._fernet.encrypt(str(value).encode()).decode()
        sealed[SEALED_MARKER] = True
        return sealed

    def open(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Inverse of `seal`. Payloads without the marker are returned unchanged.

        Raises:
            SecurityManagerError: A field was sealed with another key or is corrupted
        """
        opened = dict(payload)
        if not opened.pop(SEALED_MARKER, False):
            return opened
        for field in self.fields:
            value = opened.get(field)
            if not value:
                continue
            try:
                opened[field] = self._fernet.decrypt(value.encode()).decode()
            except InvalidToken as e:
                raise SecurityManagerError(f"{field} could not be decrypted with the configured key") from e
        return opened

    def __repr__(self) -> str:
        return f"<SecurityManager fields={','.join(self.fields)}>"


def is_sealed(payload: Dict[str, Any]) -> bool:
    return bool(payload.get(SEALED_MARKER))


def generate_key() -> str:
    """New Fernet key, for provisioning FERNET_KEY."""
    return Fernet.generate_key().decode()
