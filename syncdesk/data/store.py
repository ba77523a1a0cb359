import json
import logging
import os
import shutil
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from syncdesk.data.models import NormalizedMessage

logger = logging.getLogger(__name__)


class StateBackend(ABC):
    """
    Persistent storage for the two entities this core needs:
    credentials keyed by (user_id, scope) and messages keyed by (user_id, message id).

    Credential payloads are plain dicts (possibly holding encrypted tokens);
    the CredentialStore owns the conversion to and from Credential models.
    """

    @abstractmethod
    def load_credential(self, user_id: str, scope: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def save_credential(self, user_id: str, scope: str, payload: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def delete_credential(self, user_id: str, scope: str) -> None:
        ...

    @abstractmethod
    def upsert_messages(self, user_id: str, messages: Iterable[NormalizedMessage]) -> int:
        """Insert or update messages by (user_id, id). Returns the number written."""

    @abstractmethod
    def list_messages(self, user_id: str, limit: int = 50) -> List[NormalizedMessage]:
        """Stored messages for a user, newest first."""


class PersistenceManager(StateBackend):
    """
    Local JSON persistence of application state (credentials and messages).
    Supports Multi-Tenant Partitioning: /<base_dir>/tenants/<tenant_id>/store.json
    """

    def __init__(self, base_dir: Optional[str] = None, tenant_id: str = "default"):
        from syncdesk.config import Config

        self.tenant_id = tenant_id
        self.base_dir = Path(base_dir or Config.DATA_DIR).resolve()
        self.tenant_dir = self.base_dir / "tenants" / tenant_id
        self.storage_path = self.tenant_dir / "store.json"
        self._lock = threading.RLock()

        self._ensure_storage_dir()

    def _ensure_storage_dir(self):
        """Ensures the tenant-specific directory exists."""
        os.makedirs(self.tenant_dir, exist_ok=True)

    def load(self) -> Dict[str, Any]:
        """Loads the whole state, or an empty state when the store does not exist yet."""
        with self._lock:
            if not self.storage_path.exists():
                return {"credentials": {}, "messages": {}}
            try:
                with open(self.storage_path, "r", encoding="utf-8") as f:
                    raw_data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"[STORE] Failed to load store from {self.storage_path}: {e}")
                return {"credentials": {}, "messages": {}}

            return {
                "credentials": raw_data.get("credentials", {}),
                "messages": raw_data.get("messages", {}),
            }

    def save(self, credentials: Dict, messages: Dict):
        """Atomic write of the whole state to the tenant partition."""
        data = {"credentials": credentials, "messages": messages}
        with self._lock:
            temp_path = f"{self.storage_path}.tmp"
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False, default=str)
            shutil.move(temp_path, self.storage_path)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def load_credential(self, user_id: str, scope: str) -> Optional[Dict[str, Any]]:
        return self.load()["credentials"].get(user_id, {}).get(scope)

    def save_credential(self, user_id: str, scope: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            state = self.load()
            state["credentials"].setdefault(user_id, {})[scope] = payload
            self.save(state["credentials"], state["messages"])

    def delete_credential(self, user_id: str, scope: str) -> None:
        with self._lock:
            state = self.load()
            user_creds = state["credentials"].get(user_id, {})
            if scope in user_creds:
                del user_creds[scope]
                self.save(state["credentials"], state["messages"])

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def upsert_messages(self, user_id: str, messages: Iterable[NormalizedMessage]) -> int:
        written = 0
        with self._lock:
            state = self.load()
            user_messages = state["messages"].setdefault(user_id, {})
            for message in messages:
                row = message.model_dump(mode="json")
                existing = user_messages.get(message.id)
                if existing and existing.get("received_at"):
                    row["received_at"] = existing["received_at"]
                user_messages[message.id] = row
                written += 1
            self.save(state["credentials"], state["messages"])
        return written

    def list_messages(self, user_id: str, limit: int = 50) -> List[NormalizedMessage]:
        rows = self.load()["messages"].get(user_id, {}).values()
        messages = []
        for row in rows:
            try:
                messages.append(NormalizedMessage.model_validate(row))
            except ValueError as e:
                logger.warning(f"[STORE] Skipping unreadable message row for {user_id}: {e}")
        messages.sort(key=lambda m: m.received_at, reverse=True)
        return messages[:limit]
