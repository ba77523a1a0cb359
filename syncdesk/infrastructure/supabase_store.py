import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from supabase import create_client

from syncdesk.config import Config
from syncdesk.data.models import NormalizedMessage
from syncdesk.data.store import StateBackend

logger = logging.getLogger(__name__)

CREDENTIALS_TABLE = "credentials"
MESSAGES_TABLE = "messages"


class SupabaseStore(StateBackend):
    """
    Supabase-backed persistence.

    Tables (conceptual):
        credentials(user_id, scope, payload jsonb, updated_at)       unique (user_id, scope)
        messages(user_id, provider_message_id, ..., received_at)      unique (user_id, provider_message_id)
    """

    def __init__(self, client=None):
        if client is None:
            if not Config.supabase_configured():
                raise RuntimeError("Supabase environment variables missing")
            client = create_client(Config.SUPABASE_URL, Config.SUPABASE_SERVICE_KEY)
        self.client = client

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def load_credential(self, user_id: str, scope: str) -> Optional[Dict[str, Any]]:
        response = self.client.table(CREDENTIALS_TABLE) \
            .select("payload") \
            .eq("user_id", user_id) \
            .eq("scope", scope) \
            .limit(1) \
            .execute()

        if not response.data:
            return None
        payload = response.data[0].get("payload")
        if isinstance(payload, str):
            payload = json.loads(payload)
        return payload

    def save_credential(self, user_id: str, scope: str, payload: Dict[str, Any]) -> None:
        """Upserts a credential payload; the (user_id, scope) index makes this last-write-wins."""
        row = {
            "user_id": user_id,
            "scope": scope,
            "payload": payload,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        self.client.table(CREDENTIALS_TABLE).upsert(row, on_conflict="user_id,scope").execute()
        logger.info(f"[SUPABASE] Stored credential (user_id={user_id}, scope={scope})")

    def delete_credential(self, user_id: str, scope: str) -> None:
        self.client.table(CREDENTIALS_TABLE) \
            .delete() \
            .eq("user_id", user_id) \
            .eq("scope", scope) \
            .execute()
        logger.info(f"[SUPABASE] Deleted credential (user_id={user_id}, scope={scope})")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def upsert_messages(self, user_id: str, messages: Iterable[NormalizedMessage]) -> int:
        """
        Upserts messages keyed by (user_id, provider_message_id).

        received_at is immutable once stored, so it is only sent for rows
        that do not exist yet.
        """
        messages = list(messages)
        if not messages:
            return 0

        ids = [m.id for m in messages]
        existing = self.client.table(MESSAGES_TABLE) \
            .select("provider_message_id") \
            .eq("user_id", user_id) \
            .in_("provider_message_id", ids) \
            .execute()
        known = {row["provider_message_id"] for row in (existing.data or [])}

        now_iso = datetime.now(timezone.utc).isoformat()
        new_rows = []
        update_rows = []
        for message in messages:
            row = self._to_row(user_id, message)
            row["updated_at"] = now_iso
            if message.id in known:
                row.pop("received_at")
                update_rows.append(row)
            else:
                new_rows.append(row)

        for rows in (new_rows, update_rows):
            if rows:
                self.client.table(MESSAGES_TABLE).upsert(
                    rows,
                    on_conflict="user_id,provider_message_id"
                ).execute()

        logger.info(f"[SUPABASE] Upserted {len(messages)} messages for {user_id} ({len(new_rows)} new)")
        return len(messages)

    def list_messages(self, user_id: str, limit: int = 50) -> List[NormalizedMessage]:
        response = self.client.table(MESSAGES_TABLE) \
            .select("*") \
            .eq("user_id", user_id) \
            .order("received_at", desc=True) \
            .limit(limit) \
            .execute()
        return [self._from_row(row) for row in (response.data or [])]

    @staticmethod
    def _to_row(user_id: str, message: NormalizedMessage) -> Dict[str, Any]:
        row = message.model_dump(mode="json")
        row["provider_message_id"] = row.pop("id")
        row["user_id"] = user_id
        return row

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> NormalizedMessage:
        data = dict(row)
        data["id"] = data.pop("provider_message_id")
        for column in ("user_id", "updated_at", "created_at"):
            data.pop(column, None)
        return NormalizedMessage.model_validate(data)
